"""
Bounded pool of Playwright browsers and the pages opened on them.

Browsers are expensive (one Chromium process each), so the pool starts with
one, grows lazily up to max_browsers, and hands out at most
max_pages_per_browser pages per browser. When everything is leased, callers
wait on a condition until a page is released or capacity frees up, and give
up with PoolTimeout after acquire_timeout seconds.

Each page lives in its own browser context so a reset (blank navigation,
cleared storage and cookies) fully isolates the next caller. A page that
fails its reset is discarded, never recirculated.
"""

import asyncio
import enum
import itertools
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from collections import deque
from typing import Any, Awaitable, Callable

from playwright.async_api import async_playwright

from site_assets.errors import PoolTimeout, ResourceExhausted

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Safari/537.36"
)

CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-first-run",
    "--no-zygote",
    "--disable-extensions",
    "--disable-blink-features=AutomationControlled",
    "--disable-features=VizDisplayCompositor",
]

EXTRA_HEADERS = {
    "Accept-Language": "en-US,en;q=0.9",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
}

# Hide the most common automation fingerprints before any page script runs
STEALTH_SCRIPT = '''() => {
    Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
    window.chrome = window.chrome || { runtime: {} };
}'''

RESET_TIMEOUT_MS = 5000

_handle_ids = itertools.count(1)


class HandleState(enum.Enum):
    IDLE = "idle"
    LEASED = "leased"
    RESETTING = "resetting"
    DISCARDED = "discarded"  # terminal


@dataclass(eq=False)
class BrowserSession:
    browser: Any
    created_at: float = field(default_factory=time.time)
    handles: set = field(default_factory=set)
    pending_pages: int = 0  # slots reserved for pages being opened

    @property
    def alive(self) -> bool:
        try:
            return bool(self.browser.is_connected())
        except Exception:
            return False

    @property
    def load(self) -> int:
        return len(self.handles) + self.pending_pages


@dataclass(eq=False)
class PageHandle:
    """A lease on one page. `session` is a back-reference; the pool owns both."""
    page: Any
    context: Any
    session: BrowserSession
    generation: int
    state: HandleState = HandleState.IDLE
    id: int = field(default_factory=lambda: next(_handle_ids))

    def __repr__(self):
        return f"PageHandle(id={self.id}, state={self.state.value})"


class BrowserPool:
    def __init__(
        self,
        max_browsers: int = 3,
        max_pages_per_browser: int = 5,
        acquire_timeout: float = 30.0,
        launch_timeout: float = 30.0,
        headless: bool = True,
        executable_path: str | None = None,
        launcher: Callable[[], Awaitable[Any]] | None = None,
    ):
        if max_browsers < 1 or max_pages_per_browser < 1:
            raise ValueError("Pool needs at least one browser and one page per browser")
        self.max_browsers = max_browsers
        self.max_pages_per_browser = max_pages_per_browser
        self.acquire_timeout = acquire_timeout
        self.launch_timeout = launch_timeout
        self.headless = headless
        self.executable_path = executable_path
        self._launcher = launcher or self._launch_chromium

        self._sessions: list[BrowserSession] = []
        self._sessions_pending = 0
        self._available: deque = deque()
        self._busy: set = set()
        self._cond = asyncio.Condition()
        self._init_task: asyncio.Future | None = None
        self._generation = 0

        self._playwright = None
        self._playwright_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self):
        """Start the first browser. Concurrent callers share one launch."""
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._bootstrap())
        task = self._init_task
        try:
            await asyncio.shield(task)
        except Exception:
            # Let the next acquire retry the launch
            if self._init_task is task:
                self._init_task = None
            raise

    async def _bootstrap(self):
        logger.info("[browser-pool] Initializing browser pool...")
        async with self._cond:
            self._sessions_pending += 1
        session = await self._start_session()
        logger.info("[browser-pool] Browser pool initialized with 1 browser")
        return session

    async def shutdown(self):
        """Close every page and browser, then reset so a later acquire starts fresh."""
        logger.info("[browser-pool] Shutting down browser pool...")
        async with self._cond:
            sessions = list(self._sessions)
            handles = [h for s in sessions for h in s.handles]
            for handle in handles:
                handle.state = HandleState.DISCARDED
            self._sessions = []
            self._sessions_pending = 0
            self._available.clear()
            self._busy.clear()
            self._init_task = None
            self._generation += 1
            playwright, self._playwright = self._playwright, None
            self._cond.notify_all()

        for handle in handles:
            await self._close_handle(handle)
        for session in sessions:
            await self._close_browser(session)
        if playwright is not None:
            try:
                await playwright.stop()
            except Exception as e:
                logger.debug(f"[browser-pool] Playwright stop failed: {e}")
        logger.info("[browser-pool] Browser pool shut down")

    # ------------------------------------------------------------------
    # Leasing
    # ------------------------------------------------------------------

    async def acquire(self) -> PageHandle:
        """
        Lease a page: reuse an idle one, open a page on a browser with spare
        capacity, launch another browser if under the cap, else wait.
        Raises PoolTimeout once acquire_timeout elapses.
        """
        await self.initialize()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.acquire_timeout

        async with self._cond:
            while True:
                self._prune_dead_sessions()
                handle = self._pop_available()
                if handle is not None:
                    self._lease(handle)
                    return handle

                session = self._reserve_page_slot()
                if session is not None:
                    break
                if len(self._sessions) + self._sessions_pending < self.max_browsers:
                    self._sessions_pending += 1
                    break

                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise PoolTimeout("Timeout waiting for available page")
                try:
                    await asyncio.wait_for(self._cond.wait(), remaining)
                except asyncio.TimeoutError:
                    raise PoolTimeout("Timeout waiting for available page") from None

        if session is None:
            session = await self._start_session(reserve_page=True)
            logger.info(f"[browser-pool] Created new browser. Total browsers: {len(self._sessions)}")
        return await self._open_page(session)

    async def release(self, handle: PageHandle):
        """Reset the page and return it to the idle set, or discard it if the reset fails."""
        if handle is None or handle.state is not HandleState.LEASED:
            return
        handle.state = HandleState.RESETTING
        async with self._cond:
            self._busy.discard(handle)

        healthy = await self._reset_page(handle)

        async with self._cond:
            reusable = (
                healthy
                and handle.generation == self._generation
                and handle.session in self._sessions
                and handle.session.alive
            )
            if reusable:
                handle.state = HandleState.IDLE
                self._available.append(handle)
            else:
                self._discard(handle)
            self._cond.notify()

        if not reusable:
            logger.warning(f"[browser-pool] Discarded {handle} after failed reset")
            await self._close_handle(handle)

    @asynccontextmanager
    async def page(self):
        """async with pool.page() as handle: ... (always released)"""
        handle = await self.acquire()
        try:
            yield handle
        finally:
            await self.release(handle)

    def stats(self) -> dict:
        return {
            "sessions": len(self._sessions),
            "available": len(self._available),
            "busy": len(self._busy),
            "maxSessions": self.max_browsers,
            "maxPagesPerSession": self.max_pages_per_browser,
        }

    # ------------------------------------------------------------------
    # Internals (map mutations happen only while holding self._cond)
    # ------------------------------------------------------------------

    def _lease(self, handle: PageHandle):
        handle.state = HandleState.LEASED
        self._busy.add(handle)

    def _pop_available(self) -> PageHandle | None:
        while self._available:
            handle = self._available.pop()
            if handle.session.alive and not _page_closed(handle.page):
                return handle
            self._discard(handle)
        return None

    def _reserve_page_slot(self) -> BrowserSession | None:
        for session in self._sessions:
            if session.alive and session.load < self.max_pages_per_browser:
                session.pending_pages += 1
                return session
        return None

    def _discard(self, handle: PageHandle):
        handle.state = HandleState.DISCARDED
        handle.session.handles.discard(handle)
        self._busy.discard(handle)
        try:
            self._available.remove(handle)
        except ValueError:
            pass

    def _prune_dead_sessions(self):
        for session in [s for s in self._sessions if not s.alive]:
            logger.warning("[browser-pool] Dropping disconnected browser")
            for handle in list(session.handles):
                self._discard(handle)
            self._sessions.remove(session)
            self._cond.notify_all()

    async def _start_session(self, reserve_page: bool = False) -> BrowserSession:
        """Launch a browser for a slot already counted in _sessions_pending."""
        generation = self._generation
        try:
            browser = await self._launcher()
        except Exception:
            async with self._cond:
                if generation == self._generation:
                    self._sessions_pending -= 1
                self._cond.notify_all()
            raise

        session = BrowserSession(browser=browser)
        async with self._cond:
            stale = generation != self._generation
            if not stale:
                self._sessions_pending -= 1
                self._sessions.append(session)
                if reserve_page:
                    session.pending_pages += 1
            self._cond.notify_all()
        if stale:
            await self._close_browser(session)
            raise ResourceExhausted("Browser pool was shut down during launch")
        return session

    async def _open_page(self, session: BrowserSession) -> PageHandle:
        """Open a page for a slot already reserved via session.pending_pages."""
        generation = self._generation
        context = None
        try:
            context = await session.browser.new_context(
                user_agent=USER_AGENT,
                viewport={"width": 1366, "height": 768},
                extra_http_headers=EXTRA_HEADERS,
            )
            await context.add_init_script(STEALTH_SCRIPT)
            page = await context.new_page()
        except Exception:
            async with self._cond:
                session.pending_pages -= 1
                self._cond.notify_all()
            if context is not None:
                await _close_quietly(context)
            raise

        handle = PageHandle(page=page, context=context, session=session, generation=generation)
        async with self._cond:
            session.pending_pages -= 1
            stale = generation != self._generation
            if not stale:
                session.handles.add(handle)
                self._lease(handle)
        if stale:
            handle.state = HandleState.DISCARDED
            await self._close_handle(handle)
            raise ResourceExhausted("Browser pool was shut down while opening a page")
        return handle

    async def _reset_page(self, handle: PageHandle) -> bool:
        try:
            await handle.page.evaluate(
                "() => { try { localStorage.clear(); sessionStorage.clear(); } catch (e) {} }"
            )
            await handle.page.goto("about:blank", timeout=RESET_TIMEOUT_MS)
            await handle.context.clear_cookies()
            return True
        except Exception as e:
            logger.debug(f"[browser-pool] Reset failed for {handle}: {e}")
            return False

    async def _close_handle(self, handle: PageHandle):
        await _close_quietly(handle.page)
        await _close_quietly(handle.context)

    async def _close_browser(self, session: BrowserSession):
        await _close_quietly(session.browser)

    async def _launch_chromium(self):
        async with self._playwright_lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            playwright = self._playwright
        return await playwright.chromium.launch(
            headless=self.headless,
            executable_path=self.executable_path,
            args=CHROMIUM_ARGS,
            timeout=self.launch_timeout * 1000,
        )


def _page_closed(page) -> bool:
    try:
        return bool(page.is_closed())
    except Exception:
        return True


async def _close_quietly(resource):
    try:
        await resource.close()
    except Exception as e:
        logger.debug(f"[browser-pool] Close failed: {e}")
