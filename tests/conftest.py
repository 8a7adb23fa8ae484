"""Fakes standing in for Playwright objects so pool and pipeline tests run without a browser."""

import asyncio

import pytest


class FakePage:
    def __init__(self, context):
        self.context = context
        self.url = "about:blank"
        self.closed = False
        self.fail_reset = False
        self.listeners = {}
        self.goto_calls = []

    async def evaluate(self, script, *args):
        if self.fail_reset:
            raise RuntimeError("Target page crashed")
        return None

    async def goto(self, url, **kwargs):
        self.goto_calls.append((url, kwargs))
        if self.fail_reset and url == "about:blank":
            raise RuntimeError("Navigation failed")
        self.url = url
        return None

    def is_closed(self):
        return self.closed

    async def close(self):
        self.closed = True

    def on(self, event, callback):
        self.listeners.setdefault(event, []).append(callback)

    def remove_listener(self, event, callback):
        self.listeners.get(event, []).remove(callback)


class FakeContext:
    def __init__(self, browser):
        self.browser = browser
        self.pages = []
        self.closed = False
        self.cookies_cleared = 0

    async def add_init_script(self, script):
        return None

    async def new_page(self):
        page = FakePage(self)
        self.pages.append(page)
        return page

    async def clear_cookies(self):
        self.cookies_cleared += 1

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self):
        self.connected = True
        self.contexts = []

    def is_connected(self):
        return self.connected

    async def new_context(self, **kwargs):
        context = FakeContext(self)
        self.contexts.append(context)
        return context

    async def close(self):
        self.connected = False


class FakeLauncher:
    """Async callable handed to BrowserPool(launcher=...). Counts launches."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.browsers = []

    @property
    def launches(self):
        return len(self.browsers)

    async def __call__(self):
        browser = FakeBrowser()
        self.browsers.append(browser)
        if self.delay:
            await asyncio.sleep(self.delay)
        return browser


@pytest.fixture
def launcher():
    return FakeLauncher()
