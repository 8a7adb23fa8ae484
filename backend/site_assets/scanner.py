"""
Page scanner: finds candidate media URLs on a loaded page.

Two sources are combined:
1. Network capture: every response the browser receives whose URL or
   Content-Type looks like media (catches lazy-loaded and JS-injected assets).
2. DOM scan: img/video/source/picture attributes, srcset candidates,
   lazy-load data attributes, inline and computed background images.

The pipeline only depends on `PageScanner.scan`; swap in another scanner
to change the heuristics.
"""

import asyncio
import logging

from site_assets.errors import NetworkError
from site_assets.models import ScanResult
from site_assets.retry import RetryPolicy, log_retry
from site_assets.url_utils import is_supported_media_url

logger = logging.getLogger(__name__)


class PageScanner:
    async def scan(self, handle, target_url: str) -> ScanResult:
        raise NotImplementedError


DOM_MEDIA_SCRIPT = '''() => {
    const urls = new Set();
    const add = (value) => {
        if (value && typeof value === 'string' && value.trim()) urls.add(value.trim());
    };
    const addSrcset = (srcset) => {
        if (!srcset) return;
        srcset.split(',').forEach(entry => {
            const first = entry.trim().split(/\\s+/)[0];
            add(first);
        });
    };
    const addCssUrls = (text) => {
        if (!text) return;
        const re = /url\\(\\s*['"]?([^'")]+)['"]?\\s*\\)/gi;
        let m;
        while ((m = re.exec(text)) !== null) add(m[1]);
    };

    const attrs = [
        'src', 'data-src', 'data-lazy-src', 'data-original', 'data-lazy',
        'data-background', 'poster', 'data-bg', 'data-background-image'
    ];
    document.querySelectorAll('img, video, source, audio, picture source, [data-src], [data-bg], [data-background-image]').forEach(el => {
        attrs.forEach(a => add(el.getAttribute(a)));
        addSrcset(el.getAttribute('srcset'));
        addSrcset(el.getAttribute('data-srcset'));
        if (el.currentSrc) add(el.currentSrc);
    });

    // Inline styles
    document.querySelectorAll('[style*="url("]').forEach(el => addCssUrls(el.getAttribute('style')));

    // <style> blocks
    document.querySelectorAll('style').forEach(s => addCssUrls(s.textContent));

    // Computed background images (capped, big pages are slow)
    let checked = 0;
    for (const el of document.querySelectorAll('body *')) {
        if (checked++ > 5000) break;
        const bg = getComputedStyle(el).backgroundImage;
        if (bg && bg !== 'none') addCssUrls(bg);
    }

    // Any data-* attribute that looks like a media URL
    const mediaRe = /\\.(jpg|jpeg|png|gif|webp|svg|bmp|ico|tiff|avif|mp4|webm|avi|mov|mkv|wmv|flv|m4v|3gp)(\\?|#|$)/i;
    document.querySelectorAll('*').forEach(el => {
        for (const attr of el.attributes) {
            if (attr.name.startsWith('data-') && mediaRe.test(attr.value)) add(attr.value);
        }
    });

    return [...urls];
}'''

# Scroll in steps to trigger lazy loading, capped to avoid infinite-scroll pages
LAZY_LOAD_SCRIPT = '''async () => {
    await new Promise(resolve => {
        let total = 0;
        const distance = 600;
        const maxScroll = 20000;
        let iterations = 0;
        const maxIterations = 40;
        const timer = setInterval(() => {
            window.scrollBy(0, distance);
            total += distance;
            iterations++;
            if (total >= document.body.scrollHeight || total >= maxScroll || iterations >= maxIterations) {
                clearInterval(timer);
                window.scrollTo(0, 0);
                resolve();
            }
        }, 100);
    });
    document.querySelectorAll('img[loading="lazy"]').forEach(img => {
        img.loading = 'eager';
        if (img.dataset.src) img.src = img.dataset.src;
        if (img.dataset.srcset) img.srcset = img.dataset.srcset;
    });
}'''


class BrowserPageScanner(PageScanner):
    """Default scanner driving a leased Playwright page."""

    def __init__(
        self,
        navigation_timeout: float = 30.0,
        settle_delay: float = 2.0,
        retry_policy: RetryPolicy | None = None,
    ):
        self.navigation_timeout = navigation_timeout
        self.settle_delay = settle_delay
        self.retry_policy = retry_policy or RetryPolicy(max_retries=2, initial_delay=1.0)

    async def scan(self, handle, target_url: str) -> ScanResult:
        page = handle.page
        network_urls: list[str] = []
        seen_network: set[str] = set()

        def on_response(response):
            url = response.url
            if url in seen_network:
                return
            content_type = (response.headers.get("content-type") or "").lower()
            if is_supported_media_url(url) or content_type.startswith(("image/", "video/")):
                seen_network.add(url)
                network_urls.append(url)

        page.on("response", on_response)
        try:
            await self.retry_policy.run(
                lambda: self._navigate(page, target_url),
                on_retry=log_retry(f"page load {target_url}"),
            )
            if self.settle_delay:
                await asyncio.sleep(self.settle_delay)

            try:
                await page.evaluate(LAZY_LOAD_SCRIPT)
                await asyncio.sleep(1.0)
            except Exception as e:
                logger.info(f"[scan] Lazy-load trigger failed: {e}")

            try:
                dom_urls = await page.evaluate(DOM_MEDIA_SCRIPT)
            except Exception as e:
                logger.warning(f"[scan] DOM media extraction failed: {e}")
                dom_urls = []

            return ScanResult(
                dom_media_urls=list(dom_urls or []),
                network_media_urls=list(network_urls),
                final_url=page.url or target_url,
            )
        finally:
            page.remove_listener("response", on_response)

    async def _navigate(self, page, url: str):
        timeout_ms = self.navigation_timeout * 1000
        try:
            response = await page.goto(url, wait_until="networkidle", timeout=timeout_ms)
        except Exception as e:
            # networkidle never settles on chatty pages; fall back to DOM ready
            logger.info(f"[scan] networkidle failed for {url} ({e}), retrying with domcontentloaded")
            response = await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)

        if response is not None and response.status >= 400:
            raise NetworkError(f"HTTP {response.status} loading {url}", status_code=response.status)
        return response
