import asyncio

import httpx
import pytest

from site_assets.browser_pool import BrowserPool
from site_assets.errors import InvalidUrl
from site_assets.extractor import MediaExtractor
from site_assets.models import ScanResult
from site_assets.retry import RetryPolicy
from site_assets.scanner import PageScanner

SIZES = {
    "/img/hero.jpg": ("image/jpeg", 50_000),
    "/img/thumb.png": ("image/png", 800),
    "/img/logo.svg": ("image/svg+xml", 3_000),
    "/media/intro.mp4": ("video/mp4", 2_000_000),
    "/gallery/photo": ("image/webp", 9_000),
}


class FakeScanner(PageScanner):
    def __init__(self, result):
        self.result = result
        self.handles = []

    async def scan(self, handle, target_url):
        self.handles.append(handle)
        return self.result


def head_handler(request):
    path = request.url.path
    if path == "/img/nohead.gif":
        return httpx.Response(405)
    if path == "/img/gone.jpg":
        return httpx.Response(404)
    content_type, size = SIZES[path]
    return httpx.Response(200, headers={
        "content-type": content_type,
        "content-length": str(size),
        "last-modified": "Wed, 21 Oct 2015 07:28:00 GMT",
    })


def run_extraction(launcher, scan, filters, progress=None, handler=head_handler):
    async def scenario():
        pool = BrowserPool(launcher=launcher, acquire_timeout=1.0)
        scanner = FakeScanner(scan)
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        extractor = MediaExtractor(
            pool, scanner, client=client,
            retry_policy=RetryPolicy(max_retries=1, initial_delay=0),
        )
        try:
            result = await extractor.extract("https://example.com/gallery", filters, on_progress=progress)
        finally:
            await client.aclose()
            stats = pool.stats()
            await pool.shutdown()
        return result, scanner, stats

    return asyncio.run(scenario())


SCAN = ScanResult(
    dom_media_urls=[
        "/img/hero.jpg",
        "img/thumb.png",
        "//example.com/img/logo.svg#fragment",
        "data:image/png;base64,AAAA",
        "/img/hero.jpg",
        "/scripts/app.js",
    ],
    network_media_urls=[
        "https://example.com/media/intro.mp4",
        "https://example.com/img/hero.jpg",
        "https://example.com/gallery/photo",
    ],
    final_url="https://example.com/",
)


def test_images_only_filter_never_returns_videos(launcher):
    result, _, _ = run_extraction(launcher, SCAN, {"includeImages": True, "includeVideos": False})

    assert result.media
    assert all(m.type == "image" for m in result.media)
    assert result.stats["videos"] == 0
    assert result.stats["images"] == len(result.media)


def test_urls_are_normalized_deduplicated_and_sorted(launcher):
    messages = []
    result, scanner, stats = run_extraction(launcher, SCAN, {}, progress=messages.append)

    urls = [m.url for m in result.media]
    assert urls == [
        "https://example.com/media/intro.mp4",
        "https://example.com/img/hero.jpg",
        "https://example.com/gallery/photo",
        "https://example.com/img/logo.svg",
        "https://example.com/img/thumb.png",
    ]
    assert result.stats["duplicatesRemoved"] == 2
    assert result.stats["totalFound"] == 5
    assert result.domain == "example.com"

    video = result.media[0]
    assert video.type == "video"
    assert video.size == 2_000_000
    assert video.content_type == "video/mp4"
    assert video.last_modified.year == 2015

    assert len(scanner.handles) == 1
    assert stats["busy"] == 0 and stats["available"] == 1
    assert "Validating media 5/5..." in messages


def test_size_filter_applies_only_to_known_sizes(launcher):
    scan = ScanResult(dom_media_urls=[
        "https://example.com/img/thumb.png",
        "https://example.com/img/hero.jpg",
        "https://example.com/img/nohead.gif",
    ])
    result, _, _ = run_extraction(launcher, scan, {"minSizeBytes": 1000, "maxSizeBytes": 100_000})

    assert sorted(m.url for m in result.media) == [
        "https://example.com/img/hero.jpg",
        "https://example.com/img/nohead.gif",
    ]
    bare = next(m for m in result.media if m.url.endswith("nohead.gif"))
    assert bare.size is None and bare.content_type is None


def test_head_failures_are_reported_not_fatal(launcher):
    scan = ScanResult(dom_media_urls=[
        "https://example.com/img/hero.jpg",
        "https://example.com/img/gone.jpg",
        "http://192.168.1.10/private.jpg",
    ])
    result, _, _ = run_extraction(launcher, scan, {})

    assert [m.url for m in result.media] == ["https://example.com/img/hero.jpg"]
    kinds = {e["url"]: e["kind"] for e in result.errors}
    assert kinds == {
        "https://example.com/img/gone.jpg": "permanent",
        "http://192.168.1.10/private.jpg": "unsafe_target",
    }


def test_invalid_target_url_is_rejected(launcher):
    async def scenario():
        pool = BrowserPool(launcher=launcher)
        extractor = MediaExtractor(pool, FakeScanner(ScanResult()), client=httpx.AsyncClient())
        try:
            with pytest.raises(InvalidUrl):
                await extractor.extract("ftp://example.com/", {})
        finally:
            await extractor.client.aclose()

    asyncio.run(scenario())
    assert launcher.launches == 0


def test_redirect_to_metadata_host_is_refused(launcher):
    seen = []

    def handler(request):
        seen.append(str(request.url))
        if request.url.path == "/img/moved.jpg":
            return httpx.Response(302, headers={"location": "http://169.254.169.254/latest/meta-data"})
        if request.url.path == "/img/renamed.png":
            return httpx.Response(301, headers={"location": "/img/thumb.png"})
        return head_handler(request)

    scan = ScanResult(dom_media_urls=[
        "https://example.com/img/moved.jpg",
        "https://example.com/img/renamed.png",
    ])
    result, _, _ = run_extraction(launcher, scan, {}, handler=handler)

    assert not any("169.254.169.254" in url for url in seen)
    assert seen.count("https://example.com/img/moved.jpg") == 1
    assert [m.url for m in result.media] == ["https://example.com/img/renamed.png"]
    assert result.media[0].size == 800
    assert result.errors == [{
        "url": "https://example.com/img/moved.jpg",
        "error": "Redirect to unsafe URL rejected: http://169.254.169.254/latest/meta-data",
        "kind": "unsafe_target",
    }]
