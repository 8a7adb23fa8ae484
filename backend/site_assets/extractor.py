"""
Extraction pipeline: lease a page → scan → normalize → filter → probe → sort.

Pipeline: BrowserPool.page() → PageScanner.scan() → normalize_url() against the
final page URL → drop non-media / unsafe URLs → type filter → HEAD probe for
size, Content-Type and Last-Modified (retried, 405 tolerated) → size filter →
largest first.
"""

import asyncio
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable
from urllib.parse import urljoin

import httpx

from site_assets.browser_pool import BrowserPool, USER_AGENT
from site_assets.errors import AssetError, InvalidUrl, NetworkError, UnsafeTarget
from site_assets.models import ExtractionResult, MediaDescriptor, MediaFilters
from site_assets.retry import RetryPolicy, is_retryable, log_retry
from site_assets.scanner import PageScanner
from site_assets.url_utils import (
    REDIRECT_STATUSES,
    get_domain,
    is_safe_url,
    is_supported_media_url,
    is_valid_url,
    media_type_for,
    normalize_url,
    validate_media_filters,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]


class MediaExtractor:
    def __init__(
        self,
        pool: BrowserPool,
        scanner: PageScanner,
        client: httpx.AsyncClient | None = None,
        url_validator: Callable[[str], bool] = is_safe_url,
        probe_media: bool = True,
        probe_concurrency: int = 8,
        probe_timeout: float = 10.0,
        max_redirects: int = 5,
        retry_policy: RetryPolicy | None = None,
    ):
        self.pool = pool
        self.scanner = scanner
        self.url_validator = url_validator
        self.probe_media = probe_media
        self.probe_concurrency = max(1, probe_concurrency)
        self.probe_timeout = probe_timeout
        self.max_redirects = max_redirects
        self.retry_policy = retry_policy or RetryPolicy(max_retries=2, initial_delay=0.5)
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            headers={"User-Agent": USER_AGENT, "Accept": "*/*"},
        )

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()

    async def extract(
        self,
        target_url: str,
        filters: MediaFilters | dict | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ExtractionResult:
        if not isinstance(filters, MediaFilters):
            filters = validate_media_filters(filters)
        if not is_valid_url(target_url):
            raise InvalidUrl(f"Invalid URL provided: {target_url}")

        def progress(message: str):
            if on_progress:
                on_progress(message)

        result = ExtractionResult(
            url=target_url,
            domain=get_domain(target_url),
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

        progress("Waiting for a browser page...")
        async with self.pool.page() as handle:
            progress("Loading page...")
            scan = await self.scanner.scan(handle, target_url)

        progress("Processing discovered URLs...")
        base_url = scan.final_url or target_url
        candidates = self._normalize(scan.dom_media_urls + scan.network_media_urls, base_url, result)

        urls = []
        for url in candidates:
            if not self._type_allowed(media_type_for(url), filters):
                continue
            if not self.url_validator(url):
                result.errors.append({"url": url, "error": "Unsafe URL rejected", "kind": "unsafe_target"})
                continue
            urls.append(url)
        result.stats["totalFound"] = len(urls)

        progress("Validating media URLs...")
        descriptors = await self._describe_all(urls, result, progress)

        for media in descriptors:
            if media is None or not self._type_allowed(media.type, filters):
                continue
            if not self._size_allowed(media, filters):
                continue
            result.media.append(media)
            result.stats["images" if media.type == "image" else "videos"] += 1

        result.media.sort(key=lambda m: m.size or 0, reverse=True)
        logger.info(
            f"[extract] {target_url}: {len(result.media)} media "
            f"({result.stats['images']} images, {result.stats['videos']} videos), "
            f"{len(result.errors)} errors"
        )
        return result

    # ------------------------------------------------------------------

    def _normalize(self, raw_urls: list[str], base_url: str, result: ExtractionResult) -> list[str]:
        """Resolve and dedupe, keeping first-seen order."""
        seen = set()
        unique = []
        duplicates = 0
        for raw in raw_urls:
            url = normalize_url(raw, base_url)
            if not url or not is_supported_media_url(url):
                continue
            if url in seen:
                duplicates += 1
                continue
            seen.add(url)
            unique.append(url)
        result.stats["duplicatesRemoved"] = duplicates
        return unique

    @staticmethod
    def _type_allowed(media_type: str, filters: MediaFilters) -> bool:
        if media_type == "video":
            return filters.include_videos
        return filters.include_images

    @staticmethod
    def _size_allowed(media: MediaDescriptor, filters: MediaFilters) -> bool:
        if media.size is None:
            return True
        return filters.min_size_bytes <= media.size <= filters.max_size_bytes

    async def _describe_all(self, urls: list[str], result: ExtractionResult, progress) -> list:
        if not self.probe_media:
            return [MediaDescriptor(url=url, type=media_type_for(url)) for url in urls]

        semaphore = asyncio.Semaphore(self.probe_concurrency)
        done = 0

        async def describe(url: str):
            nonlocal done
            async with semaphore:
                try:
                    return await self.retry_policy.run(
                        lambda: self.probe(url),
                        on_retry=log_retry(f"probe {url}"),
                        should_retry=_should_retry,
                    )
                except AssetError as e:
                    result.errors.append({"url": url, "error": e.message, "kind": e.kind})
                except httpx.HTTPError as e:
                    result.errors.append({"url": url, "error": str(e) or type(e).__name__, "kind": "transient"})
                finally:
                    done += 1
                    progress(f"Validating media {done}/{len(urls)}...")
            return None

        return await asyncio.gather(*(describe(url) for url in urls))

    async def probe(self, url: str) -> MediaDescriptor:
        """
        HEAD the URL for size and type. Servers that refuse HEAD (405) yield a
        bare descriptor. Redirects are followed by hand so every hop passes the
        URL validator; an unsafe hop raises UnsafeTarget.
        """
        current = url
        for _ in range(self.max_redirects + 1):
            response = await self.client.head(current, timeout=self.probe_timeout, follow_redirects=False)
            location = response.headers.get("location")
            if response.status_code in REDIRECT_STATUSES and location:
                next_url = urljoin(current, location)
                if not self.url_validator(next_url):
                    raise UnsafeTarget(f"Redirect to unsafe URL rejected: {next_url}")
                current = next_url
                continue
            if response.status_code == 405:
                return MediaDescriptor(url=url, type=media_type_for(url))
            if response.status_code >= 400:
                raise NetworkError(f"HTTP {response.status_code}", status_code=response.status_code)

            content_length = response.headers.get("content-length")
            content_type = response.headers.get("content-type")
            last_modified = response.headers.get("last-modified")
            return MediaDescriptor(
                url=url,
                type=media_type_for(url, content_type),
                size=int(content_length) if content_length and content_length.isdigit() else None,
                content_type=content_type,
                last_modified=_parse_http_date(last_modified),
            )
        raise NetworkError(f"Too many redirects (max {self.max_redirects})")


def _should_retry(error: BaseException) -> bool:
    if isinstance(error, UnsafeTarget):
        return False
    return is_retryable(error)


def _parse_http_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
