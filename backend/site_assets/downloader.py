"""
Download orchestrator: streams media URLs to disk under a global concurrency cap.

Single item: wait for an admission slot → GET (manual redirects, each hop
safety-checked) → reject oversized Content-Length before writing → stream
to a uniquely named file under downloads/images or downloads/videos,
aborting and deleting the partial file if the running byte count passes
the per-file or per-job ceiling → record size, type and timing.

Bulk: one task per URL with staggered starts, every item settles on its own
(no fail-fast), results aggregate into completed/failed lists.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable
from urllib.parse import urljoin

import httpx

from site_assets.browser_pool import USER_AGENT
from site_assets.errors import (
    AssetError,
    NetworkError,
    SizeExceeded,
    UnsafeTarget,
    WriteError,
)
from site_assets.models import DownloadFailure, DownloadResult, JobResult, ProgressEvent
from site_assets.retry import RetryPolicy, is_retryable, log_retry
from site_assets.url_utils import (
    filename_from_url,
    REDIRECT_STATUSES,
    format_bytes,
    format_duration,
    is_safe_url,
    media_type_for,
    numbered_filename,
)

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "*/*",
    "Accept-Encoding": "gzip, deflate",
    "Connection": "keep-alive",
}

ProgressCallback = Callable[[ProgressEvent], None]


class ThroughputMeter:
    """
    Bytes/second, resampled at most once per second. Calls inside the window
    return the previous sample.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, window: float = 1.0):
        self._clock = clock
        self._window = window
        self._last_time: float | None = None
        self._last_bytes = 0
        self._speed = 0

    def sample(self, total_bytes: int) -> int:
        now = self._clock()
        if self._last_time is None:
            self._last_time = now
            self._last_bytes = total_bytes
            return 0
        elapsed = now - self._last_time
        if elapsed < self._window:
            return self._speed
        self._speed = int((total_bytes - self._last_bytes) / elapsed)
        self._last_time = now
        self._last_bytes = total_bytes
        return self._speed


def _should_retry(error: BaseException) -> bool:
    if isinstance(error, (SizeExceeded, WriteError, UnsafeTarget)):
        return False
    return is_retryable(error)


class DownloadOrchestrator:
    def __init__(
        self,
        downloads_dir: str | Path,
        client: httpx.AsyncClient | None = None,
        concurrency_limit: int = 5,
        timeout: float = 30.0,
        max_file_size: int = 100 * 1024 * 1024,
        max_job_bytes: int | None = None,
        max_redirects: int = 5,
        stagger_delay: float = 0.1,
        retry_policy: RetryPolicy | None = None,
        url_validator: Callable[[str], bool] = is_safe_url,
        chunk_size: int = 64 * 1024,
        clock: Callable[[], float] = time.monotonic,
        sleep=asyncio.sleep,
    ):
        self.downloads_dir = Path(downloads_dir)
        self.concurrency_limit = max(1, concurrency_limit)
        self.timeout = timeout
        self.max_file_size = max_file_size
        self.max_job_bytes = max_job_bytes
        self.max_redirects = max_redirects
        self.stagger_delay = stagger_delay
        self.retry_policy = retry_policy or RetryPolicy()
        self.url_validator = url_validator
        self.chunk_size = chunk_size
        self._clock = clock
        self._sleep = sleep

        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(headers=DEFAULT_HEADERS)
        self._gate = asyncio.Semaphore(self.concurrency_limit)
        self._in_flight = 0
        self._job_bytes: dict[str, int] = {}
        self._job_users: dict[str, int] = {}  # open download_one/download_many calls per job

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def stats(self) -> dict:
        return {
            "inFlight": self._in_flight,
            "concurrencyLimit": self.concurrency_limit,
            "trackedJobs": len(self._job_bytes),
        }

    def directory_for(self, media_type: str) -> Path:
        return self.downloads_dir / f"{media_type}s"

    # ------------------------------------------------------------------
    # Single item
    # ------------------------------------------------------------------

    async def download_one(
        self,
        url: str,
        job_id: str,
        on_progress: ProgressCallback | None = None,
        index: int | None = None,
        total: int = 1,
    ) -> DownloadResult:
        """
        Download one URL with retries. Raises UnsafeTarget, NetworkError,
        SizeExceeded or WriteError; partial files never survive a failure.
        """
        if not self.url_validator(url):
            raise UnsafeTarget(f"Refusing to fetch unsafe URL: {url}")

        self._hold(job_id)
        try:
            return await self.retry_policy.run(
                lambda: self._admitted_attempt(url, job_id, on_progress, index, total),
                on_retry=log_retry(f"download {url}"),
                should_retry=_should_retry,
                sleep=self._sleep,
            )
        finally:
            self._release(job_id)

    async def _admitted_attempt(self, url, job_id, on_progress, index, total) -> DownloadResult:
        async with self._gate:
            self._in_flight += 1
            try:
                return await self._attempt(url, job_id, on_progress, index, total)
            except httpx.HTTPError as e:
                raise NetworkError(f"Network error: {e or type(e).__name__}") from e
            finally:
                self._in_flight -= 1

    async def _attempt(self, url, job_id, on_progress, index, total) -> DownloadResult:
        current = url
        for _ in range(self.max_redirects + 1):
            request = self.client.build_request("GET", current, headers=DEFAULT_HEADERS, timeout=self.timeout)
            response = await self.client.send(request, stream=True, follow_redirects=False)
            try:
                location = response.headers.get("location")
                if response.status_code in REDIRECT_STATUSES and location:
                    next_url = urljoin(current, location)
                    if not self.url_validator(next_url):
                        raise UnsafeTarget(f"Redirect to unsafe URL rejected: {next_url}")
                    current = next_url
                    continue
                if not 200 <= response.status_code < 400:
                    raise NetworkError(f"HTTP {response.status_code}", status_code=response.status_code)
                return await self._write_body(response, url, job_id, on_progress, index, total)
            finally:
                await response.aclose()
        raise NetworkError(f"Too many redirects (max {self.max_redirects})")

    async def _write_body(self, response: httpx.Response, url, job_id, on_progress, index, total) -> DownloadResult:
        started = self._clock()
        header_length = response.headers.get("content-length", "")
        content_length = int(header_length) if header_length.isdigit() else 0
        content_type = response.headers.get("content-type", "")

        if content_length > self.max_file_size:
            raise SizeExceeded(
                f"File too large: {format_bytes(content_length)} exceeds {format_bytes(self.max_file_size)}"
            )
        if self.max_job_bytes is not None and self._job_bytes.get(job_id, 0) + content_length > self.max_job_bytes:
            raise SizeExceeded(f"Job size limit of {format_bytes(self.max_job_bytes)} reached")

        media_type = media_type_for(url, content_type)
        path, fh = self._claim_file(self.directory_for(media_type), filename_from_url(url, content_type))

        downloaded = 0
        meter = ThroughputMeter(self._clock)
        try:
            with fh:
                async for chunk in response.aiter_bytes(self.chunk_size):
                    if downloaded + len(chunk) > self.max_file_size:
                        raise SizeExceeded(f"File too large: download exceeds {format_bytes(self.max_file_size)}")
                    self._reserve_job_bytes(job_id, len(chunk))
                    downloaded += len(chunk)
                    try:
                        fh.write(chunk)
                    except OSError as e:
                        raise WriteError(f"Failed to write {path.name}: {e}") from e

                    if on_progress:
                        _emit(on_progress, ProgressEvent(
                            type="item_progress",
                            job_id=job_id,
                            url=url,
                            index=index,
                            total=total,
                            downloaded_bytes=downloaded,
                            total_bytes=content_length,
                            percent=round(downloaded / content_length * 100) if content_length else 0,
                            speed=meter.sample(downloaded),
                        ))
        except httpx.HTTPError as e:
            self._abort(path, job_id, downloaded)
            raise NetworkError(f"Stream interrupted: {e or type(e).__name__}") from e
        except OSError as e:
            self._abort(path, job_id, downloaded)
            raise WriteError(f"Failed to write {path.name}: {e}") from e
        except BaseException:
            self._abort(path, job_id, downloaded)
            raise

        elapsed_ms = int((self._clock() - started) * 1000)
        logger.info(f"[download] {path.name} ({format_bytes(downloaded)}) in {elapsed_ms}ms")
        return DownloadResult(
            job_id=job_id,
            url=url,
            filename=path.name,
            path=str(path),
            size=downloaded,
            content_type=content_type,
            elapsed_ms=elapsed_ms,
            type=media_type,
        )

    def _hold(self, job_id: str):
        self._job_users[job_id] = self._job_users.get(job_id, 0) + 1

    def _release(self, job_id: str):
        """Drop the job's byte tally once its last open call returns."""
        users = self._job_users.get(job_id, 1) - 1
        if users > 0:
            self._job_users[job_id] = users
        else:
            self._job_users.pop(job_id, None)
            self._job_bytes.pop(job_id, None)

    def _reserve_job_bytes(self, job_id: str, count: int):
        used = self._job_bytes.get(job_id, 0)
        if self.max_job_bytes is not None and used + count > self.max_job_bytes:
            raise SizeExceeded(f"Job size limit of {format_bytes(self.max_job_bytes)} reached")
        self._job_bytes[job_id] = used + count

    def _abort(self, path: Path, job_id: str, downloaded: int):
        if job_id in self._job_bytes:
            self._job_bytes[job_id] = max(0, self._job_bytes[job_id] - downloaded)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"[download] Could not remove partial file {path}: {e}")

    @staticmethod
    def _claim_file(directory: Path, filename: str):
        """Create name, name_1, name_2, ... exclusively so concurrent items never share a file."""
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WriteError(f"Cannot create {directory}: {e}") from e
        counter = 0
        while True:
            path = directory / numbered_filename(filename, counter)
            try:
                return path, open(path, "xb")
            except FileExistsError:
                counter += 1
            except OSError as e:
                raise WriteError(f"Cannot create {path}: {e}") from e

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    async def download_many(
        self,
        urls: list[str],
        job_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> JobResult:
        """Download every URL. Never raises for item failures; they land in result.failed."""
        result = JobResult(job_id=job_id, total=len(urls), started_at=time.time())

        async def run(index: int, url: str):
            if index and self.stagger_delay:
                await self._sleep(index * self.stagger_delay)

            def item_progress(event: ProgressEvent):
                event.completed_count = len(result.completed)
                event.failed_count = len(result.failed)
                _emit(on_progress, event)

            try:
                item = await self.download_one(
                    url, job_id,
                    on_progress=item_progress if on_progress else None,
                    index=index, total=len(urls),
                )
            except AssetError as e:
                logger.warning(f"[download] Failed {url}: {e.message}")
                failure = DownloadFailure(
                    job_id=job_id, url=url, error_kind=e.kind, error=e.message,
                    status_code=getattr(e, "status_code", None),
                )
            except Exception as e:
                logger.exception(f"[download] Unexpected error for {url}")
                failure = DownloadFailure(job_id=job_id, url=url, error_kind="error", error=str(e) or type(e).__name__)
            else:
                result.completed.append(item)
                _emit(on_progress, ProgressEvent(
                    type="bulk_progress", job_id=job_id, url=url, index=index, total=len(urls),
                    completed_count=len(result.completed), failed_count=len(result.failed),
                    current_file=item.filename,
                ))
                return

            result.failed.append(failure)
            _emit(on_progress, ProgressEvent(
                type="bulk_progress", job_id=job_id, url=url, index=index, total=len(urls),
                completed_count=len(result.completed), failed_count=len(result.failed),
                error=failure.error,
            ))

        self._hold(job_id)
        try:
            await asyncio.gather(*(run(i, url) for i, url in enumerate(urls)))
        finally:
            self._release(job_id)

        result.ended_at = time.time()
        logger.info(
            f"[download] Job {job_id}: {len(result.completed)}/{result.total} completed, "
            f"{len(result.failed)} failed in {format_duration(result.duration_ms)}"
        )
        return result


def _emit(callback: ProgressCallback | None, event: ProgressEvent):
    """Progress observers must not break downloads."""
    if callback is None:
        return
    try:
        callback(event)
    except Exception:
        logger.exception("[download] Progress callback failed")
