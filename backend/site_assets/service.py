"""
Core facade: the only object the HTTP layer talks to.

Owns one BrowserPool, MediaExtractor, DownloadOrchestrator, ArchiveBuilder
and JobRegistry (no module-level singletons). Extraction and bulk download
run as background tasks; callers get a job id back immediately and poll
get_job_status(). Any exception inside a background task is recorded on the
job as failed, never left to crash the task.
"""

import asyncio
import logging
import os
from pathlib import Path

from site_assets.archive import ArchiveBuilder
from site_assets.browser_pool import BrowserPool
from site_assets.config import Settings, get_settings
from site_assets.downloader import DownloadOrchestrator
from site_assets.errors import (
    AssetError,
    InvalidInput,
    InvalidJobId,
    InvalidUrl,
    JobNotFound,
    TooManyFiles,
    UnsafeTarget,
)
from site_assets.extractor import MediaExtractor
from site_assets.jobs import COMPLETED, JobRegistry, delete_files
from site_assets.models import DownloadResult, JobResult, MediaFilters, ProgressEvent
from site_assets.retry import RetryPolicy
from site_assets.scanner import BrowserPageScanner
from site_assets.url_utils import is_safe_url, is_valid_job_id, is_valid_url, validate_media_filters

logger = logging.getLogger(__name__)

EXTRACTION = "extraction"
DOWNLOAD = "download"


class AssetService:
    def __init__(
        self,
        pool: BrowserPool,
        extractor: MediaExtractor,
        downloader: DownloadOrchestrator,
        archiver: ArchiveBuilder,
        registry: JobRegistry,
        max_bulk_files: int = 100,
        sweep_interval: float = 30 * 60,
        url_validator=is_safe_url,
    ):
        self.pool = pool
        self.extractor = extractor
        self.downloader = downloader
        self.archiver = archiver
        self.registry = registry
        self.max_bulk_files = max_bulk_files
        self.sweep_interval = sweep_interval
        self.url_validator = url_validator
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "AssetService":
        settings = settings or get_settings()
        retry_policy = RetryPolicy(
            max_retries=settings.max_retries,
            initial_delay=settings.retry_initial_delay,
            backoff_multiplier=settings.retry_backoff,
        )
        pool = BrowserPool(
            max_browsers=settings.max_browsers,
            max_pages_per_browser=settings.max_pages_per_browser,
            acquire_timeout=settings.pool_acquire_timeout,
            launch_timeout=settings.browser_launch_timeout,
            headless=settings.headless,
            executable_path=settings.browser_executable_path,
        )
        scanner = BrowserPageScanner(
            navigation_timeout=settings.navigation_timeout,
            settle_delay=settings.settle_delay,
            retry_policy=retry_policy,
        )
        extractor = MediaExtractor(
            pool,
            scanner,
            probe_media=settings.probe_media,
            probe_concurrency=settings.probe_concurrency,
            max_redirects=settings.max_redirects,
            retry_policy=retry_policy,
        )
        downloader = DownloadOrchestrator(
            settings.downloads_dir,
            concurrency_limit=settings.concurrent_downloads,
            timeout=settings.download_timeout,
            max_file_size=settings.max_file_size,
            max_job_bytes=settings.max_job_bytes,
            max_redirects=settings.max_redirects,
            stagger_delay=settings.stagger_delay,
            retry_policy=retry_policy,
        )
        archiver = ArchiveBuilder(os.path.join(settings.downloads_dir, "archives"))
        registry = JobRegistry(
            max_active=settings.max_active_jobs,
            max_completed=settings.max_completed_jobs,
            retention=settings.job_retention,
        )
        return cls(
            pool, extractor, downloader, archiver, registry,
            max_bulk_files=settings.max_bulk_files,
            sweep_interval=settings.sweep_interval,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start background housekeeping. Needs a running event loop."""
        self.registry.start_sweeper(self.sweep_interval)

    async def shutdown(self):
        await self.registry.stop_sweeper()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.extractor.aclose()
        await self.downloader.aclose()
        await self.pool.shutdown()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def start_extraction(self, url: str, filters: MediaFilters | dict | None = None) -> str:
        """Validate, register and launch an extraction. Returns the job id immediately."""
        url = url.strip() if isinstance(url, str) else url
        if not is_valid_url(url):
            raise InvalidUrl("Invalid URL provided. Please provide a valid HTTP or HTTPS URL.")
        if not self.url_validator(url):
            raise UnsafeTarget("URL not allowed for security reasons")
        if not isinstance(filters, MediaFilters):
            filters = validate_media_filters(filters)

        job_id = self.registry.create(EXTRACTION, url=url)
        self.registry.update_progress(job_id, "Initializing extraction...")
        self._spawn(self._run_extraction(job_id, url, filters))
        return job_id

    async def _run_extraction(self, job_id: str, url: str, filters: MediaFilters):
        try:
            result = await self.extractor.extract(
                url, filters,
                on_progress=lambda message: self.registry.update_progress(job_id, message),
            )
        except asyncio.CancelledError:
            self.registry.fail(job_id, "Cancelled")
            raise
        except AssetError as e:
            logger.warning(f"[service] Extraction {job_id} failed: {e.message}")
            self.registry.fail(job_id, e.message)
        except Exception as e:
            logger.exception(f"[service] Extraction {job_id} crashed")
            self.registry.fail(job_id, str(e) or type(e).__name__)
        else:
            self.registry.complete(job_id, result)

    # ------------------------------------------------------------------
    # Bulk download
    # ------------------------------------------------------------------

    def start_bulk_download(self, job_id: str, urls: list[str]) -> str:
        """Launch a bulk download for URLs picked from extraction `job_id`. Returns the download job id."""
        self._check_job_id(job_id)
        if not isinstance(urls, (list, tuple)) or not all(isinstance(u, str) for u in urls):
            raise InvalidInput("mediaUrls must be a list of URL strings")
        if len(urls) > self.max_bulk_files:
            raise TooManyFiles(f"Maximum {self.max_bulk_files} files allowed per bulk download")

        urls = [u.strip() for u in urls]
        download_id = self.registry.create(DOWNLOAD, sourceJobId=job_id, total=len(urls))
        self.registry.update_progress(download_id, ProgressEvent(
            type="bulk_progress", job_id=download_id, total=len(urls),
        ).to_dict())
        self._spawn(self._run_download(download_id, urls))
        return download_id

    async def _run_download(self, download_id: str, urls: list[str]):
        try:
            result = await self.downloader.download_many(
                urls, download_id,
                on_progress=lambda event: self.registry.update_progress(download_id, event.to_dict()),
            )
            if not self._adopt_files(download_id, [d.path for d in result.completed]):
                return
            self.registry.add_items(download_id, result.completed)

            self.registry.update_progress(download_id, "Creating archive...")
            result.archive = await self.archiver.build(result)
            if not self._adopt_files(download_id, [result.archive.archive_path]):
                return
        except asyncio.CancelledError:
            self.registry.fail(download_id, "Cancelled")
            raise
        except AssetError as e:
            logger.warning(f"[service] Download {download_id} failed: {e.message}")
            self.registry.fail(download_id, e.message)
        except Exception as e:
            logger.exception(f"[service] Download {download_id} crashed")
            self.registry.fail(download_id, str(e) or type(e).__name__)
        else:
            self.registry.complete(download_id, result)

    def _adopt_files(self, job_id: str, paths: list[str]) -> bool:
        """Hand files to the registry; if the job was cleaned up meanwhile, delete them now."""
        if self.registry.add_owned_files(job_id, paths):
            return True
        delete_files(paths)
        return False

    def get_archive(self, download_job_id: str) -> Path:
        self._check_job_id(download_job_id)
        state = self.registry.get(download_job_id)
        result = state.result
        if state.kind != DOWNLOAD or state.status != COMPLETED or not isinstance(result, JobResult) or result.archive is None:
            raise JobNotFound("Archive not found or not ready")
        path = Path(result.archive.archive_path)
        if not path.is_file():
            raise JobNotFound("Archive file no longer exists")
        return path

    def get_download(self, item_id: str) -> DownloadResult:
        """A single downloaded file by its item id, for ranged or whole-file serving."""
        self._check_job_id(item_id)
        _, item = self.registry.get_item(item_id)
        if not Path(item.path).is_file():
            raise JobNotFound("Downloaded file no longer exists")
        return item

    # ------------------------------------------------------------------
    # Status & housekeeping
    # ------------------------------------------------------------------

    def get_job_status(self, job_id: str) -> dict:
        self._check_job_id(job_id)
        state = self.registry.get(job_id)
        status = {"jobId": state.job_id, "kind": state.kind, "status": state.status}
        if state.progress is not None and not state.finished:
            status["progress"] = state.progress
        if state.result is not None:
            status["result"] = state.result.to_dict()
        if state.error:
            status["error"] = state.error
        return status

    def cleanup(self, job_id: str) -> dict:
        self._check_job_id(job_id)
        deleted = self.registry.cleanup(job_id)
        return {"jobId": job_id, "deletedFiles": deleted}

    def list_jobs(self) -> list[dict]:
        return self.registry.list_jobs()

    def stats(self) -> dict:
        return {
            "jobs": self.registry.stats(),
            "pool": self.pool.stats(),
            "downloads": self.downloader.stats(),
            "backgroundTasks": len(self._tasks),
        }

    @staticmethod
    def _check_job_id(job_id):
        if not is_valid_job_id(job_id):
            raise InvalidJobId("Invalid job ID format")
