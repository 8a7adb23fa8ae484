"""
In-memory job registry with hard ceilings.

Active jobs live in one bounded map; creating a job past the ceiling fails
with TooManyActiveJobs instead of queuing. Finished jobs move to a bounded
completed map kept in completion order, so the oldest entry is always first
and is the one evicted (files included) when the map is full. A background
sweeper drops completed jobs older than the retention window.

All map mutations are synchronous, so no check-then-act spans an await.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from site_assets.errors import JobNotFound, TooManyActiveJobs
from site_assets.url_utils import create_job_id

logger = logging.getLogger(__name__)

RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"


@dataclass
class JobState:
    job_id: str
    kind: str  # "extraction" or "download"
    status: str = RUNNING
    created_at: float = 0.0
    completed_at: float | None = None
    progress: Any = None
    result: Any = None
    error: str | None = None
    owned_files: list[str] = field(default_factory=list)
    items: dict = field(default_factory=dict)  # downloaded item id -> DownloadResult
    meta: dict = field(default_factory=dict)

    @property
    def finished(self) -> bool:
        return self.status != RUNNING

    def summary(self) -> dict:
        return {
            "jobId": self.job_id,
            "kind": self.kind,
            "status": self.status,
            "createdAt": self.created_at,
            "completedAt": self.completed_at,
            "error": self.error,
            "fileCount": len(self.owned_files),
            **self.meta,
        }


def delete_files(paths) -> int:
    """Remove files, ignoring ones already gone. Returns how many were deleted."""
    deleted = 0
    for path in paths:
        try:
            Path(path).unlink()
            deleted += 1
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"[jobs] Could not delete {path}: {e}")
    return deleted


class JobRegistry:
    def __init__(
        self,
        max_active: int = 50,
        max_completed: int = 200,
        retention: float = 2 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ):
        if max_active < 1 or max_completed < 1:
            raise ValueError("Registry ceilings must be at least 1")
        self.max_active = max_active
        self.max_completed = max_completed
        self.retention = retention
        self._clock = clock
        self._active: dict[str, JobState] = {}
        self._completed: dict[str, JobState] = {}  # completion order, oldest first
        self._item_owner: dict[str, str] = {}  # item id -> job id
        self._sweeper: asyncio.Task | None = None

    def __len__(self):
        return len(self._active) + len(self._completed)

    def __contains__(self, job_id):
        return job_id in self._active or job_id in self._completed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self, kind: str, **meta) -> str:
        if len(self._active) >= self.max_active:
            raise TooManyActiveJobs(
                f"Too many active jobs ({self.max_active}). Please try again later."
            )
        job_id = create_job_id()
        self._active[job_id] = JobState(job_id=job_id, kind=kind, created_at=self._clock(), meta=meta)
        logger.info(f"[jobs] Created {kind} job {job_id} ({len(self._active)} active)")
        return job_id

    def get(self, job_id: str) -> JobState:
        """Active first, then completed. Raises JobNotFound on a miss in both."""
        state = self._active.get(job_id) or self._completed.get(job_id)
        if state is None:
            raise JobNotFound(f"Job not found: {job_id}")
        return state

    def update_progress(self, job_id: str, progress) -> bool:
        state = self._active.get(job_id)
        if state is None:
            return False
        state.progress = progress
        return True

    def add_owned_files(self, job_id: str, paths) -> bool:
        """Attach files to a job so eviction and cleanup delete them. False if the job is gone."""
        state = self._active.get(job_id) or self._completed.get(job_id)
        if state is None:
            return False
        state.owned_files.extend(str(p) for p in paths)
        return True

    def add_items(self, job_id: str, items) -> bool:
        """Index downloaded items by their id so they can be served one by one. False if the job is gone."""
        state = self._active.get(job_id) or self._completed.get(job_id)
        if state is None:
            return False
        for item in items:
            state.items[item.id] = item
            self._item_owner[item.id] = job_id
        return True

    def get_item(self, item_id: str):
        """Return (job state, item) for a downloaded item. Raises JobNotFound on a miss."""
        job_id = self._item_owner.get(item_id, "")
        state = self._active.get(job_id) or self._completed.get(job_id)
        if state is None or item_id not in state.items:
            raise JobNotFound(f"Download not found: {item_id}")
        return state, state.items[item_id]

    def complete(self, job_id: str, result) -> bool:
        return self._finish(job_id, COMPLETED, result=result)

    def fail(self, job_id: str, error: str) -> bool:
        return self._finish(job_id, FAILED, error=error)

    def _finish(self, job_id: str, status: str, result=None, error: str | None = None) -> bool:
        state = self._active.pop(job_id, None)
        if state is None:
            # Cleaned up while running
            logger.info(f"[jobs] Job {job_id} finished after removal, dropping result")
            return False

        if len(self._completed) >= self.max_completed:
            oldest_id = next(iter(self._completed))
            self._remove(self._completed.pop(oldest_id), reason="evicted")

        state.status = status
        state.result = result
        state.error = error
        state.completed_at = self._clock()
        self._completed[job_id] = state
        logger.info(f"[jobs] Job {job_id} {status}")
        return True

    def cleanup(self, job_id: str) -> int:
        """Delete a job's files and forget it. Returns the number of files removed."""
        state = self._active.pop(job_id, None) or self._completed.pop(job_id, None)
        if state is None:
            raise JobNotFound(f"Job not found: {job_id}")
        return self._remove(state, reason="cleaned up")

    def sweep_expired(self) -> int:
        """Drop completed jobs older than the retention window. Returns how many were removed."""
        cutoff = self._clock() - self.retention
        expired = [jid for jid, s in self._completed.items() if (s.completed_at or s.created_at) < cutoff]
        for job_id in expired:
            self._remove(self._completed.pop(job_id), reason="expired")
        if expired:
            logger.info(f"[jobs] Swept {len(expired)} expired job(s)")
        return len(expired)

    def _remove(self, state: JobState, reason: str) -> int:
        for item_id in state.items:
            self._item_owner.pop(item_id, None)
        state.items = {}
        deleted = delete_files(state.owned_files)
        state.owned_files = []
        logger.info(f"[jobs] Job {state.job_id} {reason} ({deleted} file(s) deleted)")
        return deleted

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def list_jobs(self) -> list[dict]:
        jobs = [s.summary() for s in self._active.values()]
        jobs += [s.summary() for s in self._completed.values()]
        return sorted(jobs, key=lambda j: j["createdAt"], reverse=True)

    def stats(self) -> dict:
        failed = sum(1 for s in self._completed.values() if s.status == FAILED)
        return {
            "active": len(self._active),
            "completed": len(self._completed) - failed,
            "failed": failed,
            "maxActive": self.max_active,
            "maxCompleted": self.max_completed,
        }

    # ---------------------------------------------------------------------------
    # Background sweep
    # ---------------------------------------------------------------------------

    async def _sweep_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep_expired()
            except Exception as e:
                logger.error(f"[jobs] Sweep failed: {e}")

    def start_sweeper(self, interval: float = 30 * 60):
        """Start the periodic sweep. Call from server lifespan."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(interval))

    async def stop_sweeper(self):
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
