"""
Data shapes exchanged between the scanner, the pipelines and the job registry.
"""

import math
import secrets
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class MediaFilters:
    """Normalized extraction filters. Build via url_utils.validate_media_filters."""
    include_images: bool = True
    include_videos: bool = True
    min_size_bytes: int = 0
    max_size_bytes: float = math.inf

    def to_dict(self) -> dict:
        return {
            "includeImages": self.include_images,
            "includeVideos": self.include_videos,
            "minSizeBytes": self.min_size_bytes,
            "maxSizeBytes": None if math.isinf(self.max_size_bytes) else int(self.max_size_bytes),
        }


@dataclass
class MediaDescriptor:
    url: str
    type: str  # "image" or "video"
    size: int | None = None
    content_type: str | None = None
    last_modified: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "type": self.type,
            "size": self.size,
            "contentType": self.content_type,
            "lastModified": self.last_modified.isoformat() if self.last_modified else None,
        }


@dataclass
class ScanResult:
    """Raw URLs a page scanner found. Unnormalized, may contain duplicates across sets."""
    dom_media_urls: list[str] = field(default_factory=list)
    network_media_urls: list[str] = field(default_factory=list)
    final_url: str | None = None


@dataclass
class ExtractionResult:
    url: str
    domain: str | None
    timestamp: str
    media: list[MediaDescriptor] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)
    stats: dict = field(default_factory=lambda: {
        "totalFound": 0,
        "images": 0,
        "videos": 0,
        "duplicatesRemoved": 0,
    })

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "domain": self.domain,
            "timestamp": self.timestamp,
            "media": [m.to_dict() for m in self.media],
            "errors": list(self.errors),
            "stats": dict(self.stats),
        }


# ---------------------------------------------------------------------------
# Downloads
# ---------------------------------------------------------------------------

@dataclass
class DownloadResult:
    job_id: str
    url: str
    filename: str
    path: str
    size: int
    content_type: str
    elapsed_ms: int
    type: str  # "image" or "video"
    id: str = field(default_factory=lambda: secrets.token_hex(8))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "jobId": self.job_id,
            "url": self.url,
            "filename": self.filename,
            "path": self.path,
            "size": self.size,
            "contentType": self.content_type,
            "elapsedMs": self.elapsed_ms,
            "type": self.type,
        }


@dataclass
class DownloadFailure:
    job_id: str
    url: str
    error_kind: str
    error: str
    status_code: int | None = None

    def to_dict(self) -> dict:
        return {
            "jobId": self.job_id,
            "url": self.url,
            "errorKind": self.error_kind,
            "error": self.error,
            "statusCode": self.status_code,
        }


@dataclass
class ArchiveInfo:
    archive_path: str
    filename: str
    file_count: int
    total_size: int
    archive_size: int

    def to_dict(self) -> dict:
        return {
            "archivePath": self.archive_path,
            "filename": self.filename,
            "fileCount": self.file_count,
            "totalSize": self.total_size,
            "archiveSize": self.archive_size,
        }


@dataclass
class JobResult:
    """Aggregate outcome of one bulk download."""
    job_id: str
    total: int
    completed: list[DownloadResult] = field(default_factory=list)
    failed: list[DownloadFailure] = field(default_factory=list)
    started_at: float = 0.0
    ended_at: float | None = None
    archive: ArchiveInfo | None = None

    @property
    def duration_ms(self) -> int | None:
        if self.ended_at is None:
            return None
        return int((self.ended_at - self.started_at) * 1000)

    @property
    def total_bytes(self) -> int:
        return sum(d.size for d in self.completed)

    def to_dict(self) -> dict:
        return {
            "jobId": self.job_id,
            "total": self.total,
            "completedCount": len(self.completed),
            "failedCount": len(self.failed),
            "totalBytes": self.total_bytes,
            "completed": [d.to_dict() for d in self.completed],
            "failed": [f.to_dict() for f in self.failed],
            "durationMs": self.duration_ms,
            "archive": self.archive.to_dict() if self.archive else None,
        }


@dataclass
class ProgressEvent:
    """
    One progress notification from the orchestrator.
    type is "item_progress" while bytes stream, "bulk_progress" when an item settles.
    """
    type: str
    job_id: str
    url: str | None = None
    index: int | None = None
    total: int = 0
    downloaded_bytes: int = 0
    total_bytes: int = 0
    percent: int = 0
    speed: int = 0
    completed_count: int = 0
    failed_count: int = 0
    current_file: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "jobId": self.job_id,
            "url": self.url,
            "index": self.index,
            "total": self.total,
            "downloadedBytes": self.downloaded_bytes,
            "totalBytes": self.total_bytes,
            "percent": self.percent,
            "speed": self.speed,
            "completedCount": self.completed_count,
            "failedCount": self.failed_count,
            "currentFile": self.current_file,
            "error": self.error,
        }
