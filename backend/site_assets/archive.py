"""
Archive builder: zips a finished download job plus a manifest.json.

Entries are stored as "<type>s/<filename>" (images/..., videos/...). Files
that disappeared since the download (cleanup, eviction) are skipped and left
out of the manifest, so the manifest always describes the archive contents.
"""

import asyncio
import json
import logging
import zipfile
from datetime import datetime, timezone
from pathlib import Path

from site_assets.errors import ArchiveError
from site_assets.models import ArchiveInfo, JobResult
from site_assets.url_utils import format_bytes

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"


def archive_filename(job_id: str) -> str:
    return f"{job_id}_archive.zip"


def entry_name(media_type: str, filename: str) -> str:
    return f"{media_type}s/{filename}"


class ArchiveBuilder:
    def __init__(self, output_dir: str | Path, compresslevel: int = 9):
        self.output_dir = Path(output_dir)
        self.compresslevel = compresslevel

    def path_for(self, job_id: str) -> Path:
        return self.output_dir / archive_filename(job_id)

    async def build(self, job_result: JobResult) -> ArchiveInfo:
        """Write the archive off the event loop. Raises ArchiveError; no partial archive is left behind."""
        return await asyncio.to_thread(self._build_sync, job_result)

    def _build_sync(self, job_result: JobResult) -> ArchiveInfo:
        archive_path = self.path_for(job_result.job_id)
        files = []
        total_size = 0

        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            with zipfile.ZipFile(
                archive_path, "w",
                compression=zipfile.ZIP_DEFLATED,
                compresslevel=self.compresslevel,
            ) as zf:
                used_names = set()
                for item in job_result.completed:
                    source = Path(item.path)
                    if not source.is_file():
                        logger.warning(f"[archive] Skipping missing file {source}")
                        continue
                    name = entry_name(item.type, item.filename)
                    if name in used_names:
                        continue
                    used_names.add(name)

                    try:
                        size = source.stat().st_size
                        zf.write(source, arcname=name)
                    except FileNotFoundError:
                        # Removed between the check above and the read
                        logger.warning(f"[archive] Skipping file removed during archiving {source}")
                        used_names.discard(name)
                        continue
                    total_size += size
                    files.append({
                        "filename": item.filename,
                        "originalUrl": item.url,
                        "size": size,
                        "type": item.type,
                        "contentType": item.content_type,
                    })

                manifest = {
                    "jobId": job_result.job_id,
                    "createdAt": datetime.now(timezone.utc).isoformat(),
                    "totalFiles": len(files),
                    "totalSize": total_size,
                    "files": files,
                }
                zf.writestr(MANIFEST_NAME, json.dumps(manifest, indent=2))
        except (OSError, zipfile.BadZipFile) as e:
            _remove_partial(archive_path)
            raise ArchiveError(f"Failed to build archive for job {job_result.job_id}: {e}") from e

        archive_size = archive_path.stat().st_size
        logger.info(
            f"[archive] {archive_path.name}: {len(files)} files, "
            f"{format_bytes(total_size)} -> {format_bytes(archive_size)}"
        )
        return ArchiveInfo(
            archive_path=str(archive_path),
            filename=archive_path.name,
            file_count=len(files),
            total_size=total_size,
            archive_size=archive_size,
        )


def _remove_partial(path: Path):
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"[archive] Could not remove partial archive {path}: {e}")
