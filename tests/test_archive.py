import asyncio
import json
import zipfile
from pathlib import Path

import pytest

from site_assets.archive import ArchiveBuilder
from site_assets.errors import ArchiveError
from site_assets.models import DownloadResult, JobResult


def downloaded(tmp_path, media_type, name, payload):
    folder = tmp_path / "downloads" / f"{media_type}s"
    folder.mkdir(parents=True, exist_ok=True)
    path = folder / name
    path.write_bytes(payload)
    return DownloadResult(
        job_id="job1",
        url=f"https://example.com/{name}",
        filename=name,
        path=str(path),
        size=len(payload),
        content_type=f"{media_type}/test",
        elapsed_ms=5,
        type=media_type,
    )


def test_archive_contents_match_manifest(tmp_path):
    items = [
        downloaded(tmp_path, "image", "a.jpg", b"a" * 300),
        downloaded(tmp_path, "image", "b.png", b"b" * 200),
        downloaded(tmp_path, "video", "c.mp4", b"c" * 1000),
    ]
    job = JobResult(job_id="job1", total=3, completed=items)

    info = asyncio.run(ArchiveBuilder(tmp_path / "archives").build(job))

    assert info.filename == "job1_archive.zip"
    assert info.file_count == 3
    assert info.total_size == 1500
    with zipfile.ZipFile(info.archive_path) as zf:
        names = set(zf.namelist())
        manifest = json.loads(zf.read("manifest.json"))
        assert zf.read("videos/c.mp4") == b"c" * 1000

    assert names == {"images/a.jpg", "images/b.png", "videos/c.mp4", "manifest.json"}
    assert manifest["jobId"] == "job1"
    assert manifest["totalFiles"] == 3
    assert manifest["totalSize"] == sum(f["size"] for f in manifest["files"]) == 1500
    assert {f["originalUrl"] for f in manifest["files"]} == {i.url for i in items}
    for entry in manifest["files"]:
        assert f"{entry['type']}s/{entry['filename']}" in names


def test_missing_files_are_skipped(tmp_path):
    kept = downloaded(tmp_path, "image", "kept.jpg", b"k" * 10)
    gone = downloaded(tmp_path, "image", "gone.jpg", b"g" * 10)
    (tmp_path / "downloads" / "images" / "gone.jpg").unlink()

    info = asyncio.run(ArchiveBuilder(tmp_path / "archives").build(
        JobResult(job_id="job2", total=2, completed=[kept, gone])
    ))

    assert info.file_count == 1
    with zipfile.ZipFile(info.archive_path) as zf:
        manifest = json.loads(zf.read("manifest.json"))
        assert "images/gone.jpg" not in zf.namelist()
    assert [f["filename"] for f in manifest["files"]] == ["kept.jpg"]


def test_file_removed_after_existence_check_is_skipped(tmp_path, monkeypatch):
    kept = downloaded(tmp_path, "image", "kept.jpg", b"k" * 10)
    racing = downloaded(tmp_path, "video", "racing.mp4", b"r" * 10)
    (tmp_path / "downloads" / "videos" / "racing.mp4").unlink()
    # existence check passes, the file is already gone when it is read
    monkeypatch.setattr(Path, "is_file", lambda self: True)

    info = asyncio.run(ArchiveBuilder(tmp_path / "archives").build(
        JobResult(job_id="job4", total=2, completed=[kept, racing])
    ))

    assert info.file_count == 1
    assert info.total_size == 10
    with zipfile.ZipFile(info.archive_path) as zf:
        manifest = json.loads(zf.read("manifest.json"))
        assert sorted(zf.namelist()) == ["images/kept.jpg", "manifest.json"]
    assert manifest["totalFiles"] == 1
    assert [f["filename"] for f in manifest["files"]] == ["kept.jpg"]


def test_empty_job_produces_manifest_only(tmp_path):
    info = asyncio.run(ArchiveBuilder(tmp_path).build(JobResult(job_id="job3", total=0)))
    with zipfile.ZipFile(info.archive_path) as zf:
        assert zf.namelist() == ["manifest.json"]
    assert info.file_count == 0


def test_unwritable_destination_raises_archive_error(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file in the way")

    with pytest.raises(ArchiveError):
        asyncio.run(ArchiveBuilder(blocker).build(JobResult(job_id="job4", total=0)))
