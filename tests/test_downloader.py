import asyncio
from collections import Counter

import httpx
import pytest

from site_assets.downloader import DownloadOrchestrator, ThroughputMeter
from site_assets.errors import NetworkError, SizeExceeded, UnsafeTarget
from site_assets.retry import RetryPolicy


class NoSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def files_under(path):
    return sorted(p for p in path.rglob("*") if p.is_file())


def make_orchestrator(tmp_path, handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("sleep", NoSleep())
    kwargs.setdefault("retry_policy", RetryPolicy(max_retries=3, initial_delay=1.0))
    return DownloadOrchestrator(tmp_path, client=client, **kwargs), client


async def chunked(*parts):
    for part in parts:
        yield part


def test_download_one_writes_file(tmp_path):
    def handler(request):
        return httpx.Response(200, content=b"x" * 2048, headers={"content-type": "image/png"})

    async def scenario():
        orchestrator, client = make_orchestrator(tmp_path, handler)
        async with client:
            return await orchestrator.download_one("https://example.com/pics/cat.png", "job1")

    result = asyncio.run(scenario())
    assert result.job_id == "job1"
    assert result.filename == "cat.png"
    assert result.type == "image"
    assert result.size == 2048
    assert result.content_type == "image/png"
    assert (tmp_path / "images" / "cat.png").read_bytes() == b"x" * 2048


def test_declared_size_over_ceiling_fails_before_writing(tmp_path):
    def handler(request):
        return httpx.Response(200, content=b"x" * 500)

    async def scenario():
        orchestrator, client = make_orchestrator(tmp_path, handler, max_file_size=100)
        async with client:
            with pytest.raises(SizeExceeded):
                await orchestrator.download_one("https://example.com/big.jpg", "job1")

    asyncio.run(scenario())
    assert files_under(tmp_path) == []


def test_undeclared_size_over_ceiling_aborts_and_removes_partial(tmp_path):
    calls = Counter()

    def handler(request):
        calls["get"] += 1
        return httpx.Response(200, content=chunked(b"a" * 60, b"b" * 60, b"c" * 60))

    async def scenario():
        orchestrator, client = make_orchestrator(tmp_path, handler, max_file_size=100, chunk_size=60)
        async with client:
            with pytest.raises(SizeExceeded):
                await orchestrator.download_one("https://example.com/liar.mp4", "job1")

    asyncio.run(scenario())
    assert files_under(tmp_path) == []
    assert calls["get"] == 1


def test_bulk_partial_failure(tmp_path):
    calls = Counter()

    def handler(request):
        path = request.url.path
        calls[path] += 1
        if path == "/flaky.jpg" and calls[path] <= 2:
            return httpx.Response(500)
        if path == "/missing.jpg":
            return httpx.Response(404)
        return httpx.Response(200, content=b"img", headers={"content-type": "image/jpeg"})

    urls = [
        "https://example.com/ok.jpg",
        "https://example.com/flaky.jpg",
        "https://example.com/missing.jpg",
    ]

    async def scenario():
        orchestrator, client = make_orchestrator(tmp_path, handler)
        async with client:
            return await orchestrator.download_many(urls, "job1")

    result = asyncio.run(scenario())
    assert result.total == 3
    assert sorted(d.url for d in result.completed) == sorted(urls[:2])
    assert len(result.failed) == 1
    failure = result.failed[0]
    assert failure.url == urls[2]
    assert failure.error_kind == "permanent"
    assert failure.status_code == 404
    assert calls["/flaky.jpg"] == 3
    assert calls["/missing.jpg"] == 1
    assert all(item.job_id == "job1" for item in result.completed + result.failed)
    assert result.duration_ms is not None


def test_starts_are_staggered_by_index(tmp_path):
    def handler(request):
        return httpx.Response(200, content=b"v")

    sleep = NoSleep()

    async def scenario():
        orchestrator, client = make_orchestrator(tmp_path, handler, sleep=sleep, stagger_delay=0.1)
        async with client:
            await orchestrator.download_many(
                [f"https://example.com/{i}.jpg" for i in range(3)], "job1",
            )

    asyncio.run(scenario())
    assert sorted(sleep.calls) == [0.1, 0.2]


def test_global_concurrency_gate(tmp_path):
    in_flight = 0
    peak = 0

    async def handler(request):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return httpx.Response(200, content=b"data")

    async def scenario():
        orchestrator, client = make_orchestrator(tmp_path, handler, concurrency_limit=2, stagger_delay=0)
        async with client:
            first, second = await asyncio.gather(
                orchestrator.download_many([f"https://a.example.com/{i}.jpg" for i in range(4)], "job1"),
                orchestrator.download_many([f"https://b.example.com/{i}.jpg" for i in range(4)], "job2"),
            )
        assert orchestrator.in_flight == 0
        return first, second

    first, second = asyncio.run(scenario())
    assert peak <= 2
    assert len(first.completed) == 4 and len(second.completed) == 4


def test_same_basename_gets_unique_files(tmp_path):
    def handler(request):
        return httpx.Response(200, content=request.url.host.encode())

    async def scenario():
        orchestrator, client = make_orchestrator(tmp_path, handler)
        async with client:
            return await orchestrator.download_many(
                ["https://a.example.com/photo.jpg", "https://b.example.com/photo.jpg"], "job1",
            )

    result = asyncio.run(scenario())
    assert sorted(d.filename for d in result.completed) == ["photo.jpg", "photo_1.jpg"]
    assert len(files_under(tmp_path / "images")) == 2


def test_unsafe_targets_are_never_fetched(tmp_path):
    requests = []

    def handler(request):
        requests.append(request)
        if request.url.path == "/bounce.jpg":
            return httpx.Response(302, headers={"location": "http://169.254.169.254/latest/meta-data"})
        return httpx.Response(200, content=b"x")

    async def scenario():
        orchestrator, client = make_orchestrator(tmp_path, handler)
        async with client:
            with pytest.raises(UnsafeTarget):
                await orchestrator.download_one("http://127.0.0.1/a.jpg", "job1")
            with pytest.raises(UnsafeTarget):
                await orchestrator.download_one("https://example.com/bounce.jpg", "job1")

    asyncio.run(scenario())
    assert [r.url.host for r in requests] == ["example.com"]


def test_redirects_are_followed_up_to_limit(tmp_path):
    def handler(request):
        path = request.url.path
        if path == "/start.jpg":
            return httpx.Response(301, headers={"location": "/final.jpg"})
        if path == "/loop.jpg":
            return httpx.Response(302, headers={"location": "/loop.jpg"})
        return httpx.Response(200, content=b"final")

    async def scenario():
        orchestrator, client = make_orchestrator(tmp_path, handler, max_redirects=2, retry_policy=RetryPolicy(max_retries=0))
        async with client:
            ok = await orchestrator.download_one("https://example.com/start.jpg", "job1")
            with pytest.raises(NetworkError):
                await orchestrator.download_one("https://example.com/loop.jpg", "job1")
            return ok

    ok = asyncio.run(scenario())
    assert ok.filename == "start.jpg"
    assert ok.size == len(b"final")


def test_job_byte_ceiling(tmp_path):
    def handler(request):
        return httpx.Response(200, content=b"z" * 100)

    async def scenario():
        orchestrator, client = make_orchestrator(tmp_path, handler, max_job_bytes=150)
        async with client:
            return await orchestrator.download_many(
                ["https://example.com/1.jpg", "https://example.com/2.jpg"], "job1",
            )

    result = asyncio.run(scenario())
    assert len(result.completed) == 1
    assert [f.error_kind for f in result.failed] == ["size_exceeded"]
    assert len(files_under(tmp_path)) == 1


def test_connection_reset_mid_body_removes_partial(tmp_path):
    calls = Counter()

    async def reset_after_first_chunk():
        yield b"a" * 50
        raise httpx.ReadError("connection reset")

    def handler(request):
        calls[request.url.path] += 1
        return httpx.Response(200, content=reset_after_first_chunk(), headers={"content-type": "image/jpeg"})

    async def scenario():
        orchestrator, client = make_orchestrator(tmp_path, handler, retry_policy=RetryPolicy(max_retries=0))
        async with client:
            with pytest.raises(NetworkError, match="Stream interrupted"):
                await orchestrator.download_one("https://example.com/reset.jpg", "job1")
            assert files_under(tmp_path) == []

            result = await orchestrator.download_many(["https://example.com/reset.jpg"], "job2")
            return result, orchestrator.stats()

    result, stats = asyncio.run(scenario())
    assert result.completed == []
    assert [f.error_kind for f in result.failed] == ["transient"]
    assert calls["/reset.jpg"] == 2
    assert files_under(tmp_path) == []
    assert stats["trackedJobs"] == 0


def test_direct_downloads_do_not_leave_job_tallies(tmp_path):
    def handler(request):
        return httpx.Response(200, content=b"q" * 64)

    async def scenario():
        orchestrator, client = make_orchestrator(tmp_path, handler, max_job_bytes=1000)
        async with client:
            for i in range(3):
                await orchestrator.download_one(f"https://example.com/{i}.jpg", f"single-{i}")
            return orchestrator.stats()

    assert asyncio.run(scenario())["trackedJobs"] == 0


def test_job_tally_spans_staggered_items(tmp_path):
    def handler(request):
        return httpx.Response(200, content=b"z" * 100)

    async def scenario():
        orchestrator, client = make_orchestrator(tmp_path, handler, max_job_bytes=250, stagger_delay=1.0)
        async with client:
            result = await orchestrator.download_many(
                [f"https://example.com/{i}.jpg" for i in range(3)], "job1",
            )
            return result, orchestrator.stats()

    result, stats = asyncio.run(scenario())
    assert len(result.completed) == 2
    assert [f.error_kind for f in result.failed] == ["size_exceeded"]
    assert stats["trackedJobs"] == 0


def test_progress_events(tmp_path):
    events = []

    def handler(request):
        if request.url.path == "/bad.jpg":
            return httpx.Response(403)
        return httpx.Response(200, content=b"p" * 300)

    async def scenario():
        orchestrator, client = make_orchestrator(tmp_path, handler, chunk_size=100)
        async with client:
            await orchestrator.download_many(
                ["https://example.com/a.jpg", "https://example.com/b.jpg", "https://example.com/bad.jpg"],
                "job1",
                on_progress=events.append,
            )

    asyncio.run(scenario())
    item_events = [e for e in events if e.type == "item_progress"]
    bulk_events = [e for e in events if e.type == "bulk_progress"]
    assert len(bulk_events) == 3
    last = bulk_events[-1]
    assert (last.completed_count, last.failed_count, last.total) == (2, 1, 3)
    assert any(e.error for e in bulk_events)
    assert {e.percent for e in item_events} >= {33, 67, 100}
    assert all(e.job_id == "job1" for e in events)


def test_throughput_meter_samples_once_per_second():
    now = [0.0]
    meter = ThroughputMeter(clock=lambda: now[0])

    readings = []
    for t, total in [(0.0, 0), (0.5, 500), (1.0, 1000), (1.5, 1200), (2.5, 3000)]:
        now[0] = t
        readings.append(meter.sample(total))

    assert readings == [0, 0, 1000, 1000, 1333]
