"""
Unit tests for the HTTP surface.
"""

import asyncio
import json

from aiohttp.test_utils import TestClient, TestServer

from fakes import FakeExtractor, FakeProcess, make_orchestrator, wait_until
from handlers import create_app
from managers import QueueWorker
from models import LibraryEntry, QueueStatus

URL = "https://example.test/v1"


def _sse_events(body):
    return [
        json.loads(chunk[len("data: "):])
        for chunk in body.split("\n\n")
        if chunk.startswith("data: ")
    ]


def _serve(tmp_path, scenario, extractor=None):
    async def runner():
        orchestrator, queue_store, library = make_orchestrator(tmp_path, extractor or FakeExtractor())
        worker = QueueWorker(orchestrator, queue_store, max_concurrent=1)
        app = create_app(
            orchestrator,
            worker,
            queue_store,
            library,
            web_root=tmp_path / "web",
            media_dir=tmp_path / "videos",
        )
        try:
            async with TestClient(TestServer(app)) as client:
                return await scenario(client, orchestrator, queue_store, library)
        finally:
            await orchestrator.shutdown()

    return asyncio.run(runner())


def test_download_streams_events_until_done(tmp_path):
    async def scenario(client, orchestrator, queue_store, library):
        resp = await client.get("/download", params={"url": URL})
        return resp.status, resp.headers["Content-Type"], await resp.text()

    status, content_type, body = _serve(tmp_path, scenario)
    events = _sse_events(body)

    assert status == 200
    assert content_type.startswith("text/event-stream")
    assert events[0]["type"] == "start"
    assert events[-1]["type"] == "done"
    assert events[-1]["file_path"] == "videos/Sample.mp4"
    assert (tmp_path / "videos" / "Sample.mp4").is_file()


def test_download_without_url_is_rejected(tmp_path):
    async def scenario(client, orchestrator, queue_store, library):
        resp = await client.get("/download")
        return resp.status, await resp.json()

    status, body = _serve(tmp_path, scenario)

    assert status == 400
    assert body["error"] == "URL is required"


def test_download_failure_is_reported_on_stream(tmp_path):
    extractor = FakeExtractor(process_factory=lambda options: FakeProcess(exit_code=1))

    async def scenario(client, orchestrator, queue_store, library):
        resp = await client.get("/download", params={"url": URL})
        return await resp.text()

    events = _sse_events(_serve(tmp_path, scenario, extractor))

    assert events[-1]["type"] == "error"
    assert events[-1]["exit_code"] == 1
    assert events[-1]["retryable"] is False


def test_status_lists_running_jobs_and_cancel_stops_them(tmp_path):
    extractor = FakeExtractor(process_factory=lambda options: FakeProcess(hang=True))

    async def scenario(client, orchestrator, queue_store, library):
        stream = orchestrator.submit(URL, correlation_id="job-1")
        await wait_until(lambda: orchestrator.job_store.get("job-1") is not None
                         and orchestrator.job_store.get("job-1").process is not None)

        status = await (await client.get("/downloads/status")).json()
        cancel = await client.post("/downloads/job-1/cancel")
        events = [event async for event in stream]
        after = await (await client.get("/downloads/status")).json()
        return status, cancel.status, events, after

    status, cancel_status, events, after = _serve(tmp_path, scenario, extractor)

    assert [job["id"] for job in status["downloads"]] == ["job-1"]
    assert status["downloads"][0]["url"] == URL
    assert cancel_status == 200
    assert events[-1].type == "error"
    assert events[-1].data["code"] == "cancelled"
    assert after == {"downloads": []}


def test_cancel_unknown_job_is_acknowledged(tmp_path):
    async def scenario(client, orchestrator, queue_store, library):
        resp = await client.post("/downloads/not-started-yet/cancel")
        return resp.status, await resp.json(), orchestrator.coordinator.is_pending("not-started-yet")

    status, body, pending = _serve(tmp_path, scenario)

    assert status == 200
    assert body["id"] == "not-started-yet"
    assert pending


def test_enqueue_and_duplicate(tmp_path):
    async def scenario(client, orchestrator, queue_store, library):
        created = await client.post("/api/queue", json={"url": URL})
        duplicate = await client.post("/api/queue", json={"url": URL})
        listing = await (await client.get("/api/queue")).json()
        return created.status, await created.json(), duplicate.status, await duplicate.json(), listing

    created_status, created, dup_status, dup, listing = _serve(tmp_path, scenario)

    assert created_status == 201
    assert created["item"]["status"] == QueueStatus.PENDING.value
    assert dup_status == 409
    assert dup["error"] == "already queued"
    assert dup["item"]["id"] == created["item"]["id"]
    assert [item["url"] for item in listing["items"]] == [URL]


def test_enqueue_rejects_bad_input(tmp_path):
    async def scenario(client, orchestrator, queue_store, library):
        bad_url = await client.post("/api/queue", json={"url": "ftp://example.test/file"})
        bad_json = await client.post("/api/queue", data="not json", headers={"Content-Type": "application/json"})
        return bad_url.status, bad_json.status

    assert _serve(tmp_path, scenario) == (400, 400)


def test_clear_queue_reports_count(tmp_path):
    async def scenario(client, orchestrator, queue_store, library):
        await client.post("/api/queue", json={"url": "https://example.test/1"})
        await client.post("/api/queue", json={"url": "https://example.test/2"})
        cleared = await (await client.delete("/api/queue")).json()
        listing = await (await client.get("/api/queue")).json()
        return cleared, listing

    cleared, listing = _serve(tmp_path, scenario)

    assert cleared == {"cleared": 2}
    assert listing == {"items": []}


def test_retry_missing_item_is_not_found(tmp_path):
    async def scenario(client, orchestrator, queue_store, library):
        resp = await client.post("/api/queue/missing/retry")
        return resp.status

    assert _serve(tmp_path, scenario) == 404


def test_retry_failed_item(tmp_path):
    async def scenario(client, orchestrator, queue_store, library):
        item = await queue_store.enqueue(URL)
        await queue_store.update_status(item.id, QueueStatus.FAILED, error="boom")
        resp = await client.post(f"/api/queue/{item.id}/retry")
        return resp.status, await resp.json()

    status, body = _serve(tmp_path, scenario)

    assert status == 200
    assert body["item"]["status"] == QueueStatus.PENDING.value
    assert body["item"]["error"] is None


def test_videos_and_health(tmp_path):
    async def scenario(client, orchestrator, queue_store, library):
        await library.append(LibraryEntry(title="Sample", description="d", file_path="videos/Sample.mp4"))
        videos = await (await client.get("/api/videos")).json()
        health = await (await client.get("/health")).json()
        return videos, health

    videos, health = _serve(tmp_path, scenario)

    assert videos["videos"][0]["file_path"] == "videos/Sample.mp4"
    assert health == {"status": "OK", "active": 0}


def test_finished_files_are_served(tmp_path):
    async def scenario(client, orchestrator, queue_store, library):
        (tmp_path / "videos" / "clip.mp4").write_bytes(b"media")
        resp = await client.get("/videos/clip.mp4")
        return resp.status, await resp.read()

    assert _serve(tmp_path, scenario) == (200, b"media")
