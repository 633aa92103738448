"""
HTTP routes: SSE download stream, job status/cancel and the queue API.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict

from aiohttp import web

from config import MEDIA_DIR, WEB_ROOT
from errors import DuplicateUrlError, NotFoundError, ValidationError
from managers import DownloadOrchestrator, QueueWorker
from queue_store import QueueStore, VideoLibrary

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream; charset=utf-8",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Cache-Control",
}


@web.middleware
async def cors_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    response = await handler(request)
    if not response.prepared:
        response.headers.setdefault("Access-Control-Allow-Origin", "*")
    return response


class WebHandlers:
    """Registers the HTTP surface of the download core."""

    def __init__(
        self,
        app: web.Application,
        orchestrator: DownloadOrchestrator,
        worker: QueueWorker,
        queue_store: QueueStore,
        library: VideoLibrary,
        web_root: Path = WEB_ROOT,
        media_dir: Path = MEDIA_DIR,
    ):
        self.app = app
        self.orchestrator = orchestrator
        self.worker = worker
        self.queue_store = queue_store
        self.library = library
        self.web_root = Path(web_root)
        self.media_dir = Path(media_dir)
        self._register_handlers()

    def _register_handlers(self) -> None:
        router = self.app.router
        router.add_get("/health", self.handle_health)
        router.add_get("/download", self.handle_download)
        router.add_get("/downloads/status", self.handle_status)
        router.add_post("/downloads/{job_id}/cancel", self.handle_cancel)
        router.add_get("/api/queue", self.handle_list_queue)
        router.add_post("/api/queue", self.handle_enqueue)
        router.add_delete("/api/queue", self.handle_clear_queue)
        router.add_post("/api/queue/{item_id}/retry", self.handle_retry)
        router.add_get("/api/videos", self.handle_videos)
        router.add_get("/", self.handle_index)

        self.media_dir.mkdir(parents=True, exist_ok=True)
        router.add_static("/videos", self.media_dir)
        if self.web_root.is_dir():
            router.add_static("/static", self.web_root)

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "OK", "active": len(self.orchestrator.active_jobs())})

    async def handle_index(self, request: web.Request) -> web.StreamResponse:
        index = self.web_root / "index.html"
        if not index.is_file():
            raise web.HTTPNotFound()
        return web.FileResponse(index)

    async def handle_download(self, request: web.Request) -> web.StreamResponse:
        url = request.query.get("url")
        correlation_id = request.query.get("id") or None
        try:
            stream = self.orchestrator.submit(url, correlation_id=correlation_id)
        except ValidationError as error:
            return web.json_response({"error": str(error)}, status=400)

        response = web.StreamResponse(status=200, headers=SSE_HEADERS)
        await response.prepare(request)
        try:
            async for event in stream:
                payload = json.dumps(event.to_dict(), ensure_ascii=False)
                await response.write(f"data: {payload}\n\n".encode("utf-8"))
        except ConnectionResetError:
            logger.info("Client left the stream of %s, job continues in background", stream.job_id)
        finally:
            stream.close()
        return response

    async def handle_status(self, request: web.Request) -> web.Response:
        return web.json_response({"downloads": self.orchestrator.active_jobs()})

    async def handle_cancel(self, request: web.Request) -> web.Response:
        job_id = request.match_info["job_id"]
        self.orchestrator.cancel(job_id)
        return web.json_response({"message": "Download cancelled", "id": job_id})

    async def handle_list_queue(self, request: web.Request) -> web.Response:
        items = await self.queue_store.list()
        return web.json_response({"items": [item.to_dict() for item in items]})

    async def handle_enqueue(self, request: web.Request) -> web.Response:
        try:
            body: Dict[str, Any] = await request.json()
        except json.JSONDecodeError:
            return web.json_response({"error": "Invalid JSON body"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "Invalid JSON body"}, status=400)

        try:
            item = await self.worker.enqueue(body.get("url"))
        except ValidationError as error:
            return web.json_response({"error": str(error)}, status=400)
        except DuplicateUrlError as error:
            return web.json_response(
                {"error": "already queued", "item": error.existing.to_dict()},
                status=409,
            )
        return web.json_response({"item": item.to_dict()}, status=201)

    async def handle_clear_queue(self, request: web.Request) -> web.Response:
        cleared = await self.queue_store.clear_all()
        return web.json_response({"cleared": cleared})

    async def handle_retry(self, request: web.Request) -> web.Response:
        try:
            item = await self.worker.retry(request.match_info["item_id"])
        except NotFoundError as error:
            return web.json_response({"error": str(error)}, status=404)
        return web.json_response({"item": item.to_dict()})

    async def handle_videos(self, request: web.Request) -> web.Response:
        return web.json_response({"videos": await self.library.list()})


def create_app(
    orchestrator: DownloadOrchestrator,
    worker: QueueWorker,
    queue_store: QueueStore,
    library: VideoLibrary,
    web_root: Path = WEB_ROOT,
    media_dir: Path = MEDIA_DIR,
) -> web.Application:
    app = web.Application(middlewares=[cors_middleware])
    WebHandlers(
        app=app,
        orchestrator=orchestrator,
        worker=worker,
        queue_store=queue_store,
        library=library,
        web_root=web_root,
        media_dir=media_dir,
    )
    return app
