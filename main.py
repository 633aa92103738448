"""
Entry point for the download queue server.
"""

import asyncio
import logging
import signal
import sys

from aiohttp import web

from config import HOST, LIBRARY_FILE, LOG_FORMAT, LOG_LEVEL, MEDIA_DIR, PORT, QUEUE_FILE, WEB_ROOT
from errors import ExtractorUnavailableError, setup_logging
from extractor import ExtractorAdapter
from handlers import create_app
from managers import DownloadOrchestrator, QueueWorker
from queue_store import QueueStore, VideoLibrary

shutdown_event = asyncio.Event()


def _install_signal_handlers() -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handler support
            pass


async def main() -> None:
    logger = setup_logging(level=LOG_LEVEL, format_string=LOG_FORMAT)
    logger.info("Starting download queue server")

    extractor = ExtractorAdapter()
    try:
        await extractor.ensure_available()
    except ExtractorUnavailableError:
        logger.exception("yt-dlp is unavailable, refusing to start")
        sys.exit(1)

    queue_store = QueueStore(QUEUE_FILE)
    library = VideoLibrary(LIBRARY_FILE)
    orchestrator = DownloadOrchestrator(extractor, queue_store, library, media_dir=MEDIA_DIR)
    worker = QueueWorker(orchestrator, queue_store)

    runner = None
    try:
        await worker.start()

        app = create_app(orchestrator, worker, queue_store, library, web_root=WEB_ROOT, media_dir=MEDIA_DIR)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, host=HOST, port=PORT)
        await site.start()
        logger.info("Backend server running on http://%s:%s", HOST, PORT)
        logger.info("Video downloads will be saved to: %s", MEDIA_DIR)

        _install_signal_handlers()
        await shutdown_event.wait()
        logger.info("Shutting down server...")
    except Exception:
        logging.getLogger(__name__).exception("Fatal startup/runtime error")
        sys.exit(1)
    finally:
        await orchestrator.shutdown()
        await worker.stop()
        if runner is not None:
            await runner.cleanup()


if __name__ == "__main__":
    asyncio.run(main())
