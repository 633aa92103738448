"""
Download orchestration: one state machine per job plus the queue workers.
"""

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

from cancellation import CancellationCoordinator
from config import (
    DEFAULT_LIBRARY_DESCRIPTION,
    DOWNLOAD_TIMEOUT_SECONDS,
    MAX_CONCURRENT_DOWNLOADS,
    MEDIA_DIR,
    MEDIA_EXTENSIONS,
    MEDIA_URL_PREFIX,
    STUCK_PROGRESS_SECONDS,
    WATCHDOG_INTERVAL_SECONDS,
)
from errors import (
    AbnormalExitError,
    DownloaderError,
    DownloadTimeoutError,
    JobCancelledError,
    NonZeroExitError,
    NotFoundError,
    OutputNotFoundError,
    ValidationError,
    error_manager,
)
from extractor import ExtractorAdapter, FetchOptions
from job_store import JobRecordStore
from models import (
    JobEvent,
    JobRecord,
    JobState,
    LibraryEntry,
    Metadata,
    ProgressEvent,
    ProgressUpdate,
    QueueItem,
    QueueStatus,
)
from progress import ProgressNormalizer
from queue_store import QueueStore, VideoLibrary
from utils import (
    find_output_file,
    format_duration,
    generate_job_id,
    get_file_size_mb,
    sanitize_filename,
    utc_now,
    validate_url_input,
)

logger = logging.getLogger(__name__)

_ERROR_STATES = {
    DownloadTimeoutError: JobState.TIMED_OUT,
    AbnormalExitError: JobState.TIMED_OUT,
    JobCancelledError: JobState.CANCELLED,
}


class JobStream:
    """
    Events of one job, in order, for whoever is listening.

    Closing the stream only detaches the listener; the job keeps running and
    later events are still recorded in ``history``.
    """

    def __init__(self, job_id: str):
        self.job_id = job_id
        self.history: List[JobEvent] = []
        self.task: Optional[asyncio.Task] = None
        self.closed = False
        self.finished = False
        self._queue: asyncio.Queue = asyncio.Queue()
        self._delivered_terminal = False

    def push(self, event: JobEvent) -> None:
        if self.finished:
            logger.debug("Dropping %s event for finished job %s", event.type, self.job_id)
            return
        if event.is_terminal:
            self.finished = True
        self.history.append(event)
        if not self.closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        self.closed = True

    def __aiter__(self) -> "JobStream":
        return self

    async def __anext__(self) -> JobEvent:
        if self.closed or self._delivered_terminal:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event.is_terminal:
            self._delivered_terminal = True
        return event


class DownloadOrchestrator:
    """Drives every download attempt from request to terminal outcome."""

    def __init__(
        self,
        extractor: ExtractorAdapter,
        queue_store: QueueStore,
        library: VideoLibrary,
        job_store: Optional[JobRecordStore] = None,
        coordinator: Optional[CancellationCoordinator] = None,
        media_dir: Path = MEDIA_DIR,
        timeout_seconds: float = DOWNLOAD_TIMEOUT_SECONDS,
        stuck_seconds: float = STUCK_PROGRESS_SECONDS,
        watchdog_interval: float = WATCHDOG_INTERVAL_SECONDS,
    ):
        self.extractor = extractor
        self.queue_store = queue_store
        self.library = library
        self.job_store = job_store or JobRecordStore()
        self.coordinator = coordinator or CancellationCoordinator(self.job_store)
        self.media_dir = Path(media_dir)
        self.timeout_seconds = timeout_seconds
        self.stuck_seconds = stuck_seconds
        self.watchdog_interval = watchdog_interval

        self._tasks: set[asyncio.Task] = set()
        self._shutting_down = False

    def submit(self, url: Optional[str], correlation_id: Optional[str] = None) -> JobStream:
        """Validate and start a job in the background; return its stream."""
        valid, message = validate_url_input(url)
        if not valid:
            raise ValidationError(message)
        if self._shutting_down:
            raise ValidationError("Server is shutting down")

        url = url.strip()
        job_id = correlation_id or generate_job_id()
        stream = JobStream(job_id)
        task = asyncio.create_task(self._run(stream, url, correlation_id), name=f"job-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done_callback)
        stream.task = task
        return stream

    @property
    def accepting(self) -> bool:
        return not self._shutting_down

    def cancel(self, job_id: str) -> bool:
        return self.coordinator.cancel(job_id)

    def active_jobs(self) -> List[Dict[str, Any]]:
        return self.job_store.snapshot()

    async def shutdown(self) -> None:
        """Kill every running process and wait for job tasks to unwind."""
        self._shutting_down = True
        records = self.job_store.records()
        for record in records:
            if record.process is not None:
                logger.info("Terminating process for %s (pid=%s)", record.job_id, record.process.pid)
                record.process.kill()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _task_done_callback(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Job task %s crashed", task.get_name(), exc_info=error)

    async def _run(self, stream: JobStream, url: str, correlation_id: Optional[str]) -> None:
        job_id = stream.job_id
        state = JobState.INIT
        record: Optional[JobRecord] = None
        handle: Any = None
        stream.push(JobEvent("start", {"job_id": job_id, "url": url, "message": "Starting download..."}))
        item_id: Optional[str] = None

        try:
            item_id = await self._find_queue_item(url, correlation_id)
            await self._mirror_status(item_id, QueueStatus.DOWNLOADING)

            state = JobState.METADATA_FETCHING
            metadata = await self.extractor.fetch_metadata(url)
            logger.info("Fetched video info for %s: %s", job_id, metadata.title)
            await self._mirror(item_id, title=metadata.title, thumbnail=metadata.thumbnail)

            record = self.job_store.reserve(job_id, url, correlation_id)
            self._check_cancelled(record)

            title = sanitize_filename(metadata.title)
            tag = f"[{sanitize_filename(job_id, max_length=64)}]"
            options = FetchOptions(output_dir=self.media_dir, output_stem=f"{title} {tag}")

            state = JobState.RUNNING
            handle = await self.extractor.spawn_fetch(url, options)
            try:
                self.job_store.attach_process(job_id, handle)
            except NotFoundError:
                handle.kill()
                raise JobCancelledError("Download cancelled")
            if self.coordinator.should_abort(record):
                handle.kill()
                raise JobCancelledError("Download cancelled")
            logger.info("Job %s running (pid=%s)", job_id, handle.pid)
            await self._mirror(item_id, pid=handle.pid)

            exit_code, tool_error = await self._supervise(record, handle, stream, item_id)
            if record.cancelled:
                raise JobCancelledError("Download cancelled")
            if exit_code is None:
                raise AbnormalExitError("Download process ended without an exit code")
            if exit_code != 0:
                detail = f"Download failed (exit code: {exit_code})"
                if tool_error:
                    detail = f"{detail}: {tool_error}"
                raise NonZeroExitError(exit_code, detail, retryable=correlation_id is not None)

            file_path = await self._resolve_output(title, tag, record.start_time)
            # a cancel is honoured until completion is persisted
            if record.cancelled:
                raise JobCancelledError("Download cancelled")
            await self._complete(item_id, metadata, file_path)
            state = JobState.COMPLETED
            self._release(record)
            stream.push(
                JobEvent(
                    "done",
                    {"message": "Download complete!", "file_path": file_path, "title": metadata.title},
                )
            )
        except DownloaderError as error:
            state = _ERROR_STATES.get(type(error), JobState.FAILED)
            self._log_failure(job_id, url, error)
            await self._mirror_status(item_id, QueueStatus.FAILED, error=str(error))
            self._release(record)
            stream.push(JobEvent("error", error_manager.describe(error)))
        except asyncio.CancelledError:
            if handle is not None:
                handle.kill()
            self._release(record)
            stream.push(JobEvent("error", {"message": "Server shutting down", "retryable": True, "code": "shutdown"}))
            raise
        except Exception as error:
            state = JobState.FAILED
            logger.exception("Unexpected error in job %s (%s)", job_id, url)
            if handle is not None:
                handle.kill()
                await self._reap(handle)
            await self._mirror_status(item_id, QueueStatus.FAILED, error=str(error))
            self._release(record)
            stream.push(JobEvent("error", {"message": error_manager.to_user_message(error), "retryable": False, "code": "internal"}))
        finally:
            duration = time.monotonic() - record.started_monotonic if record else 0.0
            logger.info("Job %s finished: %s after %s", job_id, state.value, format_duration(duration))

    def _check_cancelled(self, record: JobRecord) -> None:
        if self.coordinator.should_abort(record):
            raise JobCancelledError("Download cancelled")

    def _release(self, record: Optional[JobRecord]) -> None:
        """Drop the record unless a cancel already did, and free its timers."""
        if record is None:
            return
        if self.job_store.get(record.job_id) is record:
            self.job_store.remove(record.job_id)
        else:
            record.release()

    async def _supervise(
        self,
        record: JobRecord,
        handle: Any,
        stream: JobStream,
        item_id: Optional[str],
    ) -> Tuple[Optional[int], Optional[str]]:
        """Forward progress until the process exits or the timeout hits."""
        normalizer = ProgressNormalizer()
        tool_error: Optional[str] = None
        persisted = {"percent": -1}
        record.last_progress_at = time.monotonic()

        watchdog = asyncio.create_task(self._watchdog(record), name=f"watchdog-{record.job_id}")
        record.cleanup = watchdog.cancel

        async def publish(update: ProgressUpdate) -> None:
            stream.push(JobEvent("progress", {"percent": update.percent, "label": update.label}))
            if item_id and update.percent != persisted["percent"]:
                persisted["percent"] = update.percent
                await self._mirror(item_id, progress=update.percent)

        async def pump() -> Optional[int]:
            nonlocal tool_error
            async for output in handle.events():
                if isinstance(output, ProgressEvent):
                    record.last_progress_at = time.monotonic()
                    await publish(normalizer.normalize(output))
                    continue

                logger.debug("[%s] %s", record.job_id, output.text)
                if output.text.startswith("ERROR:"):
                    tool_error = output.text[len("ERROR:"):].strip()
                update = normalizer.observe_line(output.text)
                if update is not None:
                    await publish(update)
            return await handle.wait()

        remaining = self.timeout_seconds - (time.monotonic() - record.started_monotonic)
        try:
            exit_code = await asyncio.wait_for(pump(), timeout=max(0.0, remaining))
        except asyncio.TimeoutError:
            logger.warning("Job %s exceeded %.0fs, killing pid=%s", record.job_id, self.timeout_seconds, handle.pid)
            handle.kill()
            await self._reap(handle)
            raise DownloadTimeoutError(f"Download exceeded {self.timeout_seconds:.0f}s and was stopped")
        finally:
            watchdog.cancel()
        return exit_code, tool_error

    async def _watchdog(self, record: JobRecord) -> None:
        """Warn when progress stalls; never stops the job."""
        warned = False
        while True:
            await asyncio.sleep(self.watchdog_interval)
            idle = time.monotonic() - (record.last_progress_at or time.monotonic())
            if idle >= self.stuck_seconds:
                if not warned:
                    logger.warning("No progress for job %s in %.0fs (%s)", record.job_id, idle, record.url)
                    warned = True
            else:
                warned = False

    @staticmethod
    async def _reap(handle: Any) -> None:
        try:
            await asyncio.wait_for(handle.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning("Process pid=%s did not exit after kill", handle.pid)

    async def _resolve_output(self, title: str, tag: str, start_time: float) -> str:
        """Find the produced file, rename it to the clean title, return its web path."""
        path = await asyncio.to_thread(
            find_output_file,
            self.media_dir,
            title,
            start_time,
            MEDIA_EXTENSIONS,
            tag,
        )
        if path is None:
            raise OutputNotFoundError(f"Output file not found in {self.media_dir}")

        if tag in path.name:
            path = await asyncio.to_thread(self._rename_to_title, path, title)

        logger.info("Output %s (%.1f MB)", path.name, get_file_size_mb(path))
        return f"{MEDIA_URL_PREFIX}/{quote(path.name)}"

    @staticmethod
    def _rename_to_title(path: Path, title: str) -> Path:
        """Link to ``<title><ext>`` if that name is free; keep the tagged name otherwise."""
        target = path.with_name(f"{title}{path.suffix}")
        try:
            os.link(path, target)
        except FileExistsError:
            return path
        except OSError:
            logger.debug("Hard link unsupported for %s, keeping tagged name", path, exc_info=True)
            return path
        path.unlink()
        return target

    async def _complete(self, item_id: Optional[str], metadata: Metadata, file_path: str) -> None:
        await self._mirror(
            item_id,
            status=QueueStatus.COMPLETED,
            title=metadata.title,
            file_path=file_path,
            progress=100,
            pid=None,
            error=None,
            completed_at=utc_now(),
        )
        description = (metadata.description or DEFAULT_LIBRARY_DESCRIPTION)[:500]
        try:
            await self.library.append(LibraryEntry(title=metadata.title, description=description, file_path=file_path))
        except OSError:
            logger.exception("Failed to update video library with %s", file_path)

    async def _find_queue_item(self, url: str, correlation_id: Optional[str]) -> Optional[str]:
        if correlation_id:
            item = await self.queue_store.get(correlation_id)
            if item is not None:
                return item.id
        for item in await self.queue_store.list():
            if item.url == url:
                return item.id
        return None

    async def _mirror(self, item_id: Optional[str], **fields: Any) -> None:
        """Copy job state into the queue item; persistence errors stay local to the job."""
        if not item_id or self._shutting_down:
            return
        try:
            await self.queue_store.update_item(item_id, **fields)
        except OSError:
            logger.exception("Failed to persist queue item %s", item_id)

    async def _mirror_status(self, item_id: Optional[str], status: QueueStatus, error: Optional[str] = None) -> None:
        if not item_id or self._shutting_down:
            return
        try:
            await self.queue_store.update_status(item_id, status, error=error)
        except OSError:
            logger.exception("Failed to persist queue item %s", item_id)

    @staticmethod
    def _log_failure(job_id: str, url: str, error: DownloaderError) -> None:
        if isinstance(error, JobCancelledError):
            logger.info("Job %s cancelled (%s)", job_id, url)
        elif isinstance(error, (DownloadTimeoutError, AbnormalExitError, NonZeroExitError)):
            logger.warning("Job %s failed for %s: %s", job_id, url, error)
        else:
            logger.error("Job %s failed for %s: %s", job_id, url, error)


class QueueWorker:
    """Runs PENDING queue items through the orchestrator with bounded concurrency."""

    def __init__(
        self,
        orchestrator: DownloadOrchestrator,
        queue_store: QueueStore,
        max_concurrent: int = MAX_CONCURRENT_DOWNLOADS,
    ):
        self.orchestrator = orchestrator
        self.queue_store = queue_store
        self.max_concurrent = max(1, max_concurrent)
        self.queue: asyncio.Queue = asyncio.Queue()
        self._workers: List[asyncio.Task] = []

    async def start(self) -> None:
        """Recover interrupted items, schedule everything PENDING, start workers."""
        await self.queue_store.recover_on_startup()
        for item in await self.queue_store.list():
            if item.status == QueueStatus.PENDING:
                self.queue.put_nowait(item.id)

        self._workers = [
            asyncio.create_task(self._worker_loop(idx), name=f"queue-worker-{idx}")
            for idx in range(self.max_concurrent)
        ]
        logger.info("Queue worker started with %s slot(s), %s item(s) pending", self.max_concurrent, self.queue.qsize())

    async def enqueue(self, url: Optional[str]) -> QueueItem:
        valid, message = validate_url_input(url)
        if not valid:
            raise ValidationError(message)
        item = await self.queue_store.enqueue(url.strip())
        self.queue.put_nowait(item.id)
        logger.info("Queued %s as %s", item.url, item.id)
        return item

    async def retry(self, item_id: str) -> QueueItem:
        item = await self.queue_store.retry(item_id)
        if item.status == QueueStatus.PENDING:
            self.orchestrator.coordinator.discard_pending(item.id)
            self.queue.put_nowait(item.id)
        return item

    async def _worker_loop(self, worker_id: int) -> None:
        """Consume queue entries until sentinel is received."""
        while True:
            item_id = await self.queue.get()
            if item_id is None:
                self.queue.task_done()
                break

            try:
                await self._process(item_id)
            except Exception:
                logger.exception("Unexpected worker error (worker=%s item=%s)", worker_id, item_id)
            finally:
                self.queue.task_done()

    async def _process(self, item_id: str) -> None:
        if not self.orchestrator.accepting:
            return
        item = await self.queue_store.claim(item_id)
        if item is None:
            logger.debug("Queue item %s is no longer pending", item_id)
            return

        stream = self.orchestrator.submit(item.url, correlation_id=item.id)
        async for event in stream:
            if event.type == "done":
                logger.info("Queue item %s completed: %s", item.id, event.data.get("file_path"))
            elif event.type == "error":
                logger.info("Queue item %s failed: %s", item.id, event.data.get("message"))

    async def stop(self) -> None:
        """Stop worker tasks gracefully."""
        for _ in self._workers:
            await self.queue.put(None)

        for worker in self._workers:
            try:
                await worker
            except Exception:
                logger.exception("Worker stop failed")
