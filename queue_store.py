"""
Durable download queue and video library, persisted as JSON files.
"""

import asyncio
import logging
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from errors import DuplicateUrlError, NotFoundError
from models import LibraryEntry, QueueItem, QueueStatus
from utils import quarantine_file, read_json_file, utc_now, write_json_atomic

logger = logging.getLogger(__name__)

_ORPHANED_STATUSES = {QueueStatus.DOWNLOADING, QueueStatus.PAUSED}


class QueueStore:
    """
    Ordered queue items keyed by id, mirrored to one JSON file.

    Every mutation rewrites the whole file while holding ``lock``, so two
    updates to different items never interleave on disk.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock = asyncio.Lock()
        self._items: Dict[str, QueueItem] = {}
        self._loaded = False

    async def load(self) -> List[QueueItem]:
        try:
            raw = await read_json_file(self.path, default=[])
        except ValueError:
            raw = None
        if not isinstance(raw, list):
            moved = await quarantine_file(self.path)
            logger.error("Queue file %s is unreadable, moved to %s and starting empty", self.path, moved)
            raw = []

        items: Dict[str, QueueItem] = {}
        for entry in raw:
            try:
                item = QueueItem.from_dict(entry)
            except (KeyError, TypeError, ValueError) as error:
                logger.warning("Skipping malformed queue entry %r: %s", entry, error)
                continue
            items[item.id] = item

        self._items = items
        self._loaded = True
        return list(items.values())

    async def save(self, items: Optional[List[QueueItem]] = None) -> None:
        if items is not None:
            self._items = {item.id: item for item in items}
        await write_json_atomic(self.path, [item.to_dict() for item in self._items.values()])

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self.load()

    async def recover_on_startup(self) -> int:
        """Reset items left DOWNLOADING or PAUSED by a previous process."""
        async with self.lock:
            await self.load()
            recovered = 0
            for item in self._items.values():
                if item.status in _ORPHANED_STATUSES:
                    item.status = QueueStatus.PENDING
                    item.pid = None
                    item.progress = 0
                    item.started_at = None
                    recovered += 1
            await self.save()

        if recovered:
            logger.info("Requeued %s interrupted download(s)", recovered)
        return recovered

    async def insert(self, item: QueueItem) -> QueueItem:
        async with self.lock:
            await self._ensure_loaded()
            existing = self.find_by_url(item.url)
            if existing is not None:
                raise DuplicateUrlError(existing, f"{item.url} is already queued")
            if item.added_at is None:
                item.added_at = utc_now()
            self._items[item.id] = item
            await self.save()
        return item

    async def enqueue(self, url: str) -> QueueItem:
        return await self.insert(QueueItem(id=uuid.uuid4().hex, url=url))

    async def update_item(self, item_id: str, **fields: Any) -> Optional[QueueItem]:
        """Apply field updates and persist. Missing items are ignored."""
        async with self.lock:
            await self._ensure_loaded()
            item = self._items.get(item_id)
            if item is None:
                logger.debug("Queue item %s no longer exists, update skipped", item_id)
                return None
            for name, value in fields.items():
                if not hasattr(item, name):
                    raise AttributeError(f"QueueItem has no field {name!r}")
                setattr(item, name, value)
            await self.save()
            return replace(item)

    async def update_status(
        self,
        item_id: str,
        status: QueueStatus,
        error: Optional[str] = None,
    ) -> Optional[QueueItem]:
        fields: Dict[str, Any] = {"status": status, "error": error}
        if status == QueueStatus.DOWNLOADING:
            fields["started_at"] = utc_now()
        elif status in {QueueStatus.COMPLETED, QueueStatus.FAILED}:
            fields["completed_at"] = utc_now()
            fields["pid"] = None
        return await self.update_item(item_id, **fields)

    async def update_progress(self, item_id: str, percent: int) -> Optional[QueueItem]:
        return await self.update_item(item_id, progress=max(0, min(100, int(percent))))

    async def claim(self, item_id: str) -> Optional[QueueItem]:
        """Atomically move a PENDING item to DOWNLOADING."""
        async with self.lock:
            await self._ensure_loaded()
            item = self._items.get(item_id)
            if item is None or item.status != QueueStatus.PENDING:
                return None
            item.status = QueueStatus.DOWNLOADING
            item.started_at = utc_now()
            item.error = None
            item.progress = 0
            await self.save()
            return replace(item)

    async def retry(self, item_id: str) -> QueueItem:
        async with self.lock:
            await self._ensure_loaded()
            item = self._items.get(item_id)
            if item is None:
                raise NotFoundError(f"Queue item {item_id} not found")
            if item.status != QueueStatus.FAILED:
                return replace(item)
            item.status = QueueStatus.PENDING
            item.error = None
            item.progress = 0
            item.pid = None
            item.started_at = None
            item.completed_at = None
            await self.save()
            return replace(item)

    async def clear_all(self) -> int:
        async with self.lock:
            await self._ensure_loaded()
            count = len(self._items)
            self._items = {}
            await self.save()
        logger.info("Cleared %s queue item(s)", count)
        return count

    async def list(self) -> List[QueueItem]:
        await self._ensure_loaded()
        return [replace(item) for item in self._items.values()]

    async def get(self, item_id: str) -> Optional[QueueItem]:
        await self._ensure_loaded()
        item = self._items.get(item_id)
        return replace(item) if item is not None else None

    def find_by_url(self, url: str) -> Optional[QueueItem]:
        for item in self._items.values():
            if item.url == url:
                return replace(item)
        return None


class VideoLibrary:
    """Newest-first list of finished videos consumed by the web UI."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock = asyncio.Lock()

    async def list(self) -> List[Dict[str, Any]]:
        try:
            data = await read_json_file(self.path, default=[])
        except ValueError:
            data = None
        if not isinstance(data, list):
            moved = await quarantine_file(self.path)
            logger.error("Library file %s is unreadable, moved to %s", self.path, moved)
            return []
        return data

    async def append(self, entry: LibraryEntry) -> None:
        async with self.lock:
            videos = await self.list()
            videos.insert(0, entry.to_dict())
            await write_json_atomic(self.path, videos)
        logger.info("Added %r to the video library", entry.title)
