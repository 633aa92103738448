"""
Cancellation that stays correct when the request races the job start.

A cancel can arrive before the job is reserved, after reservation but before
its process exists, or while the process runs. Unknown ids are remembered so
that a later reservation with the same id aborts before spawning anything.
"""

import logging
import time
from typing import Dict

from config import PENDING_CANCEL_TTL_SECONDS
from job_store import JobRecordStore
from models import JobRecord

logger = logging.getLogger(__name__)


class CancellationCoordinator:
    def __init__(self, job_store: JobRecordStore, pending_ttl_seconds: float = PENDING_CANCEL_TTL_SECONDS):
        self.job_store = job_store
        self.pending_ttl_seconds = pending_ttl_seconds
        self.pending_cancellations: Dict[str, float] = {}
        self._last_pending_cleanup = 0.0
        self._pending_cleanup_interval_seconds = 60

    def cancel(self, job_id: str) -> bool:
        """Request cancellation. Always acknowledged."""
        record = self.job_store.get(job_id)
        if record is None:
            self._cleanup_pending()
            self.pending_cancellations[job_id] = time.time()
            logger.info("Cancel for unknown job %s recorded as pending", job_id)
            return True

        record.cancelled = True
        if record.process is not None:
            logger.info("Killing process for cancelled job %s", job_id)
            record.process.kill()
            self.job_store.remove(job_id)
        else:
            logger.info("Job %s flagged as cancelled before its process started", job_id)
        return True

    def should_abort(self, record: JobRecord) -> bool:
        """True when the job was cancelled by flag or ahead of time."""
        if record.cancelled:
            return True
        if self.pending_cancellations.pop(record.job_id, None) is not None:
            record.cancelled = True
            return True
        return False

    def discard_pending(self, job_id: str) -> None:
        """Forget an early cancel superseded by a newer request for the same id."""
        if self.pending_cancellations.pop(job_id, None) is not None:
            logger.info("Dropped pending cancel for %s", job_id)

    def is_pending(self, job_id: str) -> bool:
        return job_id in self.pending_cancellations

    def _cleanup_pending(self) -> None:
        now = time.time()
        if now - self._last_pending_cleanup < self._pending_cleanup_interval_seconds:
            return
        self._last_pending_cleanup = now

        expired = [
            job_id
            for job_id, created_at in self.pending_cancellations.items()
            if now - created_at > self.pending_ttl_seconds
        ]
        for job_id in expired:
            self.pending_cancellations.pop(job_id, None)
