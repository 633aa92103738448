"""
In-memory table of active download attempts.

Every method is synchronous, so on the asyncio event loop each call is atomic
with respect to cancellation and status requests.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from errors import DuplicateJobError, NotFoundError
from models import JobRecord

logger = logging.getLogger(__name__)


class JobRecordStore:
    """Single source of truth for what is running right now."""

    def __init__(self) -> None:
        self._records: Dict[str, JobRecord] = {}

    def reserve(self, job_id: str, url: str, correlation_id: Optional[str] = None) -> JobRecord:
        if job_id in self._records:
            raise DuplicateJobError(f"Job {job_id} is already active")
        record = JobRecord(
            job_id=job_id,
            url=url,
            start_time=time.time(),
            started_monotonic=time.monotonic(),
            correlation_id=correlation_id,
        )
        self._records[job_id] = record
        logger.debug("Reserved job %s for %s", job_id, url)
        return record

    def attach_process(self, job_id: str, handle: Any) -> JobRecord:
        record = self._records.get(job_id)
        if record is None:
            raise NotFoundError(f"Job {job_id} was removed before its process started")
        record.process = handle
        return record

    def get(self, job_id: str) -> Optional[JobRecord]:
        return self._records.get(job_id)

    def remove(self, job_id: str) -> Optional[JobRecord]:
        record = self._records.pop(job_id, None)
        if record is not None:
            record.release()
        return record

    def records(self) -> List[JobRecord]:
        return list(self._records.values())

    def snapshot(self) -> List[Dict[str, Any]]:
        now = time.monotonic()
        return [
            {
                "id": record.job_id,
                "url": record.url,
                "start_time": record.start_time,
                "duration": now - record.started_monotonic,
            }
            for record in self._records.values()
        ]
