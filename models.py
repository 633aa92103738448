"""
Data models for download jobs and the persistent queue.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional


class QueueStatus(Enum):
    """Lifecycle states for a persisted queue item."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    PAUSED = "paused"
    FAILED = "failed"
    COMPLETED = "completed"


class JobState(Enum):
    """States of a single orchestrated download attempt."""

    INIT = "init"
    METADATA_FETCHING = "metadata_fetching"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


class Stage(Enum):
    """Sub-stream the extractor is currently working on."""

    VIDEO = "video"
    AUDIO = "audio"
    MERGE = "merge"
    UNKNOWN = "unknown"


@dataclass
class Metadata:
    title: str
    thumbnail: Optional[str] = None
    description: Optional[str] = None


@dataclass
class ProgressEvent:
    """Raw progress reported by the fetch process for one sub-stream."""

    raw_percent: float
    stage_hint: Optional[Stage] = None


@dataclass
class DiagnosticLine:
    """Non-progress output line of the fetch process."""

    text: str


@dataclass
class ProgressUpdate:
    percent: int
    label: str


@dataclass
class JobRecord:
    """Runtime info for one active download attempt."""

    job_id: str
    url: str
    start_time: float
    started_monotonic: float = 0.0
    correlation_id: Optional[str] = None
    process: Optional[Any] = None
    cancelled: bool = False
    last_progress_at: Optional[float] = None
    cleanup: Optional[Callable[[], None]] = None

    def release(self) -> None:
        """Run the deferred cleanup once."""
        cleanup, self.cleanup = self.cleanup, None
        if cleanup is not None:
            cleanup()


@dataclass
class QueueItem:
    """Durable queue entry."""

    id: str
    url: str
    title: Optional[str] = None
    thumbnail: Optional[str] = None
    status: QueueStatus = QueueStatus.PENDING
    progress: int = 0
    pid: Optional[int] = None
    file_path: Optional[str] = None
    error: Optional[str] = None
    added_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueItem":
        return cls(
            id=str(data["id"]),
            url=str(data["url"]),
            title=data.get("title"),
            thumbnail=data.get("thumbnail"),
            status=QueueStatus(str(data.get("status", "pending")).lower()),
            progress=int(data.get("progress") or 0),
            pid=data.get("pid"),
            file_path=data.get("file_path"),
            error=data.get("error"),
            added_at=data.get("added_at"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )


@dataclass
class LibraryEntry:
    title: str
    description: str
    file_path: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class JobEvent:
    """One message on a job's output stream."""

    type: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in {"done", "error"}

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, **self.data}
