"""
Error taxonomy, logging setup and user-facing error messages.
"""

import logging
from typing import Any, Optional


def setup_logging(
    level: str = "INFO",
    format_string: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
) -> logging.Logger:
    """Configure root logging once and return module logger."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(numeric_level)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(format_string))
    root_logger.addHandler(console_handler)
    return logging.getLogger(__name__)


class DownloaderError(Exception):
    """Base class for every error raised by the download core."""

    code = "internal"
    retryable = False
    user_message = "The download failed."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.user_message)


class ValidationError(DownloaderError):
    code = "validation"
    user_message = "A valid URL is required."


class MetadataError(DownloaderError):
    code = "metadata"
    retryable = True
    user_message = "Could not fetch video information."


class ProcessSpawnError(DownloaderError):
    code = "spawn"
    user_message = "Could not start the download process."


class DuplicateJobError(DownloaderError):
    code = "duplicate_job"
    user_message = "A download with this id is already running."


class DuplicateUrlError(DownloaderError):
    """Raised when a URL is already present in the queue."""

    code = "duplicate_url"
    user_message = "This URL is already queued."

    def __init__(self, existing: Any, message: Optional[str] = None):
        super().__init__(message)
        self.existing = existing


class NotFoundError(DownloaderError):
    code = "not_found"
    user_message = "Item not found."


class DownloadTimeoutError(DownloaderError):
    code = "timeout"
    retryable = True
    user_message = "The download took too long and was stopped."


class AbnormalExitError(DownloaderError):
    code = "abnormal_exit"
    retryable = True
    user_message = "The download process stopped unexpectedly."


class NonZeroExitError(DownloaderError):
    code = "nonzero_exit"
    user_message = "The download failed."

    def __init__(self, exit_code: int, message: Optional[str] = None, retryable: bool = False):
        super().__init__(message or f"Download failed (exit code: {exit_code})")
        self.exit_code = exit_code
        self.retryable = retryable


class OutputNotFoundError(DownloaderError):
    code = "output_not_found"
    user_message = "Output file not found."


class JobCancelledError(DownloaderError):
    code = "cancelled"
    user_message = "Download cancelled."


class ExtractorUnavailableError(DownloaderError):
    code = "extractor_unavailable"
    user_message = "The media extractor is not installed or not runnable."


class ErrorManager:
    """Convert internal exceptions to compact user-facing messages."""

    def to_user_message(self, error: Exception) -> str:
        if isinstance(error, NonZeroExitError):
            return f"Download failed (exit code: {error.exit_code})"
        if isinstance(error, DownloaderError):
            return error.user_message

        msg = str(error).lower()
        if "unsupported url" in msg:
            return "This link is not supported."
        if "video unavailable" in msg or "private" in msg:
            return "The video is unavailable. It may be private, removed or region locked."
        if "timed out" in msg or "timeout" in msg:
            return "The request timed out. Try again later."
        if "no space" in msg:
            return "Not enough disk space."
        return "An unexpected error occurred."

    def describe(self, error: Exception) -> dict:
        """Terminal error payload: message, retryable hint and error kind."""
        payload = {
            "message": self.to_user_message(error),
            "retryable": bool(getattr(error, "retryable", False)),
            "code": getattr(error, "code", "internal"),
        }
        if isinstance(error, DownloaderError):
            payload["detail"] = str(error)
        exit_code = getattr(error, "exit_code", None)
        if exit_code is not None:
            payload["exit_code"] = exit_code
        return payload


error_manager = ErrorManager()
