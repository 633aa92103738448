"""
Utilities for URL validation, filenames, output discovery and JSON files.
"""

import json
import os
import re
import stat
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, List, Optional, Set, Tuple
from urllib.parse import urlparse

import aiofiles
import aiofiles.os

MAX_TITLE_LENGTH = 150


def validate_url_input(url: Optional[str]) -> Tuple[bool, str]:
    """Validate URL format and safety."""
    if not url or not url.strip():
        return False, "URL is required"
    if len(url) > 2000:
        return False, "URL is too long"

    try:
        parsed = urlparse(url.strip())
        if parsed.scheme.lower() not in {"http", "https"}:
            return False, "Only HTTP/HTTPS URLs are supported"
        if not parsed.netloc:
            return False, "Malformed URL"
    except ValueError:
        return False, "Malformed URL"

    return True, ""


def sanitize_filename(filename: str, max_length: int = MAX_TITLE_LENGTH) -> str:
    """Return filesystem-safe filename."""
    safe_name = re.sub(r'[<>:"/\\|?*]', "_", filename or "")
    safe_name = re.sub(r"[\x00-\x1f\x7f-\x9f]", "", safe_name)
    safe_name = safe_name.strip().strip(".")
    return (safe_name or "media")[:max_length]


def escape_output_template(text: str) -> str:
    """Escape literal text for use inside a yt-dlp output template."""
    return text.replace("%", "%%")


def generate_job_id() -> str:
    return f"download-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def format_duration(seconds: float) -> str:
    """Human readable duration."""
    total_seconds = max(0, int(seconds))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def get_file_size_mb(filepath: Path) -> float:
    """File size in MB."""
    try:
        return os.path.getsize(filepath) / (1024 * 1024)
    except OSError:
        return 0.0


# yt-dlp names per-format intermediates "<stem>.f<format_id>.<ext>"
INTERMEDIATE_RE = re.compile(r"\.f\d[\w-]*\.[^.]+$")


def _newest(entries: List[Tuple[Path, float]]) -> Path:
    return max(entries, key=lambda item: (not INTERMEDIATE_RE.search(item[0].name), item[1]))[0]


def _scan_media(directory: Path, allowed: Set[str]) -> List[Tuple[Path, float]]:
    """Regular media files with their mtime, each stat'ed once."""
    found = []
    for entry in directory.iterdir():
        if entry.suffix.lower() not in allowed:
            continue
        try:
            info = entry.stat()
        except OSError:
            # removed by a concurrent job after the listing
            continue
        if stat.S_ISREG(info.st_mode):
            found.append((entry, info.st_mtime))
    return found


def find_output_file(
    directory: Path,
    prefix: str,
    since: float,
    extensions: Iterable[str],
    tag: Optional[str] = None,
) -> Optional[Path]:
    """
    Locate the file produced by a finished download.

    Files carrying ``tag`` win, then files whose name starts with ``prefix``
    written after ``since``. When nothing matches (the extractor may
    transliterate titles), the newest media file modified after ``since`` is
    returned. Final files are preferred over per-format intermediates.
    """
    directory = Path(directory)
    if not directory.is_dir():
        return None

    entries = _scan_media(directory, {ext.lower() for ext in extensions})
    if tag:
        tagged = [entry for entry in entries if tag in entry[0].name]
        if tagged:
            return _newest(tagged)

    # mtime resolution is coarse on some filesystems.
    recent = [entry for entry in entries if entry[1] >= since - 1]
    fresh = [entry for entry in recent if entry[0].name.startswith(prefix)]
    if fresh:
        return _newest(fresh)
    if recent:
        return _newest(recent)
    return None


async def read_json_file(path: Path, default: Any = None) -> Any:
    """Read a JSON document, returning ``default`` when the file is absent."""
    if not await aiofiles.os.path.exists(path):
        return default
    async with aiofiles.open(path, "r", encoding="utf-8") as file:
        content = await file.read()
    if not content.strip():
        return default
    return json.loads(content)


async def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to a temp file beside ``path`` and rename it into place."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as file:
            await file.write(json.dumps(data, indent=4, ensure_ascii=False))
        await aiofiles.os.replace(tmp_path, path)
    finally:
        if await aiofiles.os.path.exists(tmp_path):
            await aiofiles.os.remove(tmp_path)


async def quarantine_file(path: Path) -> Path:
    """Move an unreadable file aside as ``<name>.corrupt-<timestamp>``."""
    path = Path(path)
    target = path.with_name(f"{path.name}.corrupt-{int(time.time())}")
    await aiofiles.os.replace(path, target)
    return target
