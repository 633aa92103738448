"""
Adapter around the yt-dlp extractor: metadata lookup and fetch processes.
"""

import asyncio
import logging
import os
import re
import shutil
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from config import (
    MAX_VIDEO_HEIGHT,
    MERGE_OUTPUT_FORMAT,
    YTDL_METADATA_OPTS,
    YTDLP_COOKIES_FILE,
    YTDLP_FRAGMENT_RETRIES,
    YTDLP_PATH,
    YTDLP_RETRIES,
)
from errors import ExtractorUnavailableError, MetadataError, ProcessSpawnError
from models import DiagnosticLine, Metadata, ProgressEvent
from utils import escape_output_template

logger = logging.getLogger(__name__)

PROGRESS_PREFIX = "PROGRESS::"
ANSI_ESCAPE_RE = re.compile(r"\x1B\[[0-?]*[ -/]*[@-~]")
DOWNLOAD_PERCENT_RE = re.compile(r"^\[download\]\s+(\d{1,3}(?:\.\d+)?)%")
STREAM_LIMIT = 1024 * 1024

ProcessOutput = Union[ProgressEvent, DiagnosticLine]


def build_format_selector(max_height: int = MAX_VIDEO_HEIGHT) -> str:
    """Prefer mp4/m4a under the height cap, fall back to anything usable."""
    return (
        f"bestvideo[height<={max_height}][ext=mp4]+bestaudio[ext=m4a]"
        f"/best[height<={max_height}][ext=mp4]"
        f"/best[height<={max_height}]"
        "/best"
    )


@dataclass
class FetchOptions:
    """Arguments for one fetch process."""

    output_dir: Path
    output_stem: str
    format_selector: str = ""
    merge_output_format: str = MERGE_OUTPUT_FORMAT
    retries: int = YTDLP_RETRIES
    fragment_retries: int = YTDLP_FRAGMENT_RETRIES
    cookies_file: str = YTDLP_COOKIES_FILE

    def __post_init__(self) -> None:
        if not self.format_selector:
            self.format_selector = build_format_selector()

    @property
    def output_template(self) -> str:
        return str(Path(self.output_dir) / f"{escape_output_template(self.output_stem)}.%(ext)s")

    def to_args(self) -> List[str]:
        args = [
            "--newline",
            "--progress-template",
            f"download:{PROGRESS_PREFIX}%(progress._percent_str)s",
            "--no-playlist",
            "--no-mtime",
            "--output",
            self.output_template,
            "--format",
            self.format_selector,
            "--merge-output-format",
            self.merge_output_format,
            "--retries",
            str(self.retries),
            "--fragment-retries",
            str(self.fragment_retries),
        ]
        if self.cookies_file:
            if os.path.exists(self.cookies_file):
                args.extend(["--cookies", self.cookies_file])
            else:
                logger.warning("YTDLP_COOKIES_FILE is set but file does not exist: %s", self.cookies_file)
        return args


def parse_output_line(raw: str) -> Optional[ProcessOutput]:
    """Turn one line of tool output into a progress event or diagnostic line."""
    line = ANSI_ESCAPE_RE.sub("", raw).strip()
    if not line:
        return None

    if line.startswith(PROGRESS_PREFIX):
        value = line[len(PROGRESS_PREFIX):].strip().rstrip("%").strip()
        try:
            return ProgressEvent(raw_percent=float(value))
        except ValueError:
            # "N/A" while the total size is still unknown
            return DiagnosticLine(text=line)

    match = DOWNLOAD_PERCENT_RE.match(line)
    if match:
        return ProgressEvent(raw_percent=float(match.group(1)))
    return DiagnosticLine(text=line)


class FetchProcess:
    """Handle on a running yt-dlp process."""

    def __init__(self, process: asyncio.subprocess.Process):
        self._process = process

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid

    async def events(self) -> AsyncIterator[ProcessOutput]:
        """Yield parsed output until the process closes its stdout."""
        stream = self._process.stdout
        if stream is None:
            return
        while True:
            try:
                line_bytes = await stream.readline()
            except ValueError:
                # line longer than STREAM_LIMIT; the reader drops what it buffered
                logger.debug("Skipping oversized output line from pid=%s", self._process.pid)
                continue
            if not line_bytes:
                break
            parsed = parse_output_line(line_bytes.decode("utf-8", "replace"))
            if parsed is not None:
                yield parsed

    async def wait(self) -> Optional[int]:
        """Exit code, or None when the process died from a signal."""
        code = await self._process.wait()
        if code is None or code < 0:
            return None
        return code

    def kill(self) -> None:
        """Forcefully stop the process and its children. Safe to call twice."""
        if self._process.returncode is not None:
            return
        try:
            if sys.platform != "win32":
                try:
                    os.killpg(self._process.pid, signal.SIGKILL)
                except ProcessLookupError:
                    # not a group leader
                    self._process.kill()
            else:
                self._process.kill()
        except OSError:
            logger.debug("Process %s already gone", self._process.pid)


def resolve_tool_command(configured: str = YTDLP_PATH) -> List[str]:
    """Executable path, yt-dlp on PATH, or the installed yt_dlp module."""
    if configured:
        return [configured]
    found = shutil.which("yt-dlp")
    if found:
        return [found]
    return [sys.executable, "-m", "yt_dlp"]


class ExtractorAdapter:
    """Metadata lookups and fetch processes backed by yt-dlp."""

    def __init__(self, command: Optional[List[str]] = None, metadata_opts: Optional[Dict[str, Any]] = None):
        self.command = command or resolve_tool_command()
        self.metadata_opts = {**YTDL_METADATA_OPTS, **(metadata_opts or {})}

    async def ensure_available(self) -> str:
        """Run ``--version`` once; raise if the tool cannot run at all."""
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            output, _ = await asyncio.wait_for(process.communicate(), timeout=30)
        except (OSError, asyncio.TimeoutError) as error:
            raise ExtractorUnavailableError(f"Cannot run {' '.join(self.command)}: {error}") from error

        if process.returncode != 0:
            raise ExtractorUnavailableError(
                f"{' '.join(self.command)} --version exited with {process.returncode}"
            )
        version = output.decode("utf-8", "replace").strip()
        logger.info("Using yt-dlp %s (%s)", version, " ".join(self.command))
        return version

    async def fetch_metadata(self, url: str) -> Metadata:
        loop = asyncio.get_running_loop()
        try:
            info = await loop.run_in_executor(None, self._extract_info, url)
        except Exception as error:
            raise MetadataError(f"Could not fetch video information: {error}") from error

        if not info:
            raise MetadataError("Extractor returned no information")
        title = info.get("title") or info.get("id") or "media"
        return Metadata(
            title=str(title),
            thumbnail=info.get("thumbnail"),
            description=info.get("description"),
        )

    def _extract_info(self, url: str) -> Optional[Dict[str, Any]]:
        """Blocking yt-dlp metadata lookup used in thread pool."""
        from yt_dlp import YoutubeDL

        with YoutubeDL(self.metadata_opts) as ydl:
            return ydl.extract_info(url, download=False)

    async def spawn_fetch(self, url: str, options: FetchOptions) -> FetchProcess:
        command = [*self.command, *options.to_args(), url]
        kwargs: Dict[str, Any] = {}
        if sys.platform != "win32":
            # own process group so a kill also reaches ffmpeg children
            kwargs["start_new_session"] = True

        try:
            Path(options.output_dir).mkdir(parents=True, exist_ok=True)
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                limit=STREAM_LIMIT,
                **kwargs,
            )
        except OSError as error:
            raise ProcessSpawnError(f"Could not start yt-dlp: {error}") from error

        logger.debug("Spawned pid=%s: %s", process.pid, command)
        return FetchProcess(process)
