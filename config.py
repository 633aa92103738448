"""
Runtime configuration for the download queue server.
"""

import os
from pathlib import Path
from typing import Tuple

from dotenv import load_dotenv

load_dotenv()


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name, "").strip()
    return Path(raw).expanduser() if raw else default


BASE_DIR: Path = Path(__file__).resolve().parent

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

HOST: str = os.getenv("HOST", "0.0.0.0")
PORT: int = int(os.getenv("PORT", "3000"))

WEB_ROOT: Path = _env_path("WEB_ROOT", BASE_DIR / "web")
MEDIA_DIR: Path = _env_path("MEDIA_DIR", WEB_ROOT / "videos")
DATA_DIR: Path = _env_path("DATA_DIR", WEB_ROOT / "data")
QUEUE_FILE: Path = _env_path("QUEUE_FILE", DATA_DIR / "queue.json")
LIBRARY_FILE: Path = _env_path("LIBRARY_FILE", DATA_DIR / "videos.json")

# URL prefix under which finished files are published by the web layer.
MEDIA_URL_PREFIX: str = "videos"

YTDLP_PATH: str = os.getenv("YTDLP_PATH", "").strip()
YTDLP_COOKIES_FILE: str = os.getenv("YTDLP_COOKIES_FILE", "").strip()

MAX_CONCURRENT_DOWNLOADS: int = int(os.getenv("MAX_CONCURRENT_DOWNLOADS", "2"))
DOWNLOAD_TIMEOUT_SECONDS: float = float(os.getenv("DOWNLOAD_TIMEOUT_SECONDS", "300"))
STUCK_PROGRESS_SECONDS: float = float(os.getenv("STUCK_PROGRESS_SECONDS", "60"))
WATCHDOG_INTERVAL_SECONDS: float = float(os.getenv("WATCHDOG_INTERVAL_SECONDS", "10"))
PENDING_CANCEL_TTL_SECONDS: float = float(os.getenv("PENDING_CANCEL_TTL_SECONDS", "3600"))

MAX_VIDEO_HEIGHT: int = int(os.getenv("MAX_VIDEO_HEIGHT", "720"))
MERGE_OUTPUT_FORMAT: str = "mp4"
YTDLP_RETRIES: int = int(os.getenv("YTDLP_RETRIES", "10"))
YTDLP_FRAGMENT_RETRIES: int = int(os.getenv("YTDLP_FRAGMENT_RETRIES", "10"))

YTDL_METADATA_OPTS = {
    "quiet": True,
    "no_warnings": True,
    "skip_download": True,
    "noplaylist": True,
}

MEDIA_EXTENSIONS: Tuple[str, ...] = (".mp4", ".webm", ".mkv", ".mov", ".m4a", ".mp3")

DEFAULT_LIBRARY_DESCRIPTION: str = "Newly downloaded video"
