"""
Rescale per-stream extractor progress into one monotonic 0-100 job progress.

yt-dlp downloads the video stream, then the audio stream, then merges them,
and each stream restarts its own 0-100% counter. Stage changes are inferred
from the tool's own output, so detection is best effort: a tool that never
prints the markers stays in ``video`` or ``unknown``.
"""

import re
from typing import Optional

from models import ProgressEvent, ProgressUpdate, Stage

STAGE_LABELS = {
    Stage.VIDEO: "[1/3] downloading video",
    Stage.AUDIO: "[2/3] downloading audio",
    Stage.MERGE: "[3/3] merging",
    Stage.UNKNOWN: "downloading",
}

VIDEO_SHARE = 0.8
AUDIO_SHARE = 0.2

FORMATS_RE = re.compile(r"Downloading \d+ format\(s\):\s*(?P<formats>\S+)")
DESTINATION_MARKER = "[download] Destination:"
MERGER_MARKER = "[Merger]"


def scale(stage: Stage, raw_percent: float) -> float:
    raw = min(100.0, max(0.0, raw_percent))
    if stage == Stage.VIDEO:
        return raw * VIDEO_SHARE
    if stage == Stage.AUDIO:
        return VIDEO_SHARE * 100 + raw * AUDIO_SHARE
    if stage == Stage.MERGE:
        return 100.0
    return raw


class ProgressNormalizer:
    """Per-job progress state."""

    def __init__(self) -> None:
        self.current_stage = Stage.UNKNOWN
        self.last_percent = 0
        self._multi_stream = False
        self._destinations = 0

    def normalize(self, event: ProgressEvent) -> ProgressUpdate:
        if event.stage_hint is not None:
            self.current_stage = event.stage_hint
        percent = int(round(scale(self.current_stage, event.raw_percent)))
        return self._emit(percent)

    def observe_line(self, text: str) -> Optional[ProgressUpdate]:
        """Update the stage from a diagnostic line; merge start yields 100%."""
        match = FORMATS_RE.search(text)
        if match:
            self._multi_stream = "+" in match.group("formats")
            return None

        if text.startswith(DESTINATION_MARKER):
            self._destinations += 1
            if self._destinations == 1 and self._multi_stream:
                self.current_stage = Stage.VIDEO
            elif self._destinations == 2:
                self.current_stage = Stage.AUDIO
            return None

        if text.startswith(MERGER_MARKER) and self.current_stage != Stage.MERGE:
            self.current_stage = Stage.MERGE
            return self._emit(100)
        return None

    def _emit(self, percent: int) -> ProgressUpdate:
        percent = max(percent, self.last_percent)
        self.last_percent = percent
        return ProgressUpdate(percent=percent, label=STAGE_LABELS[self.current_stage])
