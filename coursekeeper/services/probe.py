"""Media duration probing through FFprobe."""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Optional, Protocol


LOGGER = logging.getLogger(__name__)


class DurationProbe(Protocol):
    """Protocol describing a media duration backend."""

    def probe(self, media_path: Path) -> Optional[int]:
        """Return the duration of *media_path* in whole seconds, or ``None``."""


class FFprobeDurationProbe:
    """Read container durations with ``ffprobe -show_format``.

    Every failure (missing binary, timeout, unreadable media, malformed
    output) is reported as ``None`` so a scan never fails because of one file.
    """

    def __init__(self, *, timeout_seconds: float = 7.0, binary: Optional[str] = None) -> None:
        self._timeout = timeout_seconds
        self._binary = binary
        self._missing_logged = False

    def _resolve_binary(self) -> Optional[str]:
        if self._binary:
            return self._binary
        return shutil.which("ffprobe")

    def probe(self, media_path: Path) -> Optional[int]:
        if not media_path.is_file():
            return None

        ffprobe_path = self._resolve_binary()
        if ffprobe_path is None:
            if not self._missing_logged:
                LOGGER.warning("FFprobe not found; durations will stay unknown")
                self._missing_logged = True
            return None

        command = [
            ffprobe_path,
            "-v",
            "quiet",
            "-print_format",
            "json",
            "-show_format",
            str(media_path),
        ]
        LOGGER.debug("Executing FFprobe command: %s", " ".join(command))
        try:
            completed = subprocess.run(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self._timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            LOGGER.warning("FFprobe timed out after %.1fs for %s", self._timeout, media_path)
            return None
        except OSError as error:
            LOGGER.warning("FFprobe could not be started for %s: %s", media_path, error)
            return None

        if completed.returncode != 0:
            LOGGER.debug(
                "FFprobe failed (code=%s) for %s: %s",
                completed.returncode,
                media_path,
                completed.stderr.decode("utf-8", errors="ignore").strip(),
            )
            return None

        return parse_ffprobe_duration(completed.stdout.decode("utf-8", errors="ignore"))


def parse_ffprobe_duration(output: str) -> Optional[int]:
    """Extract ``format.duration`` from FFprobe JSON output, rounded to seconds."""

    if not output or not output.strip():
        return None
    try:
        document = json.loads(output)
        raw_duration = document["format"]["duration"]
        seconds = float(raw_duration)
    except (ValueError, KeyError, TypeError):
        return None
    if seconds < 0:
        return None
    return int(round(seconds))


__all__ = ["DurationProbe", "FFprobeDurationProbe", "parse_ffprobe_duration"]
