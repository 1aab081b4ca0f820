"""Per-video timecode bookmarks kept in a plain text file beside the course.

The file lives at ``<root>/.coursekeeper/timestamps.txt``. Each video gets a
header line holding its path relative to the course root, followed by its
bookmarks sorted by time::

    01 Basics/01 Variables.mp4
    [00:01:05] - %Naming rules%
    [00:04:40] - %100%% sure about scopes%

Literal ``%`` characters in descriptions are doubled.
"""

from __future__ import annotations

import logging
import os
import re
import threading
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Dict, List, Optional, Tuple

from ..config import METADATA_DIRNAME
from ..errors import RepositoryError
from .events import emit_progress_event
from .naming import normalize_path

LOGGER = logging.getLogger(__name__)

TIMESTAMP_FILE_NAME = "timestamps.txt"

_TIME_LINE = re.compile(r"^\[(\d{1,3}):(\d{2}):(\d{2})\]\s*-\s*%(.+)%\s*$")
_COMMENT_PREFIXES = ("#", "//")


@dataclass(frozen=True)
class Timestamp:
    position_seconds: int
    description: str

    def to_line(self) -> str:
        hours, remainder = divmod(self.position_seconds, 3600)
        minutes, seconds = divmod(remainder, 60)
        text = self.description.replace("%", "%%")
        return f"[{hours:02d}:{minutes:02d}:{seconds:02d}] - %{text}%"

    def to_dict(self) -> Dict[str, object]:
        return {"position_seconds": self.position_seconds, "description": self.description}


def parse_timestamp_line(line: str) -> Optional[Timestamp]:
    match = _TIME_LINE.match(line.strip())
    if match is None:
        return None
    hours, minutes, seconds = (int(group) for group in match.group(1, 2, 3))
    if minutes >= 60 or seconds >= 60:
        return None
    description = match.group(4).replace("%%", "%")
    return Timestamp(hours * 3600 + minutes * 60 + seconds, description)


def _is_header(line: str) -> bool:
    return bool(line) and not line.startswith(_COMMENT_PREFIXES) and not _TIME_LINE.match(line)


def relative_video_path(course_root: Path | str, video: Path | str) -> str:
    """Return *video* as a POSIX path relative to *course_root*.

    Relative input is taken as already relative to the root.
    """

    text = str(video).strip()
    if not text:
        raise ValueError("A video path is required")
    if not os.path.isabs(text):
        return PurePath(text).as_posix()
    root = normalize_path(str(course_root))
    absolute = normalize_path(text)
    try:
        return Path(absolute).relative_to(root).as_posix()
    except ValueError as error:
        raise ValueError(f"'{video}' is not inside course root '{root}'") from error


class TimestampStore:
    """Load and append timecode bookmarks for the videos of a course."""

    def __init__(self, *, metadata_dirname: str = METADATA_DIRNAME) -> None:
        self._metadata_dirname = metadata_dirname
        self._lock = threading.Lock()

    def file_path(self, course_root: Path | str) -> Path:
        return Path(normalize_path(str(course_root))) / self._metadata_dirname / TIMESTAMP_FILE_NAME

    def load(self, course_root: Path | str) -> Dict[str, List[Timestamp]]:
        """Return bookmarks keyed by relative video path, each list sorted by time."""

        bookmarks: Dict[str, List[Timestamp]] = {}
        current: Optional[str] = None
        for raw in self._read_lines(self.file_path(course_root)):
            line = raw.strip()
            if not line:
                continue
            if _is_header(line):
                current = self._find_key(bookmarks, line) or line
                bookmarks.setdefault(current, [])
                continue
            if current is None:
                continue
            timestamp = parse_timestamp_line(line)
            if timestamp is not None:
                bookmarks[current].append(timestamp)

        for key, values in bookmarks.items():
            bookmarks[key] = sorted(values, key=lambda item: item.position_seconds)
        return bookmarks

    def for_video(self, course_root: Path | str, video: Path | str) -> List[Timestamp]:
        relative = relative_video_path(course_root, video)
        bookmarks = self.load(course_root)
        key = self._find_key(bookmarks, relative)
        return list(bookmarks[key]) if key is not None else []

    def append(
        self,
        course_root: Path | str,
        video: Path | str,
        position_seconds: int,
        description: str,
    ) -> Timestamp:
        """Add a bookmark to *video* and rewrite the file with its block sorted."""

        if position_seconds < 0:
            raise ValueError("Bookmark position cannot be negative")
        text = " ".join(str(description or "").split())
        if not text:
            raise ValueError("A bookmark description is required")
        relative = relative_video_path(course_root, video)
        timestamp = Timestamp(int(position_seconds), text)
        target = self.file_path(course_root)

        with self._lock:
            lines = self._read_lines(target)
            lines = self._insert(lines, relative, timestamp)
            self._write_lines(target, lines)

        emit_progress_event(
            "Bookmark added",
            payload={"root": course_root, "video": relative, "position": timestamp.position_seconds},
        )
        return timestamp

    @staticmethod
    def _find_key(bookmarks: Dict[str, List[Timestamp]], relative: str) -> Optional[str]:
        wanted = relative.casefold()
        for key in bookmarks:
            if key.casefold() == wanted:
                return key
        return None

    @staticmethod
    def _insert(lines: List[str], relative: str, timestamp: Timestamp) -> List[str]:
        wanted = relative.casefold()
        header = next(
            (index for index, line in enumerate(lines) if line.strip().casefold() == wanted),
            None,
        )
        if header is None:
            if lines and lines[-1].strip():
                lines.append("")
            lines.extend([relative, timestamp.to_line()])
            return lines

        end = header + 1
        block: List[Tuple[int, str]] = []
        while end < len(lines):
            existing = parse_timestamp_line(lines[end])
            if existing is None:
                break
            block.append((existing.position_seconds, lines[end].strip()))
            end += 1
        block.append((timestamp.position_seconds, timestamp.to_line()))
        block.sort(key=lambda item: item[0])
        return lines[: header + 1] + [line for _, line in block] + lines[end:]

    @staticmethod
    def _read_lines(path: Path) -> List[str]:
        if not path.exists():
            return []
        try:
            return path.read_text(encoding="utf-8").splitlines()
        except (OSError, UnicodeError) as error:
            raise RepositoryError(f"Unable to read bookmarks from '{path}': {error}") from error

    @staticmethod
    def _write_lines(path: Path, lines: List[str]) -> None:
        temp_path = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
            os.replace(temp_path, path)
        except OSError as error:
            LOGGER.error("Failed to write bookmarks to %s: %s", path, error)
            raise RepositoryError(f"Unable to write bookmarks to '{path}': {error}") from error


__all__ = [
    "TIMESTAMP_FILE_NAME",
    "Timestamp",
    "TimestampStore",
    "parse_timestamp_line",
    "relative_video_path",
]
