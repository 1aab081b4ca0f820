"""In-memory course graph shared by the scanner, the merge engine and the repositories."""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from .services.naming import path_key


# A part counts as watched once playback reaches this share of its duration.
WATCHED_RATIO = 0.95


class CourseStatus(str, Enum):
    IN_PROGRESS = "in-progress"
    CHANGED = "changed"
    COMPLETED = "completed"


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def watched_threshold(duration_seconds: int) -> int:
    """Return the position at which a part of *duration_seconds* becomes watched."""

    return int(round(duration_seconds * WATCHED_RATIO))


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


@dataclass
class Part:
    """One playable video file together with its progress."""

    file_name: str
    path: str
    id: str = field(default_factory=new_id)
    index: Optional[int] = None
    title: str = ""
    duration_seconds: Optional[int] = None
    file_size_bytes: int = 0
    last_position_seconds: int = 0
    watched: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "file_name": self.file_name,
            "path": self.path,
            "index": self.index,
            "title": self.title,
            "duration_seconds": self.duration_seconds,
            "file_size_bytes": self.file_size_bytes,
            "last_position_seconds": self.last_position_seconds,
            "watched": self.watched,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Part":
        return cls(
            id=str(payload.get("id") or new_id()),
            file_name=str(payload.get("file_name") or ""),
            path=str(payload.get("path") or ""),
            index=_optional_int(payload.get("index")),
            title=str(payload.get("title") or ""),
            duration_seconds=_optional_int(payload.get("duration_seconds")),
            file_size_bytes=int(payload.get("file_size_bytes") or 0),
            last_position_seconds=int(payload.get("last_position_seconds") or 0),
            watched=bool(payload.get("watched", False)),
        )


@dataclass
class Chapter:
    """A directory of the course that directly contains playable parts."""

    title: str
    rel_path: str = "."
    id: str = field(default_factory=new_id)
    order: Optional[int] = None
    parts: List[Part] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "rel_path": self.rel_path,
            "order": self.order,
            "parts": [part.to_dict() for part in self.parts],
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Chapter":
        return cls(
            id=str(payload.get("id") or new_id()),
            title=str(payload.get("title") or ""),
            rel_path=str(payload.get("rel_path") or "."),
            order=_optional_int(payload.get("order")),
            parts=[Part.from_dict(item) for item in payload.get("parts") or []],
        )


@dataclass(frozen=True)
class ResumeMarker:
    part_id: str
    position_seconds: int


@dataclass
class Course:
    """Top level unit: one scanned folder tree of video content."""

    root_path: str
    title: str = ""
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    last_scanned_at: Optional[datetime] = None
    fingerprint: Optional[str] = None
    total_duration_seconds: Optional[int] = None
    watched_seconds: int = 0
    status: CourseStatus = CourseStatus.IN_PROGRESS
    resume: Optional[ResumeMarker] = None
    chapters: List[Chapter] = field(default_factory=list)

    # ------------------------------------------------------------------
    # Traversal helpers
    # ------------------------------------------------------------------
    def iter_parts(self) -> Iterator[Part]:
        for chapter in self.chapters:
            yield from chapter.parts

    @property
    def part_count(self) -> int:
        return sum(len(chapter.parts) for chapter in self.chapters)

    def find_part(self, part_id: str) -> Optional[Part]:
        for part in self.iter_parts():
            if part.id == part_id:
                return part
        return None

    def find_part_by_path(self, path: str) -> Optional[Part]:
        wanted = path_key(path)
        if not wanted:
            return None
        for part in self.iter_parts():
            if path_key(part.path) == wanted:
                return part
        return None

    def clone(self) -> "Course":
        return copy.deepcopy(self)

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------
    def recompute_aggregates(self) -> None:
        """Refresh watched seconds, total duration and the completed status."""

        watched_seconds = 0
        total_duration = 0
        any_duration = False
        all_watched = True
        for part in self.iter_parts():
            if part.duration_seconds is not None:
                any_duration = True
                total_duration += part.duration_seconds
                watched_seconds += min(part.last_position_seconds, part.duration_seconds)
            else:
                watched_seconds += part.last_position_seconds
            all_watched = all_watched and part.watched

        self.watched_seconds = watched_seconds
        self.total_duration_seconds = total_duration if any_duration else None

        if self.part_count and all_watched:
            self.status = CourseStatus.COMPLETED
        elif self.status is CourseStatus.COMPLETED:
            self.status = CourseStatus.IN_PROGRESS

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        resume = None
        if self.resume is not None:
            resume = {
                "part_id": self.resume.part_id,
                "position_seconds": self.resume.position_seconds,
            }
        return {
            "id": self.id,
            "root_path": self.root_path,
            "title": self.title,
            "created_at": _format_timestamp(self.created_at),
            "last_scanned_at": _format_timestamp(self.last_scanned_at),
            "fingerprint": self.fingerprint,
            "status": self.status.value,
            "resume": resume,
            "meta": {
                "total_duration_seconds": self.total_duration_seconds,
                "total_parts": self.part_count,
                "watched_seconds": self.watched_seconds,
            },
            "chapters": [chapter.to_dict() for chapter in self.chapters],
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Course":
        meta = payload.get("meta") or {}
        resume_payload = payload.get("resume")
        resume = None
        if resume_payload and resume_payload.get("part_id"):
            resume = ResumeMarker(
                part_id=str(resume_payload["part_id"]),
                position_seconds=int(resume_payload.get("position_seconds") or 0),
            )
        return cls(
            id=str(payload.get("id") or new_id()),
            root_path=str(payload.get("root_path") or ""),
            title=str(payload.get("title") or ""),
            created_at=_parse_timestamp(payload.get("created_at")) or utcnow(),
            last_scanned_at=_parse_timestamp(payload.get("last_scanned_at")),
            fingerprint=payload.get("fingerprint"),
            total_duration_seconds=_optional_int(meta.get("total_duration_seconds")),
            watched_seconds=int(meta.get("watched_seconds") or 0),
            status=CourseStatus(payload.get("status") or CourseStatus.IN_PROGRESS.value),
            resume=resume,
            chapters=[Chapter.from_dict(item) for item in payload.get("chapters") or []],
        )


__all__ = [
    "Chapter",
    "Course",
    "CourseStatus",
    "Part",
    "ResumeMarker",
    "WATCHED_RATIO",
    "new_id",
    "utcnow",
    "watched_threshold",
]
