"""Course metadata repositories stored beside each course root.

Every course keeps its metadata in ``<root>/.coursekeeper``: the serialized
graph plus a ``backups/`` folder of timestamped snapshots. Two backends
implement the :class:`CourseRepository` contract: a JSON document and an
SQLite database.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import re
import shutil
import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol

from ..config import METADATA_DIRNAME, AppConfig
from ..errors import RepositoryError
from ..models import Chapter, Course, CourseStatus, Part, ResumeMarker
from .events import emit_repository_event
from .naming import normalize_path


LOGGER = logging.getLogger(__name__)

BACKUP_DIRNAME = "backups"
JSON_FILE_NAME = "course.json"
DB_FILE_NAME = "course.db"


class CourseRepository(Protocol):
    """Contract the core relies on for persisting a course graph."""

    def load(self, root_path: Path | str) -> Optional[Course]:
        """Return the persisted course for *root_path* or ``None`` when there is none."""

    def save(self, course: Course) -> None:
        """Persist *course* atomically, keeping a backup of the previous state."""

    def backup(self, root_path: Path | str, reason: Optional[str] = None) -> Optional[Path]:
        """Snapshot the current metadata of *root_path* and return the snapshot path."""

    def get_repository_folder(self, root_path: Path | str) -> Path:
        """Return (and create) the metadata folder of *root_path*."""


_BACKUP_LABEL = re.compile(r"^(?P<stamp>\d{8}T\d{6})(?:-.*?)?(?:-(?P<sequence>\d{3}))?$")


def _backup_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")


def _reason_suffix(reason: Optional[str]) -> str:
    if not reason:
        return ""
    cleaned = re.sub(r"[^a-z0-9]+", "-", reason.strip().lower()).strip("-")
    return f"-{cleaned}" if cleaned else ""


class _FolderRepository:
    """Shared folder, backup and instrumentation helpers."""

    file_name: str = ""
    backup_extension: str = ""

    def __init__(self, *, keep_backups: int = 20, metadata_dirname: str = METADATA_DIRNAME) -> None:
        self._keep_backups = keep_backups
        self._metadata_dirname = metadata_dirname

    def _folder(self, root_path: Path | str) -> Path:
        return Path(normalize_path(str(root_path))) / self._metadata_dirname

    def get_repository_folder(self, root_path: Path | str) -> Path:
        folder = self._folder(root_path)
        folder.mkdir(parents=True, exist_ok=True)
        return folder

    def metadata_path(self, root_path: Path | str) -> Path:
        """Return the metadata file of *root_path* without creating anything."""

        return self._folder(root_path) / self.file_name

    def list_backups(self, root_path: Path | str) -> List[Path]:
        """Return the backups of *root_path*, oldest first."""

        backups = self._folder(root_path) / BACKUP_DIRNAME
        if not backups.is_dir():
            return []
        prefix = f"{self.file_name}.bak-"
        return sorted(
            (path for path in backups.iterdir() if path.name.startswith(prefix)),
            key=self._backup_order,
        )

    def _backup_order(self, path: Path) -> tuple:
        label = path.name[len(f"{self.file_name}.bak-") :]
        if self.backup_extension and label.endswith(self.backup_extension):
            label = label[: -len(self.backup_extension)]
        match = _BACKUP_LABEL.match(label)
        if match is None:
            return ("", 0, path.name)
        return (match.group("stamp"), int(match.group("sequence") or 0), path.name)

    @contextlib.contextmanager
    def _track(self, action: str, **payload: Any) -> Iterator[Dict[str, Any]]:
        """Emit a structured repository event with the duration of *action*."""

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        try:
            yield event_payload
        except Exception as exc:
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            event_payload.setdefault("status", "ok")
            emit_repository_event(
                action,
                payload=event_payload,
                duration_ms=(time.perf_counter() - start) * 1000.0,
                level=logging.DEBUG,
            )

    def _next_backup_path(self, folder: Path, reason: Optional[str]) -> Path:
        backups = folder / BACKUP_DIRNAME
        backups.mkdir(parents=True, exist_ok=True)
        stamp = _backup_stamp()
        same_second = f"{self.file_name}.bak-{stamp}"
        # one sequence is shared by every backup taken in the same second
        taken = [
            self._backup_order(path)[1]
            for path in backups.iterdir()
            if path.name.startswith(same_second)
        ]
        sequence = max(taken) + 1 if taken else 0
        stem = f"{same_second}{_reason_suffix(reason)}"
        while True:
            suffix = f"-{sequence:03d}" if sequence else ""
            candidate = backups / f"{stem}{suffix}{self.backup_extension}"
            if not candidate.exists():
                return candidate
            sequence += 1

    def _trim_backups(self, root_path: Path | str) -> None:
        if self._keep_backups <= 0:
            return
        backups = self.list_backups(root_path)
        for stale in backups[: max(len(backups) - self._keep_backups, 0)]:
            try:
                stale.unlink()
                LOGGER.debug("Removed stale backup %s", stale)
            except OSError as error:  # pragma: no cover
                LOGGER.warning("Could not remove backup %s: %s", stale, error)

    def _copy_to_backup(self, root_path: Path | str, reason: Optional[str]) -> Optional[Path]:
        folder = self._folder(root_path)
        source = folder / self.file_name
        if not source.exists():
            return None
        target = self._next_backup_path(folder, reason)
        shutil.copy2(source, target)
        self._trim_backups(root_path)
        LOGGER.debug("Backed up %s to %s", source, target)
        return target


class JsonCourseRepository(_FolderRepository):
    """Store each course as ``.coursekeeper/course.json`` with atomic replacement."""

    file_name = JSON_FILE_NAME
    backup_extension = ".json"

    def load(self, root_path: Path | str) -> Optional[Course]:
        path = self.metadata_path(root_path)
        with self._track("load", backend="json", root=root_path) as event:
            if not path.exists():
                event["found"] = False
                return None
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
                course = Course.from_dict(payload)
            except (OSError, ValueError, TypeError, KeyError) as error:
                LOGGER.warning("Ignoring unreadable course metadata %s: %s", path, error)
                event["found"] = False
                event["error"] = str(error)
                return None
            event["found"] = True
            event["parts"] = course.part_count
            return course

    def save(self, course: Course) -> None:
        if course is None:
            raise ValueError("course is required")
        with self._track("save", backend="json", root=course.root_path) as event:
            try:
                path = self.get_repository_folder(course.root_path) / self.file_name
                temporary = path.with_name(path.name + ".tmp")
                document = json.dumps(course.to_dict(), indent=2, ensure_ascii=False)
                temporary.write_text(document, encoding="utf-8")
                self._copy_to_backup(course.root_path, None)
                os.replace(temporary, path)
            except OSError as error:
                raise RepositoryError(
                    f"Unable to save course metadata for '{course.root_path}': {error}"
                ) from error
            event["parts"] = course.part_count

    def backup(self, root_path: Path | str, reason: Optional[str] = None) -> Optional[Path]:
        with self._track("backup", backend="json", root=root_path, reason=reason) as event:
            try:
                target = self._copy_to_backup(root_path, reason)
            except OSError as error:
                raise RepositoryError(f"Unable to back up '{root_path}': {error}") from error
            event["backup"] = target
            return target


_SCHEMA = """
PRAGMA foreign_keys = ON;
CREATE TABLE IF NOT EXISTS courses (
    id TEXT PRIMARY KEY,
    root_path TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    last_scanned_at TEXT,
    fingerprint TEXT,
    total_duration_seconds INTEGER,
    watched_seconds INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'in-progress',
    resume_part_id TEXT,
    resume_position_seconds INTEGER
);

CREATE TABLE IF NOT EXISTS chapters (
    id TEXT PRIMARY KEY,
    course_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    rel_path TEXT NOT NULL DEFAULT '.',
    sort_order INTEGER,
    FOREIGN KEY(course_id) REFERENCES courses(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS parts (
    id TEXT PRIMARY KEY,
    chapter_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    file_name TEXT NOT NULL,
    path TEXT NOT NULL,
    part_index INTEGER,
    title TEXT NOT NULL DEFAULT '',
    duration_seconds INTEGER,
    file_size_bytes INTEGER NOT NULL DEFAULT 0,
    last_position_seconds INTEGER NOT NULL DEFAULT 0,
    watched INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY(chapter_id) REFERENCES chapters(id) ON DELETE CASCADE
);
"""


class SqliteCourseRepository(_FolderRepository):
    """Store each course in ``.coursekeeper/course.db``.

    A save replaces the whole graph inside one transaction, so readers
    never observe a half-written course.
    """

    file_name = DB_FILE_NAME
    backup_extension = ".db"

    def _connect(self, root_path: Path | str) -> sqlite3.Connection:
        db_path = self.get_repository_folder(root_path) / self.file_name
        LOGGER.debug("Opening SQLite connection to %s", db_path)
        connection = sqlite3.connect(db_path)
        connection.row_factory = sqlite3.Row
        connection.executescript(_SCHEMA)
        return connection

    def load(self, root_path: Path | str) -> Optional[Course]:
        db_path = self.metadata_path(root_path)
        with self._track("load", backend="sqlite", root=root_path) as event:
            if not db_path.exists():
                event["found"] = False
                return None
            try:
                connection = self._connect(root_path)
            except sqlite3.Error as error:
                LOGGER.warning("Ignoring unreadable course database %s: %s", db_path, error)
                event["found"] = False
                return None
            try:
                course = self._read_course(connection, normalize_path(str(root_path)))
            except (sqlite3.Error, ValueError) as error:
                LOGGER.warning("Ignoring unreadable course database %s: %s", db_path, error)
                course = None
            finally:
                connection.close()
            event["found"] = course is not None
            return course

    def _read_course(self, connection: sqlite3.Connection, root_path: str) -> Optional[Course]:
        row = connection.execute(
            "SELECT * FROM courses ORDER BY (root_path = ?) DESC LIMIT 1", (root_path,)
        ).fetchone()
        if row is None:
            return None

        resume = None
        if row["resume_part_id"]:
            resume = ResumeMarker(
                part_id=row["resume_part_id"],
                position_seconds=int(row["resume_position_seconds"] or 0),
            )
        course = Course(
            id=row["id"],
            root_path=row["root_path"],
            title=row["title"],
            created_at=datetime.fromisoformat(row["created_at"]),
            last_scanned_at=(
                datetime.fromisoformat(row["last_scanned_at"]) if row["last_scanned_at"] else None
            ),
            fingerprint=row["fingerprint"],
            total_duration_seconds=row["total_duration_seconds"],
            watched_seconds=int(row["watched_seconds"] or 0),
            status=CourseStatus(row["status"]),
            resume=resume,
        )

        chapter_rows = connection.execute(
            "SELECT * FROM chapters WHERE course_id = ? ORDER BY position", (course.id,)
        ).fetchall()
        for chapter_row in chapter_rows:
            chapter = Chapter(
                id=chapter_row["id"],
                title=chapter_row["title"],
                rel_path=chapter_row["rel_path"],
                order=chapter_row["sort_order"],
            )
            part_rows = connection.execute(
                "SELECT * FROM parts WHERE chapter_id = ? ORDER BY position", (chapter.id,)
            ).fetchall()
            chapter.parts = [
                Part(
                    id=part_row["id"],
                    file_name=part_row["file_name"],
                    path=part_row["path"],
                    index=part_row["part_index"],
                    title=part_row["title"],
                    duration_seconds=part_row["duration_seconds"],
                    file_size_bytes=int(part_row["file_size_bytes"]),
                    last_position_seconds=int(part_row["last_position_seconds"]),
                    watched=bool(part_row["watched"]),
                )
                for part_row in part_rows
            ]
            course.chapters.append(chapter)
        return course

    def save(self, course: Course) -> None:
        if course is None:
            raise ValueError("course is required")
        with self._track("save", backend="sqlite", root=course.root_path) as event:
            try:
                self._copy_to_backup(course.root_path, None)
                connection = self._connect(course.root_path)
            except (OSError, sqlite3.Error) as error:
                raise RepositoryError(
                    f"Unable to open course database for '{course.root_path}': {error}"
                ) from error
            try:
                with connection:
                    self._write_course(connection, course)
            except sqlite3.Error as error:
                raise RepositoryError(
                    f"Unable to save course metadata for '{course.root_path}': {error}"
                ) from error
            finally:
                connection.close()
            event["parts"] = course.part_count

    @staticmethod
    def _write_course(connection: sqlite3.Connection, course: Course) -> None:
        connection.execute("DELETE FROM courses")
        resume = course.resume
        connection.execute(
            """
            INSERT INTO courses(
                id, root_path, title, created_at, last_scanned_at, fingerprint,
                total_duration_seconds, watched_seconds, status,
                resume_part_id, resume_position_seconds
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                course.id,
                course.root_path,
                course.title,
                course.created_at.isoformat(),
                course.last_scanned_at.isoformat() if course.last_scanned_at else None,
                course.fingerprint,
                course.total_duration_seconds,
                course.watched_seconds,
                course.status.value,
                resume.part_id if resume else None,
                resume.position_seconds if resume else None,
            ),
        )
        for chapter_position, chapter in enumerate(course.chapters):
            connection.execute(
                "INSERT INTO chapters(id, course_id, position, title, rel_path, sort_order)"
                " VALUES (?, ?, ?, ?, ?, ?)",
                (chapter.id, course.id, chapter_position, chapter.title, chapter.rel_path, chapter.order),
            )
            connection.executemany(
                """
                INSERT INTO parts(
                    id, chapter_id, position, file_name, path, part_index, title,
                    duration_seconds, file_size_bytes, last_position_seconds, watched
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        part.id,
                        chapter.id,
                        part_position,
                        part.file_name,
                        part.path,
                        part.index,
                        part.title,
                        part.duration_seconds,
                        part.file_size_bytes,
                        part.last_position_seconds,
                        int(part.watched),
                    )
                    for part_position, part in enumerate(chapter.parts)
                ],
            )

    def backup(self, root_path: Path | str, reason: Optional[str] = None) -> Optional[Path]:
        folder = self._folder(root_path)
        source = folder / self.file_name
        with self._track("backup", backend="sqlite", root=root_path, reason=reason) as event:
            if not source.exists():
                return None
            target = self._next_backup_path(folder, reason)
            try:
                with contextlib.closing(sqlite3.connect(source)) as origin, contextlib.closing(
                    sqlite3.connect(target)
                ) as destination:
                    origin.backup(destination)
            except sqlite3.Error as error:
                raise RepositoryError(f"Unable to back up '{root_path}': {error}") from error
            self._trim_backups(root_path)
            event["backup"] = target
            return target


def create_repository(config: AppConfig) -> CourseRepository:
    """Return the repository backend selected in *config*."""

    keep_backups = config.library.keep_backups
    if config.repository_backend == "sqlite":
        return SqliteCourseRepository(keep_backups=keep_backups)
    return JsonCourseRepository(keep_backups=keep_backups)


__all__ = [
    "BACKUP_DIRNAME",
    "CourseRepository",
    "JsonCourseRepository",
    "SqliteCourseRepository",
    "create_repository",
]
