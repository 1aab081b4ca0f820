"""High level scan → fingerprint → reconcile → persist pipeline."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional

from ..config import LibrarySettings
from ..errors import RepositoryError
from ..models import Course, Part, utcnow
from .events import emit_scan_event
from .locks import CourseLocks
from .naming import normalize_path
from .playback import ProgressPersister
from .reconcile import MergeResult, ReconciliationEngine
from .scanner import DirectoryScanner
from .storage import CourseRepository


LOGGER = logging.getLogger(__name__)

SyncAction = Literal["created", "unchanged", "merged"]


@dataclass
class SyncOutcome:
    """Describe what :meth:`CourseLibrary.sync` did with a course root."""

    action: SyncAction
    course: Course
    merge: Optional[MergeResult] = None
    backup_path: Optional[Path] = None

    @property
    def note(self) -> str:
        if self.merge is not None:
            return self.merge.note
        if self.action == "created":
            return "New course registered."
        return "No changes detected."


class CourseLibrary:
    """Keep persisted course metadata in step with what is on disk."""

    def __init__(
        self,
        repository: CourseRepository,
        settings: Optional[LibrarySettings] = None,
        *,
        scanner: Optional[DirectoryScanner] = None,
        engine: Optional[ReconciliationEngine] = None,
        locks: Optional[CourseLocks] = None,
        persister: Optional[ProgressPersister] = None,
    ) -> None:
        self._repository = repository
        self._settings = settings or LibrarySettings()
        self._scanner = scanner or DirectoryScanner(self._settings)
        self._engine = engine or ReconciliationEngine(self._settings)
        self._persister = persister
        if locks is None:
            locks = persister.locks if persister is not None else CourseLocks()
        self._locks = locks

    @property
    def repository(self) -> CourseRepository:
        return self._repository

    @property
    def settings(self) -> LibrarySettings:
        return self._settings

    def load(self, root_path: Path | str) -> Optional[Course]:
        return self._repository.load(normalize_path(str(root_path)))

    def sync(self, root_path: Path | str, *, probe_durations: Optional[bool] = None) -> SyncOutcome:
        """Scan *root_path* and persist the result, preserving known progress.

        Unknown roots are saved as-is. A matching fingerprint keeps the stored
        graph and only refreshes scan metadata. Anything else is merged,
        backed up and saved.
        """

        start = time.perf_counter()
        scanned = self._scanner.scan(root_path, probe_durations=probe_durations)
        root = scanned.root_path

        if self._persister is not None:
            self._persister.flush_course(root)

        with self._locks.for_root(root):
            existing = self._repository.load(root)
            if existing is None:
                outcome = SyncOutcome(action="created", course=scanned)
            elif (
                existing.fingerprint
                and scanned.fingerprint
                and existing.fingerprint.lower() == scanned.fingerprint.lower()
            ):
                existing.last_scanned_at = scanned.last_scanned_at or utcnow()
                self._fill_missing_durations(existing, scanned)
                existing.recompute_aggregates()
                outcome = SyncOutcome(action="unchanged", course=existing)
            else:
                merge = self._engine.merge(existing, scanned)
                backup_path = self._backup_before_merge(root)
                outcome = SyncOutcome(
                    action="merged",
                    course=merge.merged_course,
                    merge=merge,
                    backup_path=backup_path,
                )
            self._repository.save(outcome.course)

        if self._persister is not None:
            self._persister.invalidate(root)

        emit_scan_event(
            "Synchronised course",
            payload={
                "root": root,
                "action": outcome.action,
                "parts": outcome.course.part_count,
                "status": outcome.course.status,
            },
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )
        return outcome

    @staticmethod
    def resume_target(course: Course) -> Optional[Part]:
        """Return the part playback should start from.

        The resume marker wins while its part still exists; otherwise the
        first part of the course is used.
        """

        if course.resume is not None:
            part = course.find_part(course.resume.part_id)
            if part is not None:
                return part
        return next(course.iter_parts(), None)

    @staticmethod
    def _fill_missing_durations(existing: Course, scanned: Course) -> None:
        durations = {part.path: part.duration_seconds for part in scanned.iter_parts()}
        for part in existing.iter_parts():
            if part.duration_seconds is None and durations.get(part.path) is not None:
                part.duration_seconds = durations[part.path]

    def _backup_before_merge(self, root: str) -> Optional[Path]:
        try:
            return self._repository.backup(root, "merge-before-save")
        except RepositoryError as error:
            LOGGER.warning("Backup before merge failed for %s: %s", root, error)
            return None


__all__ = ["CourseLibrary", "SyncOutcome"]
