"""Debounced persistence of playback positions.

Players report positions several times per second. Writing each report
would rewrite the course metadata constantly, so :class:`ProgressPersister`
keeps only the latest position per part and writes once the course has been
quiet for ``debounce_seconds``. Each course root has its own pending slot,
timer and lock, so unrelated courses never contend.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from ..config import LibrarySettings, METADATA_DIRNAME
from ..errors import RepositoryError
from ..models import Course, ResumeMarker, watched_threshold
from .events import emit_progress_event
from .locks import CourseLocks
from .naming import normalize_path, path_key
from .storage import CourseRepository


LOGGER = logging.getLogger(__name__)

TimerFactory = Callable[..., Any]

RETRY_BACKOFF_SECONDS = 0.1


def _default_timer(interval: float, function: Callable[..., None], args: tuple) -> threading.Timer:
    timer = threading.Timer(interval, function, args=args)
    timer.daemon = True
    return timer


def find_course_root(file_path: Path | str, *, metadata_dirname: str = METADATA_DIRNAME) -> Optional[Path]:
    """Return the closest ancestor of *file_path* that holds course metadata."""

    normalized = normalize_path(str(file_path))
    if not normalized:
        return None
    current = Path(normalized).parent
    while True:
        if (current / metadata_dirname).is_dir():
            return current
        if current.parent == current:
            return None
        current = current.parent


@dataclass
class _PendingState:
    root: Path
    lock: threading.Lock = field(default_factory=threading.Lock)
    positions: Dict[str, int] = field(default_factory=dict)
    last_part_id: Optional[str] = None
    timer: Any = None
    generation: int = 0
    part_ids_by_path: Dict[str, str] = field(default_factory=dict)

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class ProgressPersister:
    """Coalesce playback positions and persist them through a :class:`CourseRepository`."""

    def __init__(
        self,
        repository: CourseRepository,
        settings: Optional[LibrarySettings] = None,
        *,
        locks: Optional[CourseLocks] = None,
        timer_factory: Optional[TimerFactory] = None,
        sleep: Callable[[float], None] = time.sleep,
        metadata_dirname: str = METADATA_DIRNAME,
    ) -> None:
        self._repository = repository
        self._settings = settings or LibrarySettings()
        self._locks = locks or CourseLocks()
        self._timer_factory = timer_factory or _default_timer
        self._sleep = sleep
        self._metadata_dirname = metadata_dirname
        self._states_lock = threading.Lock()
        self._states: Dict[str, _PendingState] = {}
        self._closed = False

    def __enter__(self) -> "ProgressPersister":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def locks(self) -> CourseLocks:
        return self._locks

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def notify_position(self, file_path: Path | str, seconds: int) -> bool:
        """Queue *seconds* as the latest position of *file_path*.

        Returns ``False`` when the file does not belong to a known course;
        such reports are dropped without error.
        """

        if self._closed:
            LOGGER.debug("Ignoring position for %s; persister is closed", file_path)
            return False
        if file_path is None or not str(file_path).strip():
            return False

        root = find_course_root(file_path, metadata_dirname=self._metadata_dirname)
        if root is None:
            LOGGER.debug("No course metadata found above %s", file_path)
            return False

        state = self._state_for(root)
        part_id = self._resolve_part_id(state, str(file_path))
        if part_id is None:
            LOGGER.debug("File %s is not a known part of %s", file_path, root)
            return False

        with state.lock:
            state.positions.pop(part_id, None)
            state.positions[part_id] = max(int(seconds), 0)
            state.last_part_id = part_id
            state.generation += 1
            state.cancel_timer()
            timer = self._timer_factory(
                self._settings.debounce_seconds,
                self._on_timer,
                (state, state.generation),
            )
            state.timer = timer
            timer.start()
        return True

    def save_position_by_part_id(self, course_root: Path | str, part_id: str, seconds: int) -> bool:
        """Write the position of *part_id* right away and make it the resume marker.

        A position at or past 95% of a known duration marks the part watched;
        in that case the resume marker is cleared instead, since there is
        nothing left to resume.
        """

        seconds = max(int(seconds), 0)
        self._discard_pending(course_root, part_id)

        def _update(course: Course) -> bool:
            part = course.find_part(part_id)
            finished = False
            if part is not None:
                part.last_position_seconds = seconds
                if part.duration_seconds is not None and seconds >= watched_threshold(part.duration_seconds):
                    part.watched = True
                    finished = True
            course.resume = None if finished else ResumeMarker(part_id=part_id, position_seconds=seconds)
            course.recompute_aggregates()
            return True

        saved = self._modify(course_root, _update, action="save_position")
        if saved:
            emit_progress_event(
                "Saved position", payload={"root": course_root, "part_id": part_id, "seconds": seconds}
            )
        return saved

    def mark_watched(self, course_root: Path | str, part_id: str) -> bool:
        """Flag *part_id* as watched and drop a resume marker pointing at it."""

        self._discard_pending(course_root, part_id)

        def _update(course: Course) -> bool:
            part = course.find_part(part_id)
            if part is None:
                LOGGER.warning("Cannot mark unknown part %s of %s as watched", part_id, course_root)
                return False
            part.watched = True
            if part.duration_seconds is not None:
                part.last_position_seconds = max(part.last_position_seconds, part.duration_seconds)
            course.recompute_aggregates()
            if course.resume is not None and course.resume.part_id == part_id:
                course.resume = None
            return True

        saved = self._modify(course_root, _update, action="mark_watched")
        if saved:
            emit_progress_event("Marked watched", payload={"root": course_root, "part_id": part_id})
        return saved

    def clear_resume(self, course_root: Path | str) -> bool:
        """Remove the course-level resume marker."""

        def _update(course: Course) -> bool:
            course.resume = None
            return True

        return self._modify(course_root, _update, action="clear_resume")

    def flush_course(self, course_root: Path | str) -> bool:
        """Persist the pending positions of one course now.

        Returns ``True`` when something was written. A failed write is
        logged and its values are queued again for the next flush.
        """

        with self._states_lock:
            state = self._states.get(path_key(str(course_root)))
        if state is None:
            return False
        return self._flush_state(state)

    def flush(self) -> int:
        """Persist pending positions of every course; return the number written."""

        with self._states_lock:
            states = list(self._states.values())
        written = 0
        for state in states:
            if self._flush_state(state):
                written += 1
        return written

    def pending_positions(self, course_root: Path | str) -> Dict[str, int]:
        with self._states_lock:
            state = self._states.get(path_key(str(course_root)))
        if state is None:
            return {}
        with state.lock:
            return dict(state.positions)

    def invalidate(self, course_root: Path | str) -> None:
        """Forget cached path lookups after the course graph was rewritten."""

        with self._states_lock:
            state = self._states.get(path_key(str(course_root)))
        if state is not None:
            with state.lock:
                state.part_ids_by_path.clear()

    def close(self) -> None:
        """Flush everything and stop scheduling new writes."""

        if self._closed:
            return
        self.flush()
        self._closed = True
        with self._states_lock:
            states = list(self._states.values())
        for state in states:
            with state.lock:
                state.cancel_timer()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _state_for(self, root: Path) -> _PendingState:
        key = path_key(str(root))
        with self._states_lock:
            state = self._states.get(key)
            if state is None:
                state = _PendingState(root=root)
                self._states[key] = state
            return state

    def _resolve_part_id(self, state: _PendingState, file_path: str) -> Optional[str]:
        key = path_key(file_path)
        with state.lock:
            cached = state.part_ids_by_path.get(key)
        if cached is not None:
            return cached

        course = self._repository.load(state.root)
        if course is None:
            return None
        part = course.find_part_by_path(file_path)
        if part is None:
            return None
        with state.lock:
            state.part_ids_by_path[key] = part.id
        return part.id

    def _discard_pending(self, course_root: Path | str, part_id: str) -> None:
        with self._states_lock:
            state = self._states.get(path_key(str(course_root)))
        if state is None:
            return
        with state.lock:
            state.positions.pop(part_id, None)
            if state.last_part_id == part_id:
                state.last_part_id = next(reversed(state.positions), None)

    def _on_timer(self, state: _PendingState, generation: int) -> None:
        with state.lock:
            if state.generation != generation:
                LOGGER.debug("Discarding superseded flush for %s", state.root)
                return
        try:
            self._flush_state(state)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Scheduled flush failed for %s", state.root)

    def _flush_state(self, state: _PendingState) -> bool:
        with state.lock:
            state.cancel_timer()
            state.generation += 1
            positions = dict(state.positions)
            last_part_id = state.last_part_id
            state.positions.clear()
            state.last_part_id = None

        if not positions:
            return False

        def _update(course: Course) -> bool:
            for part_id, seconds in positions.items():
                part = course.find_part(part_id)
                if part is not None:
                    part.last_position_seconds = seconds
            if last_part_id is not None and course.find_part(last_part_id) is not None:
                course.resume = ResumeMarker(
                    part_id=last_part_id, position_seconds=positions[last_part_id]
                )
            course.recompute_aggregates()
            return True

        try:
            saved = self._modify(state.root, _update, action="flush")
        except RepositoryError as error:
            LOGGER.error(
                "Could not persist %d pending position(s) for %s; keeping them queued: %s",
                len(positions),
                state.root,
                error,
            )
            self._requeue(state, positions, last_part_id)
            return False

        if saved:
            emit_progress_event(
                "Flushed positions",
                payload={"root": state.root, "parts": len(positions), "resume_part_id": last_part_id},
            )
        return saved

    @staticmethod
    def _requeue(state: _PendingState, positions: Dict[str, int], last_part_id: Optional[str]) -> None:
        with state.lock:
            newer = dict(state.positions)
            state.positions = {**positions, **newer}
            if state.last_part_id is None:
                state.last_part_id = last_part_id

    def _modify(
        self,
        course_root: Path | str,
        update: Callable[[Course], bool],
        *,
        action: str,
    ) -> bool:
        """Load, update and save one course while holding its write lock."""

        if course_root is None or not str(course_root).strip():
            raise ValueError("A course root path is required")

        with self._locks.for_root(course_root):
            course = self._repository.load(course_root)
            if course is None:
                LOGGER.warning("No persisted course at %s; skipping %s", course_root, action)
                return False
            if not update(course):
                return False
            self._save_with_retry(course)
            return True

    def _save_with_retry(self, course: Course) -> None:
        attempts = self._settings.save_retries + 1
        for attempt in range(attempts):
            try:
                self._repository.save(course)
                return
            except RepositoryError as error:
                if attempt + 1 >= attempts:
                    raise
                delay = RETRY_BACKOFF_SECONDS * (2 ** attempt)
                LOGGER.warning(
                    "Saving %s failed (attempt %d/%d); retrying in %.2fs: %s",
                    course.root_path,
                    attempt + 1,
                    attempts,
                    delay,
                    error,
                )
                self._sleep(delay)


__all__ = ["ProgressPersister", "find_course_root"]
