"""Recursive scanning of a course root into an ordered chapter/part tree."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Set

from ..config import LibrarySettings, METADATA_DIRNAME, normalize_extensions
from ..errors import FingerprintError, ScanError
from ..models import Chapter, Course, Part, utcnow
from .events import emit_scan_event
from .fingerprint import compute_fingerprint
from .labels import build_clean_map
from .naming import extract_chapter_order, extract_part_index, normalize_path
from .probe import DurationProbe, FFprobeDurationProbe


LOGGER = logging.getLogger(__name__)

_UNORDERED = float("inf")


def _is_link_like(entry: os.DirEntry) -> bool:
    if entry.is_symlink():
        return True
    is_junction = getattr(entry, "is_junction", None)
    return bool(is_junction and is_junction())


def _clean_titles(chapters: List[Chapter]) -> None:
    chapter_titles = build_clean_map(chapter.title for chapter in chapters)
    part_titles = build_clean_map(part.title for chapter in chapters for part in chapter.parts)
    for chapter in chapters:
        chapter.title = chapter_titles.get(chapter.title, chapter.title)
        for part in chapter.parts:
            part.title = part_titles.get(part.title, part.title)


@dataclass
class _ScanState:
    """Bookkeeping for a single :meth:`DirectoryScanner.scan` call."""

    root: Path
    extensions: Set[str]
    probe_durations: bool
    max_depth: int
    visited: Set[str] = field(default_factory=set)
    chapters: List[Chapter] = field(default_factory=list)
    skipped: int = 0


class DirectoryScanner:
    """Build a :class:`Course` from the video files below a root directory."""

    def __init__(
        self,
        settings: Optional[LibrarySettings] = None,
        *,
        probe: Optional[DurationProbe] = None,
        metadata_dirname: str = METADATA_DIRNAME,
    ) -> None:
        self._settings = settings or LibrarySettings()
        self._probe = probe or FFprobeDurationProbe(
            timeout_seconds=self._settings.probe_timeout_seconds
        )
        self._metadata_dirname = metadata_dirname

    @property
    def settings(self) -> LibrarySettings:
        return self._settings

    def scan(
        self,
        root_path: Path | str,
        *,
        allowed_extensions: Optional[Iterable[str]] = None,
        probe_durations: Optional[bool] = None,
        max_depth: Optional[int] = None,
    ) -> Course:
        """Scan *root_path* and return a freshly identified course graph.

        Omitted options fall back to the scanner's :class:`LibrarySettings`.
        Unreadable subdirectories are skipped; a missing, non-directory or
        unreadable root raises :class:`ScanError`.
        """

        if root_path is None or not str(root_path).strip():
            raise ScanError("A course root path is required")
        root = Path(normalize_path(str(root_path)))
        if not root.exists():
            raise ScanError(f"Course root '{root}' does not exist")
        if not root.is_dir():
            raise ScanError(f"Course root '{root}' is not a directory")

        extensions = normalize_extensions(
            allowed_extensions
            if allowed_extensions is not None
            else self._settings.allowed_extensions
        )
        state = _ScanState(
            root=root,
            extensions=set(extensions),
            probe_durations=(
                self._settings.probe_durations if probe_durations is None else probe_durations
            ),
            max_depth=self._settings.max_depth if max_depth is None else max_depth,
        )

        start = time.perf_counter()
        LOGGER.debug("Scanning course root %s (max_depth=%s)", root, state.max_depth)
        self._visit(root, 0, state)
        if self._settings.clean_labels:
            _clean_titles(state.chapters)

        course = Course(root_path=str(root), title=root.name or str(root))
        course.chapters = sorted(
            state.chapters,
            key=lambda chapter: (
                chapter.order if chapter.order is not None else _UNORDERED,
                chapter.title.casefold(),
            ),
        )
        try:
            course.fingerprint = compute_fingerprint(
                root, extensions, metadata_dirname=self._metadata_dirname
            )
        except FingerprintError as error:
            LOGGER.warning("Fingerprint unavailable for %s, treating as changed: %s", root, error)
            course.fingerprint = None
        course.last_scanned_at = utcnow()
        course.recompute_aggregates()

        emit_scan_event(
            "Scanned course",
            payload={
                "root": root,
                "chapters": len(course.chapters),
                "parts": course.part_count,
                "skipped_directories": state.skipped,
            },
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )
        return course

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------
    def _visit(self, directory: Path, depth: int, state: _ScanState) -> None:
        canonical = os.path.normcase(os.path.realpath(directory))
        if canonical in state.visited:
            LOGGER.debug("Directory %s already visited; treating as empty", directory)
            return
        state.visited.add(canonical)

        try:
            with os.scandir(directory) as iterator:
                entries = list(iterator)
        except OSError as error:
            if depth == 0:
                raise ScanError(f"Cannot read course root '{directory}': {error}") from error
            state.skipped += 1
            LOGGER.warning("Skipping unreadable directory %s: %s", directory, error)
            return

        files: List[os.DirEntry] = []
        subdirectories: List[os.DirEntry] = []
        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=False):
                    if _is_link_like(entry):
                        LOGGER.debug("Skipping linked directory %s", entry.path)
                        continue
                    if depth == 0 and entry.name == self._metadata_dirname:
                        continue
                    subdirectories.append(entry)
                elif entry.is_file():
                    if os.path.splitext(entry.name)[1].lower() in state.extensions:
                        files.append(entry)
            except OSError as error:
                LOGGER.warning("Skipping unreadable entry %s: %s", entry.path, error)

        if files:
            chapter = self._build_chapter(directory, files, state)
            if chapter.parts:
                state.chapters.append(chapter)

        if depth >= state.max_depth:
            if subdirectories:
                LOGGER.debug("Maximum depth reached at %s; not descending", directory)
            return

        for entry in sorted(subdirectories, key=lambda item: item.name):
            self._visit(Path(entry.path), depth + 1, state)

    def _build_chapter(
        self, directory: Path, files: List[os.DirEntry], state: _ScanState
    ) -> Chapter:
        parts: List[Part] = []
        for entry in sorted(files, key=lambda item: item.name):
            try:
                size = entry.stat().st_size
            except OSError as error:
                LOGGER.warning("File vanished during scan %s: %s", entry.path, error)
                continue
            file_path = Path(entry.path)
            parts.append(
                Part(
                    file_name=entry.name,
                    path=str(file_path),
                    index=extract_part_index(file_path.stem),
                    title=file_path.stem,
                    file_size_bytes=int(size),
                    duration_seconds=(
                        self._probe_duration(file_path) if state.probe_durations else None
                    ),
                )
            )

        sequence = 1
        for part in parts:
            if part.index is None:
                part.index = sequence
                sequence += 1
        parts.sort(key=lambda part: (part.index, part.file_name.casefold()))

        rel_path = directory.relative_to(state.root).as_posix()
        if rel_path in ("", "."):
            rel_path = "."
            title = state.root.name or str(state.root)
        else:
            title = directory.name

        order = extract_chapter_order(title)
        if order is None and parts:
            order = min(part.index for part in parts if part.index is not None)

        return Chapter(title=title, rel_path=rel_path, order=order, parts=parts)

    def _probe_duration(self, file_path: Path) -> Optional[int]:
        try:
            return self._probe.probe(file_path)
        except Exception as error:  # noqa: BLE001
            LOGGER.warning("Duration probe failed for %s: %s", file_path, error)
            return None


__all__ = ["DirectoryScanner"]
