"""Carry identity and progress from a persisted course onto a fresh scan.

Parts are matched in four tiers of decreasing certainty. Every tier only
looks at parts that earlier tiers left unmatched:

1. exact absolute path;
2. file name (case-insensitive) plus byte size;
3. normalised name (see :func:`normalize_for_matching`);
4. fuzzy name similarity, boosted when file sizes agree.

The fuzzy tier is greedy: each new part, in scan order, takes its best
remaining candidate. It is not an optimal assignment, and later parts can
lose a candidate an earlier part took.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

from ..config import LibrarySettings
from ..models import Course, CourseStatus, Part
from .events import emit_merge_event
from .naming import name_similarity, normalize_for_matching, path_key


LOGGER = logging.getLogger(__name__)

# Scores within this distance of the threshold count as reaching it.
_SCORE_EPSILON = 1e-9

EXACT_SIZE_BOOST = 0.90
NEAR_SIZE_BOOST = 0.85
NEAR_SIZE_RATIO = 0.02

CHANGED_BELOW = 0.50
MOSTLY_MATCHED_FROM = 0.95


class MatchKind(str, Enum):
    EXACT_PATH = "exact-path"
    FILE_NAME_AND_SIZE = "file-name-and-size"
    NORMALIZED_NAME = "normalized-name"
    FUZZY_NAME = "fuzzy-name"


_TIER_CONFIDENCE = {
    MatchKind.EXACT_PATH: 1.0,
    MatchKind.FILE_NAME_AND_SIZE: 0.98,
    MatchKind.NORMALIZED_NAME: 0.90,
}


@dataclass(frozen=True)
class MatchEntry:
    existing_part_id: str
    existing_path: str
    new_part_id: str
    new_path: str
    kind: MatchKind
    confidence: float


@dataclass
class MergeResult:
    merged_course: Course
    matches: List[MatchEntry] = field(default_factory=list)
    unmatched_existing: List[Part] = field(default_factory=list)
    unmatched_new: List[Part] = field(default_factory=list)
    note: str = ""

    @property
    def matched_count(self) -> int:
        return len(self.matches)

    @property
    def total_new_parts(self) -> int:
        return self.matched_count + len(self.unmatched_new)

    @property
    def matched_percent(self) -> float:
        total = self.total_new_parts
        if total == 0:
            return 1.0
        return self.matched_count / total

    def summary(self) -> Dict[str, object]:
        counts: Dict[str, int] = {kind.value: 0 for kind in MatchKind}
        for match in self.matches:
            counts[match.kind.value] += 1
        return {
            "matched": self.matched_count,
            "unmatched_existing": len(self.unmatched_existing),
            "unmatched_new": len(self.unmatched_new),
            "matched_percent": round(self.matched_percent, 4),
            "status": self.merged_course.status.value,
            **counts,
        }


def _file_name(part: Part) -> str:
    if part.file_name:
        return part.file_name
    return part.path.replace("\\", "/").rsplit("/", 1)[-1]


def _first_unmatched(candidates: List[Part], unmatched: Dict[int, Part]) -> Optional[Part]:
    return next((part for part in candidates if id(part) in unmatched), None)


def apply_match(existing: Part, target: Part) -> None:
    """Stamp identity and progress of *existing* onto the newly scanned *target*."""

    if existing.id:
        target.id = existing.id
    if existing.last_position_seconds > 0:
        target.last_position_seconds = existing.last_position_seconds
    if existing.watched:
        target.watched = True
    if target.duration_seconds is None and existing.duration_seconds is not None:
        target.duration_seconds = existing.duration_seconds


def size_boosted_score(similarity: float, new_size: int, existing_size: int) -> float:
    """Raise *similarity* when the two files have (nearly) the same size."""

    if new_size > 0 and existing_size > 0:
        if new_size == existing_size:
            return max(similarity, EXACT_SIZE_BOOST)
        relative = abs(new_size - existing_size) / max(new_size, existing_size)
        if relative < NEAR_SIZE_RATIO:
            return max(similarity, NEAR_SIZE_BOOST)
    return similarity


class ReconciliationEngine:
    """Merge a persisted course graph with a newly scanned one."""

    def __init__(self, settings: Optional[LibrarySettings] = None, *, fuzzy_threshold: Optional[float] = None) -> None:
        settings = settings or LibrarySettings()
        self._fuzzy_threshold = (
            settings.fuzzy_threshold if fuzzy_threshold is None else float(fuzzy_threshold)
        )

    @property
    def fuzzy_threshold(self) -> float:
        return self._fuzzy_threshold

    def merge(self, existing: Course, scanned: Course) -> MergeResult:
        """Return the scanned course with ids and progress carried over from *existing*.

        Neither input is mutated. The match ratio only sets an advisory
        status and note; the merge itself is never rejected.
        """

        if existing is None or scanned is None:
            raise ValueError("Both the existing and the scanned course are required")

        merged = scanned.clone()
        merged.id = existing.id
        merged.created_at = existing.created_at

        existing_parts = list(existing.iter_parts())
        new_parts = list(merged.iter_parts())

        result = MergeResult(merged_course=merged)
        unmatched_existing: Dict[int, Part] = {id(part): part for part in existing_parts}
        matched_new: Set[int] = set()

        def _record(existing_part: Part, new_part: Part, kind: MatchKind, confidence: float) -> None:
            previous_new_id = new_part.id
            apply_match(existing_part, new_part)
            unmatched_existing.pop(id(existing_part), None)
            matched_new.add(id(new_part))
            result.matches.append(
                MatchEntry(
                    existing_part_id=existing_part.id,
                    existing_path=existing_part.path,
                    new_part_id=previous_new_id,
                    new_path=new_part.path,
                    kind=kind,
                    confidence=confidence,
                )
            )

        def _pending() -> List[Part]:
            return [part for part in new_parts if id(part) not in matched_new]

        # 1) exact path
        by_path: Dict[str, List[Part]] = {}
        for part in existing_parts:
            key = path_key(part.path)
            if key:
                by_path.setdefault(key, []).append(part)
        for new_part in _pending():
            candidate = _first_unmatched(by_path.get(path_key(new_part.path), []), unmatched_existing)
            if candidate is not None:
                _record(candidate, new_part, MatchKind.EXACT_PATH, _TIER_CONFIDENCE[MatchKind.EXACT_PATH])

        # 2) file name + size
        by_name_and_size: Dict[str, List[Part]] = {}
        for part in existing_parts:
            key = f"{_file_name(part).casefold()}|{part.file_size_bytes}"
            by_name_and_size.setdefault(key, []).append(part)
        for new_part in _pending():
            key = f"{_file_name(new_part).casefold()}|{new_part.file_size_bytes}"
            candidate = _first_unmatched(by_name_and_size.get(key, []), unmatched_existing)
            if candidate is not None:
                _record(
                    candidate,
                    new_part,
                    MatchKind.FILE_NAME_AND_SIZE,
                    _TIER_CONFIDENCE[MatchKind.FILE_NAME_AND_SIZE],
                )

        # 3) normalised name
        by_normalized: Dict[str, List[Part]] = {}
        for part in existing_parts:
            by_normalized.setdefault(normalize_for_matching(_file_name(part)), []).append(part)
        for new_part in _pending():
            normalized = normalize_for_matching(_file_name(new_part))
            if not normalized:
                continue
            candidate = _first_unmatched(by_normalized.get(normalized, []), unmatched_existing)
            if candidate is not None:
                _record(
                    candidate,
                    new_part,
                    MatchKind.NORMALIZED_NAME,
                    _TIER_CONFIDENCE[MatchKind.NORMALIZED_NAME],
                )

        # 4) fuzzy name, greedy per new part
        for new_part in _pending():
            new_normalized = normalize_for_matching(_file_name(new_part))
            if not new_normalized:
                continue
            best_score = 0.0
            best_candidate: Optional[Part] = None
            for candidate in existing_parts:
                if id(candidate) not in unmatched_existing:
                    continue
                existing_normalized = normalize_for_matching(_file_name(candidate))
                if not existing_normalized:
                    continue
                score = size_boosted_score(
                    name_similarity(new_normalized, existing_normalized),
                    new_part.file_size_bytes,
                    candidate.file_size_bytes,
                )
                if score > best_score:
                    best_score = score
                    best_candidate = candidate
            if best_candidate is not None and best_score + _SCORE_EPSILON >= self._fuzzy_threshold:
                _record(best_candidate, new_part, MatchKind.FUZZY_NAME, best_score)

        result.unmatched_existing = list(unmatched_existing.values())
        result.unmatched_new = _pending()

        self._keep_resume_marker(existing, merged)
        merged.recompute_aggregates()
        self._assign_status(result)

        emit_merge_event("Merged course", payload={"root": merged.root_path, **result.summary()})
        if result.unmatched_existing:
            LOGGER.warning(
                "%d previously known part(s) of %s were not found again; their progress is orphaned",
                len(result.unmatched_existing),
                merged.root_path,
            )
        return result

    @staticmethod
    def _keep_resume_marker(existing: Course, merged: Course) -> None:
        marker = existing.resume
        if marker is not None and merged.find_part(marker.part_id) is not None:
            merged.resume = marker
        else:
            merged.resume = None

    @staticmethod
    def _assign_status(result: MergeResult) -> None:
        ratio = result.matched_percent
        course = result.merged_course
        if ratio < CHANGED_BELOW:
            result.note = "Less than 50% of parts matched automatically; manual review recommended."
            course.status = CourseStatus.CHANGED
        elif ratio < MOSTLY_MATCHED_FROM:
            result.note = "Partial automatic match."
            if course.status is not CourseStatus.COMPLETED:
                course.status = CourseStatus.IN_PROGRESS
        else:
            result.note = "Mostly matched automatically."
            if course.status is not CourseStatus.COMPLETED:
                course.status = CourseStatus.IN_PROGRESS


__all__ = [
    "MatchEntry",
    "MatchKind",
    "MergeResult",
    "ReconciliationEngine",
    "apply_match",
    "size_boosted_score",
]
