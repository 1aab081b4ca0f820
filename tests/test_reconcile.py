from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import pytest

from coursekeeper.models import Chapter, Course, CourseStatus, Part, ResumeMarker
from coursekeeper.services.reconcile import (
    MatchKind,
    ReconciliationEngine,
    apply_match,
    size_boosted_score,
)


ROOT = os.path.abspath(os.path.join(os.sep, "courses", "demo"))


def _part(name: str, size: int, *, folder: str = "", position: int = 0, watched: bool = False,
          duration: Optional[int] = None) -> Part:
    return Part(
        file_name=name,
        path=os.path.join(ROOT, folder, name) if folder else os.path.join(ROOT, name),
        title=os.path.splitext(name)[0],
        file_size_bytes=size,
        last_position_seconds=position,
        watched=watched,
        duration_seconds=duration,
    )


def _course(*parts: Part, fingerprint: str = "f" * 64) -> Course:
    course = Course(root_path=ROOT, title="demo", fingerprint=fingerprint)
    course.chapters = [Chapter(title="demo", parts=list(parts))]
    course.recompute_aggregates()
    return course


def _kinds(matches) -> List[Tuple[str, MatchKind]]:
    return [(match.new_path.rsplit(os.sep, 1)[-1], match.kind) for match in matches]


def test_exact_path_match_carries_identity_and_progress() -> None:
    old = _part("01 Intro.mp4", 100, position=42, duration=60)
    existing = _course(old)
    scanned = _course(_part("01 Intro.mp4", 999))

    result = ReconciliationEngine().merge(existing, scanned)

    merged_part = next(result.merged_course.iter_parts())
    assert merged_part.id == old.id
    assert merged_part.last_position_seconds == 42
    assert merged_part.duration_seconds == 60
    assert merged_part.file_size_bytes == 999
    assert _kinds(result.matches) == [("01 Intro.mp4", MatchKind.EXACT_PATH)]
    assert result.matches[0].confidence == 1.0


def test_moved_file_matches_on_name_and_size() -> None:
    old = _part("Intro.mp4", 100, folder="old", watched=True)
    result = ReconciliationEngine().merge(_course(old), _course(_part("INTRO.mp4", 100, folder="new")))

    assert _kinds(result.matches) == [("INTRO.mp4", MatchKind.FILE_NAME_AND_SIZE)]
    assert next(result.merged_course.iter_parts()).watched is True


def test_duplicate_names_fall_through_to_the_next_unmatched_candidate() -> None:
    first = _part("a.mp4", 100, folder="p")
    second = _part("a.mp4", 100, folder="q")
    scanned = _course(_part("a.mp4", 100, folder="p"), _part("a.mp4", 100, folder="r"))

    result = ReconciliationEngine().merge(_course(first, second), scanned)

    assert [match.kind for match in result.matches] == [
        MatchKind.EXACT_PATH,
        MatchKind.FILE_NAME_AND_SIZE,
    ]
    assert [match.existing_part_id for match in result.matches] == [first.id, second.id]
    assert result.unmatched_existing == []


def test_renumbered_and_retagged_file_matches_on_normalized_name() -> None:
    old = _part("01 Intro.mp4", 100, position=10)
    result = ReconciliationEngine().merge(
        _course(old), _course(_part("[New] 05 - Intro.mkv", 5000))
    )

    assert _kinds(result.matches) == [("[New] 05 - Intro.mkv", MatchKind.NORMALIZED_NAME)]
    assert result.matches[0].confidence == pytest.approx(0.90)
    assert next(result.merged_course.iter_parts()).id == old.id


def test_rename_with_identical_size_keeps_identity() -> None:
    old = _part("A.mp4", 1000, position=300)
    result = ReconciliationEngine().merge(_course(old), _course(_part("B.mp4", 1000)))

    merged_part = next(result.merged_course.iter_parts())
    assert merged_part.id == old.id
    assert merged_part.last_position_seconds == 300
    assert result.matches[0].kind is MatchKind.FUZZY_NAME
    assert result.matches[0].confidence == pytest.approx(0.90)


def test_fuzzy_score_equal_to_threshold_matches() -> None:
    old = _part("abcd.mp4", 1000)
    scanned = _course(_part("abce.mp4", 2000))

    result = ReconciliationEngine(fuzzy_threshold=0.75).merge(_course(old), scanned)

    assert _kinds(result.matches) == [("abce.mp4", MatchKind.FUZZY_NAME)]
    assert result.matches[0].confidence == pytest.approx(0.75)


def test_fuzzy_score_below_threshold_is_left_unmatched() -> None:
    old = _part("abcd.mp4", 1000)
    scanned = _course(_part("abce.mp4", 2000))

    result = ReconciliationEngine(fuzzy_threshold=0.76).merge(_course(old), scanned)

    assert result.matches == []
    assert [part.file_name for part in result.unmatched_existing] == ["abcd.mp4"]
    assert [part.file_name for part in result.unmatched_new] == ["abce.mp4"]


def test_size_boost_rules() -> None:
    assert size_boosted_score(0.1, 1000, 1000) == pytest.approx(0.90)
    assert size_boosted_score(0.1, 1000, 1010) == pytest.approx(0.85)
    assert size_boosted_score(0.1, 1000, 1100) == pytest.approx(0.1)
    assert size_boosted_score(0.95, 1000, 1000) == pytest.approx(0.95)
    assert size_boosted_score(0.1, 0, 0) == pytest.approx(0.1)


def test_apply_match_never_loses_progress() -> None:
    existing = Part(file_name="a.mp4", path="a.mp4", last_position_seconds=0, watched=False, duration_seconds=90)
    target = Part(file_name="b.mp4", path="b.mp4", last_position_seconds=25, watched=True, duration_seconds=None)

    apply_match(existing, target)

    assert target.id == existing.id
    assert target.last_position_seconds == 25
    assert target.watched is True
    assert target.duration_seconds == 90


def test_mostly_matched_course_stays_in_progress() -> None:
    parts = [_part(f"{index:02d} Lesson.mp4", 100 + index) for index in range(1, 5)]
    scanned = _course(*[_part(part.file_name, part.file_size_bytes) for part in parts])

    result = ReconciliationEngine().merge(_course(*parts), scanned)

    assert result.matched_percent == 1.0
    assert result.note == "Mostly matched automatically."
    assert result.merged_course.status is CourseStatus.IN_PROGRESS


def test_partial_match_note() -> None:
    existing = _course(_part("01 Alpha.mp4", 100), _part("02 Beta.mp4", 200))
    scanned = _course(
        _part("01 Alpha.mp4", 100),
        _part("02 Beta.mp4", 200),
        _part("03 Gamma.mp4", 300),
    )

    result = ReconciliationEngine().merge(existing, scanned)

    assert result.matched_count == 2
    assert result.note == "Partial automatic match."
    assert result.merged_course.status is CourseStatus.IN_PROGRESS
    assert [part.file_name for part in result.unmatched_new] == ["03 Gamma.mp4"]


def test_low_match_ratio_flags_the_course_as_changed() -> None:
    existing = _course(_part("01 Alpha.mp4", 100, position=5))
    scanned = _course(
        _part("01 Alpha.mp4", 100),
        _part("zz one.mp4", 7000),
        _part("qq two.mp4", 9000),
    )

    result = ReconciliationEngine().merge(existing, scanned)

    assert result.matched_percent == pytest.approx(1 / 3)
    assert result.merged_course.status is CourseStatus.CHANGED
    assert result.note == "Less than 50% of parts matched automatically; manual review recommended."


def test_merge_without_new_parts_counts_as_fully_matched() -> None:
    existing = _course(_part("01 Alpha.mp4", 100))
    result = ReconciliationEngine().merge(existing, _course())

    assert result.matched_percent == 1.0
    assert result.note == "Mostly matched automatically."
    assert [part.file_name for part in result.unmatched_existing] == ["01 Alpha.mp4"]


def test_merge_keeps_course_identity_and_scan_metadata() -> None:
    existing = _course(_part("01 Alpha.mp4", 100), fingerprint="a" * 64)
    existing.created_at = datetime(2020, 1, 1, tzinfo=timezone.utc)
    scanned = _course(_part("01 Alpha.mp4", 100), fingerprint="b" * 64)

    merged = ReconciliationEngine().merge(existing, scanned).merged_course

    assert merged.id == existing.id
    assert merged.created_at == existing.created_at
    assert merged.fingerprint == "b" * 64


def test_resume_marker_survives_only_when_its_part_matched() -> None:
    kept = _part("01 Alpha.mp4", 100, position=30)
    existing = _course(kept)
    existing.resume = ResumeMarker(part_id=kept.id, position_seconds=30)

    merged = ReconciliationEngine().merge(existing, _course(_part("01 Alpha.mp4", 100))).merged_course
    assert merged.resume == ResumeMarker(part_id=kept.id, position_seconds=30)

    gone = ReconciliationEngine().merge(existing, _course(_part("zz other.mp4", 5))).merged_course
    assert gone.resume is None


def test_fully_watched_merge_is_completed() -> None:
    existing = _course(_part("01 Alpha.mp4", 100, watched=True), _part("02 Beta.mp4", 200, watched=True))
    scanned = _course(_part("01 Alpha.mp4", 100), _part("02 Beta.mp4", 200))

    result = ReconciliationEngine().merge(existing, scanned)

    assert result.merged_course.status is CourseStatus.COMPLETED


def test_merge_does_not_mutate_its_inputs() -> None:
    existing = _course(_part("A.mp4", 1000, position=300))
    scanned = _course(_part("B.mp4", 1000))
    existing_before = existing.to_dict()
    scanned_before = scanned.to_dict()

    ReconciliationEngine().merge(existing, scanned)

    assert existing.to_dict() == existing_before
    assert scanned.to_dict() == scanned_before


def test_summary_counts_each_tier() -> None:
    existing = _course(_part("01 Alpha.mp4", 100), _part("A.mp4", 1000))
    scanned = _course(_part("01 Alpha.mp4", 100), _part("B.mp4", 1000))

    summary = ReconciliationEngine().merge(existing, scanned).summary()

    assert summary["matched"] == 2
    assert summary[MatchKind.EXACT_PATH.value] == 1
    assert summary[MatchKind.FUZZY_NAME.value] == 1
    assert summary["status"] == CourseStatus.IN_PROGRESS.value
