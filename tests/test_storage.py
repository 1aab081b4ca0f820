from __future__ import annotations

import contextlib
import json
import re
import sqlite3
from pathlib import Path

import pytest

from conftest import FakeProbe

from coursekeeper.config import AppConfig, LibrarySettings
from coursekeeper.errors import RepositoryError
from coursekeeper.models import Course, CourseStatus, ResumeMarker
from coursekeeper.services import storage as storage_module
from coursekeeper.services.scanner import DirectoryScanner
from coursekeeper.services.storage import (
    JsonCourseRepository,
    SqliteCourseRepository,
    create_repository,
)


BACKENDS = [JsonCourseRepository, SqliteCourseRepository]


def _scanned(course_root: Path) -> Course:
    course = DirectoryScanner(LibrarySettings(), probe=FakeProbe()).scan(course_root)
    first = next(course.iter_parts())
    first.duration_seconds = 600
    first.last_position_seconds = 120
    course.resume = ResumeMarker(part_id=first.id, position_seconds=120)
    course.recompute_aggregates()
    return course


@pytest.mark.parametrize("repository_class", BACKENDS)
def test_round_trip_preserves_the_graph(course_root: Path, repository_class) -> None:
    repository = repository_class()
    course = _scanned(course_root)

    repository.save(course)
    loaded = repository.load(course_root)

    assert loaded is not None
    assert loaded.to_dict() == course.to_dict()
    assert loaded.resume == course.resume
    assert loaded.status is CourseStatus.IN_PROGRESS


@pytest.mark.parametrize("repository_class", BACKENDS)
def test_load_without_metadata_returns_none_and_creates_nothing(tmp_path: Path, repository_class) -> None:
    root = tmp_path / "fresh"
    root.mkdir()

    assert repository_class().load(root) is None
    assert not (root / ".coursekeeper").exists()


@pytest.mark.parametrize("repository_class", BACKENDS)
def test_backup_without_metadata_returns_none(tmp_path: Path, repository_class) -> None:
    assert repository_class().backup(tmp_path) is None


@pytest.mark.parametrize("repository_class", BACKENDS)
def test_saving_again_backs_up_the_previous_state(course_root: Path, repository_class) -> None:
    repository = repository_class()
    course = _scanned(course_root)
    repository.save(course)
    assert repository.list_backups(course_root) == []

    course.title = "Renamed"
    repository.save(course)

    backups = repository.list_backups(course_root)
    assert len(backups) == 1
    assert backups[0].parent == course_root / ".coursekeeper" / "backups"
    assert repository.load(course_root).title == "Renamed"


@pytest.mark.parametrize("repository_class", BACKENDS)
def test_explicit_backup_is_named_after_time_and_reason(course_root: Path, repository_class) -> None:
    repository = repository_class()
    repository.save(_scanned(course_root))

    first = repository.backup(course_root, "Merge before save")
    second = repository.backup(course_root, "Merge before save")

    pattern = re.compile(
        rf"^{re.escape(repository.file_name)}\.bak-\d{{8}}T\d{{6}}-merge-before-save(-\d{{3}})?"
        rf"{re.escape(repository.backup_extension)}$"
    )
    assert first is not None and second is not None
    assert pattern.match(first.name)
    assert pattern.match(second.name)
    assert first != second
    assert first.exists() and second.exists()


def test_sqlite_backup_is_a_readable_database(course_root: Path) -> None:
    repository = SqliteCourseRepository()
    course = _scanned(course_root)
    repository.save(course)

    target = repository.backup(course_root, "manual")

    with contextlib.closing(sqlite3.connect(target)) as connection:
        connection.row_factory = sqlite3.Row
        restored = repository._read_course(connection, course.root_path)
    assert restored is not None
    assert restored.id == course.id
    assert restored.part_count == course.part_count


@pytest.mark.parametrize("repository_class", BACKENDS)
def test_old_backups_are_trimmed(course_root: Path, repository_class) -> None:
    repository = repository_class(keep_backups=2)
    repository.save(_scanned(course_root))

    for index in range(4):
        repository.backup(course_root, f"round {index}")

    backups = repository.list_backups(course_root)
    assert len(backups) == 2


@pytest.mark.parametrize("repository_class", BACKENDS)
def test_trimming_keeps_the_newest_backups_of_one_second(
    course_root: Path, repository_class, monkeypatch
) -> None:
    monkeypatch.setattr(storage_module, "_backup_stamp", lambda: "20260101T120000")
    repository = repository_class(keep_backups=2)
    course = _scanned(course_root)
    repository.save(course)
    repository.save(course)
    reasoned = repository.backup(course_root, "merge before save")
    plain = repository.backup(course_root)

    base = f"{repository.file_name}.bak-20260101T120000"
    extension = repository.backup_extension
    assert reasoned.name == f"{base}-merge-before-save-001{extension}"
    assert plain.name == f"{base}-002{extension}"
    assert repository.list_backups(course_root) == [reasoned, plain]


def test_json_document_layout(course_root: Path) -> None:
    repository = JsonCourseRepository()
    course = _scanned(course_root)
    repository.save(course)

    document = json.loads((course_root / ".coursekeeper" / "course.json").read_text(encoding="utf-8"))

    assert document["id"] == course.id
    assert document["status"] == "in-progress"
    assert document["meta"]["total_parts"] == 5
    assert document["meta"]["total_duration_seconds"] == 600
    assert document["meta"]["watched_seconds"] == 120
    assert document["resume"] == {"part_id": course.resume.part_id, "position_seconds": 120}
    assert not (course_root / ".coursekeeper" / "course.json.tmp").exists()


def test_unreadable_json_is_ignored(course_root: Path) -> None:
    folder = course_root / ".coursekeeper"
    folder.mkdir()
    (folder / "course.json").write_text("{not json", encoding="utf-8")

    assert JsonCourseRepository().load(course_root) is None


def test_failed_json_write_raises_repository_error(course_root: Path, monkeypatch) -> None:
    repository = JsonCourseRepository()
    course = _scanned(course_root)
    repository.save(course)

    def failing_replace(source, target):
        raise OSError("disk full")

    monkeypatch.setattr(storage_module.os, "replace", failing_replace)

    course.title = "Never written"
    with pytest.raises(RepositoryError):
        repository.save(course)

    monkeypatch.undo()
    assert repository.load(course_root).title == "Python Course"


def test_create_repository_picks_the_configured_backend(tmp_path: Path) -> None:
    json_config = AppConfig(storage_root=tmp_path, repository_backend="json")
    sqlite_config = AppConfig(
        storage_root=tmp_path,
        repository_backend="sqlite",
        library=LibrarySettings(keep_backups=3),
    )

    assert isinstance(create_repository(json_config), JsonCourseRepository)
    sqlite_repository = create_repository(sqlite_config)
    assert isinstance(sqlite_repository, SqliteCourseRepository)
    assert sqlite_repository._keep_backups == 3
