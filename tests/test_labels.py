from __future__ import annotations

from pathlib import Path

from conftest import FakeProbe, write_video

from coursekeeper.config import LibrarySettings
from coursekeeper.services.labels import build_clean_map
from coursekeeper.services.scanner import DirectoryScanner


def test_shared_bracket_tag_is_removed_from_every_name() -> None:
    names = [
        "[SuperSite.biz] Start in DevOps",
        "[SuperSite.biz] 2. Linux first steps",
        "[supersite.biz]   2.1 Homework review",
    ]

    cleaned = build_clean_map(names)

    assert cleaned == {
        "[SuperSite.biz] Start in DevOps": "Start in DevOps",
        "[SuperSite.biz] 2. Linux first steps": "2. Linux first steps",
        "[supersite.biz]   2.1 Homework review": "2.1 Homework review",
    }


def test_stacked_tags_are_removed_one_after_another() -> None:
    cleaned = build_clean_map(["[HD] (2024) Intro", "[HD] (2024) Outro"])

    assert cleaned == {"[HD] (2024) Intro": "Intro", "[HD] (2024) Outro": "Outro"}


def test_domain_prefix_without_brackets() -> None:
    cleaned = build_clean_map(["course-site.com 01 Intro", "course-site.com 02 Loops"])

    assert set(cleaned.values()) == {"01 Intro", "02 Loops"}


def test_tags_below_the_coverage_threshold_are_kept() -> None:
    names = [f"[Site] Lesson {index}" for index in range(8)] + ["Bonus", "Extras"]

    cleaned = build_clean_map(names)

    assert cleaned == {name: name for name in names}


def test_name_made_only_of_the_tag_keeps_its_text() -> None:
    cleaned = build_clean_map(["[Site]", "[Site] Intro"])

    assert cleaned["[Site]"] == "[Site]"
    assert cleaned["[Site] Intro"] == "Intro"


def test_empty_input() -> None:
    assert build_clean_map([]) == {}


def _tagged_course(tmp_path: Path) -> Path:
    root = tmp_path / "course"
    write_video(root / "[Site.biz] 01 Basics" / "[Site.biz] 01 Variables.mp4")
    write_video(root / "[Site.biz] 01 Basics" / "[Site.biz] 02 Loops.mp4")
    write_video(root / "[Site.biz] 02 Advanced" / "[Site.biz] 01 Decorators.mp4")
    return root


def test_scanner_strips_shared_labels_from_titles(tmp_path: Path) -> None:
    course = DirectoryScanner(LibrarySettings(), probe=FakeProbe()).scan(_tagged_course(tmp_path))

    assert [chapter.title for chapter in course.chapters] == ["01 Basics", "02 Advanced"]
    assert [part.title for part in course.iter_parts()] == ["01 Variables", "02 Loops", "01 Decorators"]
    assert course.chapters[0].parts[0].file_name == "[Site.biz] 01 Variables.mp4"


def test_label_cleaning_can_be_disabled(tmp_path: Path) -> None:
    settings = LibrarySettings(clean_labels=False)
    course = DirectoryScanner(settings, probe=FakeProbe()).scan(_tagged_course(tmp_path))

    assert course.chapters[0].title == "[Site.biz] 01 Basics"
