"""Tests for the run.py command line interface."""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest
from typer.testing import CliRunner

import run
from coursekeeper.bootstrap import Bootstrapper
from coursekeeper.config import AppConfig


runner = CliRunner()


@pytest.fixture()
def services(temp_config: AppConfig, monkeypatch):
    built = Bootstrapper(temp_config).build_services()
    monkeypatch.setattr(run, "_load_services", lambda: built)
    return built


def _first_part_id(services, root: Path) -> str:
    return next(services.library.load(root).iter_parts()).id


def test_scan_prints_the_outcome(services, course_root: Path) -> None:
    result = runner.invoke(run.cli, ["scan", str(course_root)])

    assert result.exit_code == 0, result.output
    assert "Action: created" in result.output
    assert "Parts: 5" in result.output
    assert services.library.load(course_root) is not None


def test_rescan_lists_unmatched_files(services, course_root: Path) -> None:
    runner.invoke(run.cli, ["scan", str(course_root)])
    (course_root / "01 Welcome.mp4").unlink()

    result = runner.invoke(run.cli, ["scan", str(course_root)])

    assert result.exit_code == 0, result.output
    assert "Action: merged" in result.output
    assert "lost progress:" in result.output
    assert "Backup:" in result.output


def test_scan_rejects_missing_directory(services, tmp_path: Path) -> None:
    result = runner.invoke(run.cli, ["scan", str(tmp_path / "missing")])

    assert result.exit_code != 0


def test_status_renders_overview(services, course_root: Path) -> None:
    runner.invoke(run.cli, ["scan", str(course_root)])

    result = runner.invoke(run.cli, ["status", str(course_root)])

    assert result.exit_code == 0, result.output
    assert "01 Variables" in result.output
    assert "At a glance" in result.output


def test_status_without_scan_fails(services, tmp_path: Path) -> None:
    result = runner.invoke(run.cli, ["status", str(tmp_path)])

    assert result.exit_code == 1
    assert "run 'scan' first" in result.output


def test_progress_commands(services, course_root: Path) -> None:
    runner.invoke(run.cli, ["scan", str(course_root)])
    part_id = _first_part_id(services, course_root)

    saved = runner.invoke(run.cli, ["save-position", str(course_root), part_id, "75"])
    assert saved.exit_code == 0, saved.output
    assert "01:15" in saved.output
    assert services.library.load(course_root).resume.position_seconds == 75

    resumed = runner.invoke(run.cli, ["resume", str(course_root)])
    assert resumed.exit_code == 0, resumed.output
    assert resumed.output.strip().endswith("\t75")

    cleared = runner.invoke(run.cli, ["clear-resume", str(course_root)])
    assert cleared.exit_code == 0
    assert services.library.load(course_root).resume is None

    watched = runner.invoke(run.cli, ["mark-watched", str(course_root), part_id])
    assert watched.exit_code == 0
    assert services.library.load(course_root).find_part(part_id).watched is True

    unknown = runner.invoke(run.cli, ["mark-watched", str(course_root), "nope"])
    assert unknown.exit_code == 1


def test_backup_command(services, course_root: Path, tmp_path: Path) -> None:
    runner.invoke(run.cli, ["scan", str(course_root)])

    result = runner.invoke(run.cli, ["backup", str(course_root), "--reason", "before cleanup"])

    assert result.exit_code == 0, result.output
    assert "before-cleanup" in result.output

    empty = tmp_path / "empty"
    empty.mkdir()
    assert runner.invoke(run.cli, ["backup", str(empty)]).exit_code == 1


def test_serve_wires_uvicorn(monkeypatch, tmp_path: Path) -> None:
    captured = {}
    fake_services = SimpleNamespace(
        library=object(),
        persister=object(),
        timestamps=object(),
        config=SimpleNamespace(storage_root=tmp_path),
    )
    monkeypatch.setattr(run, "_load_services", lambda: fake_services)

    dummy_app = SimpleNamespace(state=SimpleNamespace())

    def fake_create_app(library, persister, *, config, root_path, timestamps):
        captured["root_path"] = root_path
        captured["timestamps"] = timestamps
        captured["library"] = library
        return dummy_app

    monkeypatch.setattr(run, "create_app", fake_create_app)

    class DummyConfig:
        def __init__(self, app, **kwargs):
            captured["app"] = app
            captured["config_kwargs"] = kwargs

    class DummyServer:
        def __init__(self, config):
            captured["server_config"] = config

        def run(self):
            captured["server_run"] = True

    monkeypatch.setattr(run.uvicorn, "Config", DummyConfig)
    monkeypatch.setattr(run.uvicorn, "Server", DummyServer)

    run.serve(host="0.0.0.0", port=9000, root_path="/courses/")

    assert captured["root_path"] == "/courses"
    assert captured["library"] is fake_services.library
    assert captured["timestamps"] is fake_services.timestamps
    assert captured["app"] is dummy_app
    assert captured["config_kwargs"]["host"] == "0.0.0.0"
    assert captured["config_kwargs"]["port"] == 9000
    assert captured["server_run"] is True
    assert isinstance(dummy_app.state.server, DummyServer)


def test_blank_part_id_is_a_usage_error(services, course_root: Path) -> None:
    result = runner.invoke(run.cli, ["mark-watched", str(course_root), "   "])

    assert result.exit_code == 2


def test_bookmark_commands(services, course_root: Path) -> None:
    first = runner.invoke(
        run.cli, ["bookmark", str(course_root), "01 Basics/01 Variables.mp4", "125", "Naming rules"]
    )
    assert first.exit_code == 0, first.output
    assert "02:05" in first.output
    runner.invoke(run.cli, ["bookmark", str(course_root), "01 Basics/01 Variables.mp4", "30", "Intro"])

    listed = runner.invoke(run.cli, ["bookmarks", str(course_root)])

    assert listed.exit_code == 0, listed.output
    lines = [line.strip() for line in listed.output.splitlines() if line.strip()]
    assert lines == ["01 Basics/01 Variables.mp4", "00:30  Intro", "02:05  Naming rules"]


def test_bookmark_outside_the_course_is_a_usage_error(services, course_root: Path, tmp_path: Path) -> None:
    outside = tmp_path / "elsewhere.mp4"

    result = runner.invoke(run.cli, ["bookmark", str(course_root), str(outside), "5", "Nope"])

    assert result.exit_code == 2


def test_bookmarks_without_any_stored(services, course_root: Path) -> None:
    result = runner.invoke(run.cli, ["bookmarks", str(course_root)])

    assert result.exit_code == 0
    assert "No bookmarks stored" in result.output
