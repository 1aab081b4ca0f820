from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from coursekeeper.bootstrap import Bootstrapper
from coursekeeper.config import AppConfig, LibrarySettings


def write_video(path: Path, size: int = 1024) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\0" * size)
    return path


class FakeTimer:
    """Timer stand-in that only fires when a test says so."""

    def __init__(self, interval: float, function: Callable[..., None], args: tuple) -> None:
        self.interval = interval
        self.function = function
        self.args = args
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.function(*self.args)


class FakeTimerFactory:
    def __init__(self) -> None:
        self.timers: List[FakeTimer] = []

    def __call__(self, interval: float, function: Callable[..., None], args: tuple) -> FakeTimer:
        timer = FakeTimer(interval, function, args)
        self.timers.append(timer)
        return timer

    @property
    def live(self) -> List[FakeTimer]:
        return [timer for timer in self.timers if not timer.cancelled]


class FakeProbe:
    """Duration probe answering from a file-name lookup table."""

    def __init__(self, durations: Optional[dict] = None, *, failing: Tuple[str, ...] = ()) -> None:
        self.durations = durations or {}
        self.failing = failing
        self.calls: List[str] = []

    def probe(self, media_path: Path) -> Optional[int]:
        self.calls.append(media_path.name)
        if media_path.name in self.failing:
            raise RuntimeError(f"cannot decode {media_path.name}")
        return self.durations.get(media_path.name)


@pytest.fixture()
def settings() -> LibrarySettings:
    return LibrarySettings(debounce_seconds=2.0, save_retries=2, keep_backups=5)


@pytest.fixture()
def timer_factory() -> FakeTimerFactory:
    return FakeTimerFactory()


@pytest.fixture()
def course_root(tmp_path: Path) -> Path:
    """A small two-chapter course with intro files at the top level."""

    root = tmp_path / "Python Course"
    write_video(root / "01 Welcome.mp4", 1000)
    write_video(root / "02 Setup.mp4", 2000)
    write_video(root / "01 Basics" / "01 Variables.mp4", 3000)
    write_video(root / "01 Basics" / "02 Loops.mkv", 4000)
    write_video(root / "02 Advanced" / "01 Decorators.mp4", 5000)
    (root / "notes.txt").write_text("not a video", encoding="utf-8")
    return root


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    monkeypatch.chdir(tmp_path)

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "repository_backend": "json",
            "library": {"probe_durations": False, "debounce_seconds": 0.5},
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config
