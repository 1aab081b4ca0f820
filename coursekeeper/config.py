"""Configuration loading utilities for the Course Keeper application."""

from __future__ import annotations

import contextlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".coursekeeper_write_check"

METADATA_DIRNAME = ".coursekeeper"

DEFAULT_VIDEO_EXTENSIONS: Tuple[str, ...] = (
    ".mp4",
    ".mkv",
    ".avi",
    ".mov",
    ".webm",
    ".flv",
)

REPOSITORY_BACKENDS = ("json", "sqlite")


def _ensure_writable_directory(path: Path) -> bool:
    """Create *path* if needed and probe it with a throwaway file."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Pick the first writable directory among ``preferred`` and ``fallbacks``.

    The first writable candidate wins. When nothing can be prepared the
    ``preferred`` path itself is returned so that bootstrap can report it.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


def normalize_extensions(values: Iterable[str]) -> Tuple[str, ...]:
    """Return lower-cased, dot-prefixed, de-duplicated extensions."""

    seen: Dict[str, None] = {}
    for value in values:
        cleaned = str(value).strip().lower()
        if not cleaned:
            continue
        if not cleaned.startswith("."):
            cleaned = f".{cleaned}"
        seen.setdefault(cleaned, None)
    return tuple(seen)


@dataclass(frozen=True)
class LibrarySettings:
    """Tunables shared by the scanner, the merge engine and the progress persister."""

    allowed_extensions: Tuple[str, ...] = DEFAULT_VIDEO_EXTENSIONS
    fuzzy_threshold: float = 0.75
    debounce_seconds: float = 2.0
    max_depth: int = 20
    probe_durations: bool = False
    probe_timeout_seconds: float = 7.0
    save_retries: int = 3
    keep_backups: int = 20
    clean_labels: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "allowed_extensions", normalize_extensions(self.allowed_extensions)
        )
        if not self.allowed_extensions:
            raise ValueError("At least one video extension must be allowed")
        if not 0.0 <= self.fuzzy_threshold <= 1.0:
            raise ValueError(
                f"fuzzy_threshold must be within [0, 1], got {self.fuzzy_threshold!r}"
            )
        if self.debounce_seconds < 0:
            raise ValueError("debounce_seconds cannot be negative")
        if self.max_depth < 0:
            raise ValueError("max_depth cannot be negative")
        if self.save_retries < 0:
            raise ValueError("save_retries cannot be negative")

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any] | None) -> "LibrarySettings":
        if not mapping:
            return cls()
        kwargs: Dict[str, Any] = {}
        if "allowed_extensions" in mapping:
            kwargs["allowed_extensions"] = tuple(mapping["allowed_extensions"])
        for name, caster in (
            ("fuzzy_threshold", float),
            ("debounce_seconds", float),
            ("max_depth", int),
            ("probe_durations", bool),
            ("probe_timeout_seconds", float),
            ("save_retries", int),
            ("keep_backups", int),
            ("clean_labels", bool),
        ):
            if name in mapping and mapping[name] is not None:
                kwargs[name] = caster(mapping[name])
        return cls(**kwargs)


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths and library options for the application."""

    storage_root: Path
    repository_backend: str = "json"
    library: LibrarySettings = field(default_factory=LibrarySettings)

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".coursekeeper" / "storage"
        storage_root, _ = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        backend = str(mapping.get("repository_backend", "json")).strip().lower()
        if backend not in REPOSITORY_BACKENDS:
            raise ValueError(
                f"Unknown repository backend '{backend}'. "
                f"Expected one of: {', '.join(REPOSITORY_BACKENDS)}"
            )

        library = LibrarySettings.from_mapping(mapping.get("library"))
        return cls(storage_root=storage_root, repository_backend=backend, library=library)


def load_config(config_path: Path | None = None) -> AppConfig:
    """Read *config_path* (``config/default.json`` when omitted) into an :class:`AppConfig`."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = [
    "AppConfig",
    "DEFAULT_VIDEO_EXTENSIONS",
    "LibrarySettings",
    "METADATA_DIRNAME",
    "load_config",
    "normalize_extensions",
]
