"""Deterministic fingerprint over the video files of a course root."""

from __future__ import annotations

import hashlib
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List

from ..config import DEFAULT_VIDEO_EXTENSIONS, METADATA_DIRNAME, normalize_extensions
from ..errors import FingerprintError
from .events import emit_scan_event


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileStamp:
    """One line of the canonical fingerprint input."""

    relative_path: str
    size_bytes: int
    mtime_ticks: int

    def as_line(self) -> str:
        return f"{self.relative_path}|{self.size_bytes}|{self.mtime_ticks}\n"


def collect_file_stamps(
    root_path: Path | str,
    allowed_extensions: Iterable[str] = DEFAULT_VIDEO_EXTENSIONS,
    *,
    metadata_dirname: str = METADATA_DIRNAME,
) -> List[FileStamp]:
    """Return the stamps of every allow-listed file below *root_path*, sorted by path.

    Paths are relative to the root with ``/`` separators and sorted by code
    point so the result does not depend on directory enumeration order.
    Modification times are expressed in 100ns ticks.
    """

    root = Path(root_path)
    if not root.is_dir():
        raise FingerprintError(f"Course root '{root}' is not a directory")

    extensions = set(normalize_extensions(allowed_extensions))
    stamps: List[FileStamp] = []

    def _raise(error: OSError) -> None:
        raise FingerprintError(f"Unable to enumerate '{error.filename}': {error}") from error

    for directory, subdirectories, files in os.walk(root, onerror=_raise):
        current = Path(directory)
        if current == root:
            subdirectories[:] = [name for name in subdirectories if name != metadata_dirname]
        subdirectories.sort()
        for file_name in files:
            if os.path.splitext(file_name)[1].lower() not in extensions:
                continue
            file_path = current / file_name
            try:
                stat_result = file_path.stat()
            except OSError as error:
                raise FingerprintError(f"Unable to stat '{file_path}': {error}") from error
            relative = file_path.relative_to(root).as_posix()
            stamps.append(
                FileStamp(
                    relative_path=relative,
                    size_bytes=int(stat_result.st_size),
                    mtime_ticks=int(stat_result.st_mtime_ns // 100),
                )
            )

    stamps.sort(key=lambda stamp: stamp.relative_path)
    return stamps


def compute_fingerprint(
    root_path: Path | str,
    allowed_extensions: Iterable[str] = DEFAULT_VIDEO_EXTENSIONS,
    *,
    metadata_dirname: str = METADATA_DIRNAME,
) -> str:
    """Return the lower-case SHA-256 hex digest of the course file set.

    Raises :class:`FingerprintError` when any part of the tree cannot be read;
    callers must then assume the course changed.
    """

    start = time.perf_counter()
    stamps = collect_file_stamps(
        root_path, allowed_extensions, metadata_dirname=metadata_dirname
    )
    digest = hashlib.sha256()
    for stamp in stamps:
        digest.update(stamp.as_line().encode("utf-8"))
    fingerprint = digest.hexdigest()
    emit_scan_event(
        "Computed fingerprint",
        payload={"root": root_path, "files": len(stamps), "fingerprint": fingerprint[:12]},
        duration_ms=(time.perf_counter() - start) * 1000.0,
        level=logging.DEBUG,
    )
    return fingerprint


__all__ = ["FileStamp", "collect_file_stamps", "compute_fingerprint"]
