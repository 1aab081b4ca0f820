"""Per-course write locks shared by everything that saves course metadata."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict

from .naming import path_key


class CourseLocks:
    """Hand out one re-entrant lock per course root.

    The registry lock only guards lookups, so saves of unrelated courses
    never wait on each other.
    """

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def for_root(self, root_path: Path | str) -> threading.RLock:
        key = path_key(str(root_path))
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock


__all__ = ["CourseLocks"]
