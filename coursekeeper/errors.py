"""Exception hierarchy shared across Course Keeper services."""

from __future__ import annotations


class CourseKeeperError(RuntimeError):
    """Base class for all application specific failures."""


class ScanError(CourseKeeperError):
    """Raised when a course root cannot be scanned at all."""


class FingerprintError(CourseKeeperError):
    """Raised when the file-set fingerprint of a course cannot be computed.

    Callers must treat this as "the course may have changed" and reconcile.
    """


class RepositoryError(CourseKeeperError):
    """Raised when course metadata cannot be persisted."""


class BootstrapError(CourseKeeperError):
    """Raised when initialization cannot be completed."""


__all__ = [
    "BootstrapError",
    "CourseKeeperError",
    "FingerprintError",
    "RepositoryError",
    "ScanError",
]
