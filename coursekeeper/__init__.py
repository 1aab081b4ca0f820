"""Course Keeper: progress tracking for local video courses."""

__version__ = "0.1.0"
