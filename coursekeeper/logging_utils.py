"""Centralized logging configuration for the Course Keeper application."""

from __future__ import annotations

import logging
from logging import Logger
from pathlib import Path
from typing import Iterable, List


DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s"

_MANAGED_HANDLER_FLAG = "_coursekeeper_managed"


def configure_logging(level: int = logging.INFO, *, handlers: Iterable[logging.Handler] | None = None) -> Logger:
    """Configure the root logger, replacing handlers installed by earlier calls.

    Handlers added here are tagged so repeated CLI invocations inside one
    interpreter (tests, the web reloader) do not duplicate every log line.
    """

    logger = logging.getLogger()
    logger.setLevel(level)

    for existing in list(logger.handlers):
        if getattr(existing, _MANAGED_HANDLER_FLAG, False):
            logger.removeHandler(existing)
            existing.close()

    if handlers is None:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        handlers = [stream_handler]

    for handler in handlers:
        setattr(handler, _MANAGED_HANDLER_FLAG, True)
        logger.addHandler(handler)

    return logger


def build_default_handlers(storage_root: Path, *, to_console: bool = True) -> List[logging.Handler]:
    """Return a file handler under *storage_root* plus an optional console handler."""

    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    log_file = get_log_file_path(storage_root)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    handlers: List[logging.Handler] = [file_handler]
    if to_console:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(logging.WARNING)
        handlers.append(stream_handler)
    return handlers


def get_log_file_path(storage_root: Path) -> Path:
    """Return where the application log lives under *storage_root*."""

    return storage_root / "coursekeeper.log"


__all__ = [
    "DEFAULT_LOG_FORMAT",
    "build_default_handlers",
    "configure_logging",
    "get_log_file_path",
]
