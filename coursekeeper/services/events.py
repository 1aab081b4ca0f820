"""Structured log events emitted by scanning, merging, progress and storage code.

Every event is a single log record on the ``coursekeeper.events`` logger. The
rendered message reads ``[KIND] text (key=value, ...)`` and the raw payload is
attached as ``record.event_payload`` for handlers that want fields.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from os import PathLike
from typing import Any, Dict, Mapping, Optional


DEFAULT_EVENT_LOGGER = logging.getLogger("coursekeeper.events")

_MAX_VALUE_LENGTH = 200


def sanitize_context_value(value: Any) -> Any:
    """Return *value* in a form that is safe and short enough for a log line.

    Numbers and booleans pass through; ``None`` and blank text are dropped by
    returning ``None``.
    """

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, PathLike):
        text = str(value)
    elif isinstance(value, (list, tuple, set, frozenset)):
        text = ", ".join(map(str, value))
    else:
        text = str(value).strip()
    if not text:
        return None
    if len(text) > _MAX_VALUE_LENGTH:
        text = text[:_MAX_VALUE_LENGTH] + "…"
    return text


def normalize_context(values: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Sanitise a payload mapping, skipping blank keys and empty values."""

    cleaned: Dict[str, Any] = {}
    for key, raw in (values or {}).items():
        value = sanitize_context_value(raw) if key else None
        if value is not None:
            cleaned[str(key)] = value
    return cleaned


def emit_structured_event(
    event_type: str,
    message: str,
    *,
    payload: Optional[Mapping[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: logging.Logger | logging.LoggerAdapter = DEFAULT_EVENT_LOGGER,
) -> None:
    text = str(message).strip()
    fields = normalize_context(payload)
    if duration_ms is not None:
        fields["duration_ms"] = round(float(duration_ms), 2)

    rendered = f"[{event_type}] {text}" if event_type else text
    if fields:
        rendered += " (" + ", ".join(f"{key}={value}" for key, value in fields.items()) + ")"

    logger.log(
        level,
        rendered,
        extra={"event": text, "event_type": event_type or "", "event_payload": fields},
    )


def emit_scan_event(message: str, **kwargs: Any) -> None:
    emit_structured_event("SCAN", message, **kwargs)


def emit_merge_event(message: str, **kwargs: Any) -> None:
    emit_structured_event("MERGE", message, **kwargs)


def emit_progress_event(message: str, **kwargs: Any) -> None:
    emit_structured_event("PROGRESS", message, **kwargs)


def emit_repository_event(message: str, **kwargs: Any) -> None:
    emit_structured_event("REPO", message, **kwargs)


__all__ = [
    "DEFAULT_EVENT_LOGGER",
    "emit_merge_event",
    "emit_progress_event",
    "emit_repository_event",
    "emit_scan_event",
    "emit_structured_event",
    "normalize_context",
    "sanitize_context_value",
]
