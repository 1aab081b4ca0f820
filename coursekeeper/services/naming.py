"""Filename heuristics used when ordering and matching course files."""

from __future__ import annotations

import os
import re
from typing import Optional

from rapidfuzz.distance import Levenshtein

__all__ = [
    "extract_chapter_order",
    "extract_part_index",
    "name_similarity",
    "normalize_for_matching",
    "normalize_path",
    "path_key",
]


_TAGGED_INDEX = re.compile(r"^\s*\[[^\]]+\]\s*(\d{1,4})\b")
_LEADING_INDEX = re.compile(r"^\s*(\d{1,4})\b")
_ANY_NUMBER = re.compile(r"(\d{1,4})")
_CHAPTER_ORDER = re.compile(r"^\s*(?:\[[^\]]+\]\s*)?(\d{1,4})")

_EXTENSION = re.compile(r"\.[a-z0-9]{1,5}$", re.IGNORECASE)
_LEADING_TAG = re.compile(r"^\s*[\[\(].*?[\]\)]\s*")
_NUMERIC_PREFIX = re.compile(r"^\s*\d{1,4}[\s.\-_:]+")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_path(value: Optional[str]) -> str:
    """Return an absolute, separator-normalised form of *value* without a trailing slash."""

    if value is None or not str(value).strip():
        return ""
    normalized = os.path.normpath(os.path.abspath(str(value).strip()))
    if len(normalized) > 1:
        normalized = normalized.rstrip("\\/") or normalized
    return normalized


def path_key(value: Optional[str]) -> str:
    """Return the case-insensitive comparison key for a filesystem path."""

    return normalize_path(value).casefold()


def extract_part_index(file_name: str) -> Optional[int]:
    """Return the positional index encoded in *file_name*.

    Tried in order: a number right after a bracketed tag (``[Site] 07 ...``),
    a leading number, then the first number anywhere in the name.
    """

    if not file_name or not file_name.strip():
        return None
    for pattern in (_TAGGED_INDEX, _LEADING_INDEX, _ANY_NUMBER):
        match = pattern.search(file_name) if pattern is _ANY_NUMBER else pattern.match(file_name)
        if match:
            return int(match.group(1))
    return None


def extract_chapter_order(name: str) -> Optional[int]:
    """Return the leading number of a chapter directory name, if any."""

    if not name or not name.strip():
        return None
    match = _CHAPTER_ORDER.match(name)
    if match:
        return int(match.group(1))
    return None


def normalize_for_matching(name: Optional[str]) -> str:
    """Reduce a file name to the words that survive renames and re-encodes.

    ``"[Udemy] 03 - Intro_to Python.mp4"`` becomes ``"intro to python"``.
    """

    if not name or not name.strip():
        return ""
    value = name.strip().lower()
    value = _EXTENSION.sub("", value)
    value = _LEADING_TAG.sub("", value)
    value = _NUMERIC_PREFIX.sub("", value)
    value = _NON_ALNUM.sub(" ", value)
    return " ".join(value.split())


def name_similarity(left: str, right: str) -> float:
    """Return ``1 - levenshtein / max(len)`` clamped to ``[0, 1]``."""

    left = left or ""
    right = right or ""
    if left == right:
        return 1.0
    longest = max(len(left), len(right))
    if longest == 0:
        return 1.0
    score = 1.0 - Levenshtein.distance(left, right) / longest
    return max(0.0, min(1.0, score))
