"""Removal of a shared site or release tag from chapter and part titles.

Downloaded courses often prefix every name with the same label, for example
``[SuperSite.biz] 02 Linux basics``. When a large majority of names carry the
same prefix it is dropped from all of them; unrelated names are left alone.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Dict, Iterable, List, Optional, Pattern

LOGGER = logging.getLogger(__name__)

MIN_COVERAGE = 0.85
_MAX_PASSES = 5
_SAMPLE_SIZE = 10

# Tried in order; one prefix is removed per pass so stacked tags peel off one at a time.
_PREFIX_PATTERNS = (
    re.compile(r"^\[[^\]]+\]\s*"),
    re.compile(r"^\([^)]+\)\s*"),
    re.compile(r"^[A-Za-z0-9][A-Za-z0-9\-]*\.[A-Za-z]{2,}\s+"),
)


def _tag_of(name: str, pattern: Pattern[str]) -> Optional[str]:
    match = pattern.match(name)
    if match is None:
        return None
    return match.group(0).strip().lower()


def _dominant_tag(names: List[str], pattern: Pattern[str]) -> Optional[str]:
    counts = Counter(
        tag
        for tag in (_tag_of(name, pattern) for name in names[:_SAMPLE_SIZE])
        if tag is not None
    )
    if not counts:
        return None
    return counts.most_common(1)[0][0]


def _strip_prefixes(name: str, patterns: List[Pattern[str]]) -> str:
    result = name
    changed = True
    while changed:
        changed = False
        for pattern in patterns:
            match = pattern.match(result)
            if match and match.end():
                result = result[match.end() :]
                changed = True
    return result.strip()


def find_shared_prefixes(names: List[str]) -> List[Pattern[str]]:
    """Return the prefix patterns shared by at least :data:`MIN_COVERAGE` of *names*."""

    shared: List[Pattern[str]] = []
    working = list(names)
    for _ in range(_MAX_PASSES):
        if not working:
            break
        found = None
        for pattern in _PREFIX_PATTERNS:
            tag = _dominant_tag(working, pattern)
            if tag is None:
                continue
            hits = sum(1 for name in working if _tag_of(name, pattern) == tag)
            if hits / len(working) >= MIN_COVERAGE:
                found = pattern
                break
        if found is None:
            break
        shared.append(found)
        working = [_strip_prefixes(name, [found]) for name in working]
    return shared


def build_clean_map(raw_names: Iterable[str]) -> Dict[str, str]:
    """Map each distinct raw name to its label without the shared prefix.

    A name that would become empty keeps its raw text.
    """

    names = list(dict.fromkeys(raw_names))
    if not names:
        return {}
    patterns = find_shared_prefixes(names)
    if not patterns:
        return {name: name for name in names}
    LOGGER.debug(
        "Stripping %d shared label prefix(es) from %d names", len(patterns), len(names)
    )
    return {name: _strip_prefixes(name, patterns) or name for name in names}


__all__ = ["MIN_COVERAGE", "build_clean_map", "find_shared_prefixes"]
