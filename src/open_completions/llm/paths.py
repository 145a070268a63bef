"""Dotted/bracketed key paths into parsed JSON documents.

``choices[0].delta.content`` is walked as ``choices`` -> ``0`` -> ``delta``
-> ``content``.  A missing key, an out-of-range index or a ``null`` anywhere
along the way resolves to ``None``; lookups never raise.
"""

from __future__ import annotations

import re
from typing import Any

_INDEX = re.compile(r"\[(\d+)\]")


def split_path(path: str | None) -> list[str]:
    if not isinstance(path, str):
        return []
    normalized = _INDEX.sub(r".\1", path)
    return [seg.strip() for seg in normalized.split(".") if seg.strip()]


def get_by_path(target: Any, path: str | None) -> Any:
    """Resolve *path* inside *target*, or return ``None``."""
    if target is None or not path:
        return None
    current = target
    for segment in split_path(path):
        if isinstance(current, dict):
            current = current.get(segment)
        elif isinstance(current, list) and segment.isdigit():
            idx = int(segment)
            current = current[idx] if idx < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current
