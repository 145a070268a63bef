"""Small HTTP helpers shared by both backends."""

from __future__ import annotations

import re
from typing import Any, Mapping

import httpx

_SECRET_HEADER_PATTERN = re.compile(
    r"authorization|token|secret|key|signature|credential", re.IGNORECASE,
)
_JSON_CONTENT_PATTERN = re.compile(r"\bapplication/json\b", re.IGNORECASE)


def join_url(base_url: str | None, path: str | None) -> str:
    """Join *base_url* and *path* with exactly one slash between them."""
    base = base_url.strip() if isinstance(base_url, str) else ""
    target = path.strip() if isinstance(path, str) else ""
    if not base:
        return target
    if not target:
        return base
    base_slash = base.endswith("/")
    path_slash = target.startswith("/")
    if base_slash and path_slash:
        return base + target[1:]
    if not base_slash and not path_slash:
        return f"{base}/{target}"
    return base + target


def headers_to_dict(headers: httpx.Headers | Mapping[str, str] | None) -> dict[str, str]:
    """Copy headers into a plain dict with lower-cased names."""
    if not headers:
        return {}
    return {str(k).lower(): v for k, v in headers.items()}


def is_json_content(content_type: str | None) -> bool:
    if not content_type:
        return False
    return bool(_JSON_CONTENT_PATTERN.search(content_type))


def redact_headers(headers: Mapping[str, Any] | None) -> dict[str, Any]:
    """Mask values of headers that look like credentials (for logging)."""
    if not headers:
        return {}
    return {
        k: "***" if _SECRET_HEADER_PATTERN.search(k) else v
        for k, v in headers.items()
    }
