"""Event-stream line helpers shared by the frame decoder."""

from __future__ import annotations

DONE_TOKEN = "[DONE]"


def parse_sse_line(line: str | None) -> str | None:
    """Return the payload of a ``data:`` line, else ``None``."""
    if not line or not isinstance(line, str):
        return None
    if line.startswith("data:"):
        return line[5:].lstrip()
    return None


def is_done_token(value: str | None) -> bool:
    return value == DONE_TOKEN
