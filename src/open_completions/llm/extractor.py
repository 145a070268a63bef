"""Payload extraction: decoded frames / documents to ``ChunkResult``.

Template-driven backends describe where the answer lives with paths
(``StreamSchema`` / ``BufferSchema``).  The openai-compatible backend reads
the chat-completions shape directly.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from open_completions.config import BufferSchema, StreamSchema, UsagePaths
from open_completions.types import ChunkResult

from .paths import get_by_path

_logger = logging.getLogger(__name__)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def build_usage(document: Any, paths: UsagePaths | None) -> dict[str, int | float] | None:
    """Collect numeric token counters; ``None`` when none resolve."""
    if paths is None:
        return None
    usage: dict[str, int | float] = {}
    for key, path in paths.items():
        if not path:
            continue
        value = get_by_path(document, path)
        if _is_number(value):
            usage[key] = value
    return usage or None


def _parse_document(frame: str) -> Any:
    """Parse a frame as a JSON object/array, else ``None``."""
    try:
        value = json.loads(frame)
    except (json.JSONDecodeError, ValueError):
        return None
    if isinstance(value, (dict, list)):
        return value
    return None


def extract_stream_chunk(frame: str, schema: StreamSchema) -> ChunkResult | None:
    """Turn one frame into a chunk, or ``None`` when it carries nothing.

    Non-JSON ``lines`` frames are plain-text deltas; non-JSON ``sse`` frames
    are dropped.
    """
    document = _parse_document(frame)
    if document is None:
        if schema.framing == "lines":
            return ChunkResult(delta=frame)
        _logger.debug("Dropping non-JSON event payload: %.200s", frame)
        return None

    result = ChunkResult()
    delta = get_by_path(document, schema.path_delta)
    if delta is not None:
        result.delta = _as_text(delta)
    finish = get_by_path(document, schema.path_finish)
    if finish is not None:
        result.finish_reason = finish
    result.usage = build_usage(document, schema.usage)
    return None if result.is_empty else result


def extract_buffer_result(
    document: Any, schema: BufferSchema,
) -> tuple[str, Any, dict[str, int | float] | None]:
    """Return ``(content, finish_reason, usage)`` for a buffered document."""
    text = get_by_path(document, schema.path_text)
    content = "" if text is None else _as_text(text)
    finish = get_by_path(document, schema.path_finish)
    return content, finish, build_usage(document, schema.usage)


# ---------------------------------------------------------------------------
# Chat-completions shape
# ---------------------------------------------------------------------------

def extract_openai_chunks(event: Any) -> list[ChunkResult]:
    """Chunks for one streamed chat-completions event.

    A top-level ``usage`` object comes first, then one chunk per choice that
    carries a content delta or a finish reason.
    """
    if not isinstance(event, dict):
        return []
    chunks: list[ChunkResult] = []
    usage = event.get("usage")
    if isinstance(usage, dict) and usage:
        chunks.append(ChunkResult(usage=usage))
    choices = event.get("choices")
    if not isinstance(choices, list):
        return chunks
    for choice in choices:
        if not isinstance(choice, dict):
            continue
        delta = choice.get("delta")
        content = delta.get("content") if isinstance(delta, dict) else None
        finish = choice.get("finish_reason") or choice.get("finishReason")
        chunk = ChunkResult(
            delta=content if isinstance(content, str) and content else None,
            finish_reason=finish or None,
        )
        if not chunk.is_empty:
            chunks.append(chunk)
    return chunks


def extract_openai_message(document: Any) -> list[ChunkResult]:
    """Chunks for a non-streamed chat-completions response body."""
    if not isinstance(document, dict):
        return []
    chunks: list[ChunkResult] = []
    for choice in document.get("choices") or []:
        if not isinstance(choice, dict):
            continue
        message = choice.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        chunk = ChunkResult(
            delta=content if isinstance(content, str) and content else None,
            finish_reason=choice.get("finish_reason") or None,
        )
        if not chunk.is_empty:
            chunks.append(chunk)
    usage = document.get("usage")
    if isinstance(usage, dict) and usage:
        chunks.append(ChunkResult(usage=usage))
    return chunks
