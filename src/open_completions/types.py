"""Shared data types for Open Completions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping


# ---------------------------------------------------------------------------
# Request types
# ---------------------------------------------------------------------------

@dataclass
class Message:
    """A single chat message (role/content pair)."""

    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class CompletionOptions:
    """Per-call overrides applied on top of the endpoint profile."""

    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    response_format: dict[str, Any] | None = None
    stream: bool | None = None
    extra_headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def coerce(
        cls, value: CompletionOptions | Mapping[str, Any] | None,
    ) -> CompletionOptions:
        """Accept an options object, a plain mapping or ``None``."""
        if isinstance(value, CompletionOptions):
            return value
        if not value:
            return cls()
        extra = value.get("extra_headers", value.get("extraHeaders")) or {}
        return cls(
            model=value.get("model"),
            temperature=value.get("temperature"),
            max_tokens=value.get("max_tokens"),
            response_format=value.get("response_format"),
            stream=value.get("stream"),
            extra_headers=dict(extra),
        )


@dataclass
class RenderingContext:
    """Values available to request templates for one call."""

    model: str = ""
    temperature: float | None = None
    max_tokens: int | None = None
    stream: bool = True
    messages: list[dict[str, Any]] = field(default_factory=list)
    token: str | None = None
    scheme: str = "Bearer"


# ---------------------------------------------------------------------------
# Response types
# ---------------------------------------------------------------------------

@dataclass
class ChunkResult:
    """One item yielded to the caller while a completion streams."""

    delta: str | None = None
    usage: dict[str, int | float] | None = None
    finish_reason: str | None = None

    @property
    def is_empty(self) -> bool:
        return (
            self.delta is None
            and self.usage is None
            and self.finish_reason is None
        )


@dataclass
class CompletionSummary:
    """Terminal result of a completion: last-seen usage and finish reason."""

    usage: dict[str, int | float] | None = None
    finish_reason: str | None = None

    def update(self, chunk: ChunkResult) -> None:
        if chunk.usage is not None:
            self.usage = chunk.usage
        if chunk.finish_reason is not None:
            self.finish_reason = chunk.finish_reason
