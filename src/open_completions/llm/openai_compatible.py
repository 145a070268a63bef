"""OpenAI-compatible chat completions backend.

Always ``POST <base_url>/chat/completions``.  Streamed responses are read as
an event stream; a JSON response (``stream: false`` or a JSON content-type)
is read as one chat-completions document.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Iterable, Mapping

import httpx

from open_completions.cancellation import CancelSignal
from open_completions.config import EndpointProfile
from open_completions.errors import (
    BAD_REQUEST,
    INVALID_JSON,
    UPSTREAM_ERROR,
    CompletionError,
)
from open_completions.types import ChunkResult, CompletionOptions
from open_completions.utils.http_helpers import is_json_content

from .extractor import extract_openai_chunks, extract_openai_message
from .frames import FrameDecoder
from .request_builder import PreparedRequest, build_chat_request
from .stream import BUFFERING, DRAINING_REMAINDER, STREAMING, CompletionStream
from .transport import iter_body, read_body

_logger = logging.getLogger(__name__)


class ChatCompletionStream(CompletionStream):
    """Chunk emitter for the fixed chat-completions contract."""

    def build_request(self) -> PreparedRequest:
        return build_chat_request(self.messages, self.options, self.profile)

    def status_error(self, response: httpx.Response, text: str) -> CompletionError:
        status = response.status_code
        code = UPSTREAM_ERROR if status >= 500 else BAD_REQUEST
        return CompletionError(
            f"Upstream error {status}: {text or response.reason_phrase}",
            code,
            status=status,
        )

    def _emit(self, event: Any) -> list[ChunkResult]:
        """Chunks to yield for one parsed event (finish reasons are kept)."""
        out: list[ChunkResult] = []
        for chunk in extract_openai_chunks(event):
            self.record(chunk)
            if chunk.usage is not None:
                out.append(ChunkResult(usage=chunk.usage))
            if chunk.delta:
                out.append(ChunkResult(delta=chunk.delta))
        return out

    def _events(self, frames: list[str]) -> list[Any]:
        events: list[Any] = []
        for frame in frames:
            try:
                events.append(json.loads(frame))
            except (json.JSONDecodeError, ValueError):
                _logger.debug("Dropping malformed event: %.200s", frame)
        return events

    async def consume(
        self, response: httpx.Response, signal: CancelSignal | None,
    ) -> AsyncIterator[ChunkResult]:
        request_stream = self.request.stream if self.request else True
        if not request_stream or is_json_content(response.headers.get("content-type")):
            self.state = BUFFERING
            body = await read_body(response, signal, self.deadline)
            try:
                document = json.loads(body.decode("utf-8", errors="replace"))
            except (json.JSONDecodeError, ValueError) as exc:
                raise CompletionError(
                    "Failed to parse completion response as JSON", INVALID_JSON,
                ) from exc
            for chunk in extract_openai_message(document):
                self.record(chunk)
                if chunk.delta:
                    yield ChunkResult(delta=chunk.delta)
                if chunk.usage is not None:
                    yield ChunkResult(usage=chunk.usage)
            return

        self.state = STREAMING
        decoder = FrameDecoder("sse")
        reads = iter_body(response, signal, self.deadline)
        try:
            async for data in reads:
                for event in self._events(decoder.feed(data)):
                    for chunk in self._emit(event):
                        yield chunk
                if decoder.done:
                    _logger.debug("Received [DONE], stopping stream")
                    return
        finally:
            await reads.aclose()

        self.state = DRAINING_REMAINDER
        if decoder.pending:
            _logger.debug("Flushing unterminated frame: %.200s", decoder.pending)
        for event in self._events(decoder.flush()):
            for chunk in self._emit(event):
                yield chunk


def send(
    messages: Iterable[Any] | None,
    options: CompletionOptions | Mapping[str, Any] | None,
    profile: EndpointProfile,
    cancel: CancelSignal | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> ChatCompletionStream:
    """Stream a chat completion from an OpenAI-compatible endpoint."""
    return ChatCompletionStream(messages, options, profile, cancel, client=client)
