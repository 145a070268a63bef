"""Template-driven backend for arbitrary HTTP completion APIs.

The profile's ``GenericSpec`` says how to build the request (method,
endpoint, template) and how to read the response (``BufferSchema`` for one
JSON document, ``StreamSchema`` for an event stream or NDJSON lines).
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Iterable, Mapping

import httpx

from open_completions.cancellation import CancelSignal
from open_completions.config import (
    BufferSchema,
    EndpointProfile,
    ResponseSchema,
    StreamSchema,
)
from open_completions.errors import (
    INVALID_JSON,
    INVALID_PROFILE,
    CompletionError,
    http_code,
)
from open_completions.types import ChunkResult, CompletionOptions

from .extractor import extract_buffer_result, extract_stream_chunk
from .frames import FrameDecoder
from .request_builder import PreparedRequest, build_template_request
from .stream import BUFFERING, DRAINING_REMAINDER, STREAMING, CompletionStream
from .transport import iter_body, read_body

_logger = logging.getLogger(__name__)


class TemplateCompletionStream(CompletionStream):
    """Chunk emitter for profiles with a ``generic`` block."""

    @property
    def schema(self) -> ResponseSchema:
        generic = self.profile.generic
        return generic.response_schema if generic else BufferSchema()

    def build_request(self) -> PreparedRequest:
        return build_template_request(self.messages, self.options, self.profile)

    def status_error(self, response: httpx.Response, text: str) -> CompletionError:
        status = response.status_code
        return CompletionError(
            text or response.reason_phrase or "Upstream error",
            http_code(status),
            status=status,
        )

    def consume(
        self, response: httpx.Response, signal: CancelSignal | None,
    ) -> AsyncIterator[ChunkResult]:
        schema = self.schema
        if isinstance(schema, StreamSchema):
            return self._consume_stream(response, signal, schema)
        return self._consume_buffer(response, signal, schema)

    async def _consume_buffer(
        self,
        response: httpx.Response,
        signal: CancelSignal | None,
        schema: BufferSchema,
    ) -> AsyncIterator[ChunkResult]:
        self.state = BUFFERING
        body = await read_body(response, signal, self.deadline)
        try:
            document = json.loads(body.decode("utf-8", errors="replace"))
        except (json.JSONDecodeError, ValueError) as exc:
            raise CompletionError(
                "Failed to parse buffer response as JSON", INVALID_JSON,
            ) from exc
        content, finish, usage = extract_buffer_result(document, schema)
        self.record(ChunkResult(usage=usage, finish_reason=finish))
        if content:
            yield ChunkResult(delta=content)

    def _extract(self, frames: list[str], schema: StreamSchema) -> list[ChunkResult]:
        out: list[ChunkResult] = []
        for frame in frames:
            chunk = extract_stream_chunk(frame, schema)
            if chunk is None:
                continue
            self.record(chunk)
            if chunk.delta is not None:
                out.append(ChunkResult(delta=chunk.delta))
        return out

    async def _consume_stream(
        self,
        response: httpx.Response,
        signal: CancelSignal | None,
        schema: StreamSchema,
    ) -> AsyncIterator[ChunkResult]:
        self.state = STREAMING
        decoder = FrameDecoder(schema.framing)
        reads = iter_body(response, signal, self.deadline)
        try:
            async for data in reads:
                for chunk in self._extract(decoder.feed(data), schema):
                    yield chunk
                if decoder.done:
                    _logger.debug("Received [DONE], stopping stream")
                    return
        finally:
            await reads.aclose()

        self.state = DRAINING_REMAINDER
        if decoder.pending:
            _logger.debug("Flushing unterminated frame: %.200s", decoder.pending)
        for chunk in self._extract(decoder.flush(), schema):
            yield chunk


def send(
    messages: Iterable[Any] | None,
    options: CompletionOptions | Mapping[str, Any] | None,
    profile: EndpointProfile,
    cancel: CancelSignal | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> TemplateCompletionStream:
    """Stream a completion from a backend described by ``profile.generic``.

    Raises ``CompletionError(code="invalid_profile")`` immediately when the
    profile has no ``generic`` block.
    """
    if profile.generic is None:
        raise CompletionError(
            "Profile does not include generic-http configuration",
            INVALID_PROFILE,
        )
    return TemplateCompletionStream(messages, options, profile, cancel, client=client)
