"""The chunk emitter shared by both backends.

``CompletionStream`` is what ``send()`` returns: an async iterator of
``ChunkResult`` that performs exactly one request when iteration starts.
After iteration ends, ``summary`` holds the last-seen usage and finish
reason.  Usage::

    stream = send(messages, options, profile)
    async for chunk in stream:
        if chunk.delta:
            print(chunk.delta, end="")
    print(stream.summary.finish_reason)

The stream owns its deadline timer and the response body.  Both are
released in ``finally`` on every exit path: normal completion, decode
errors, upstream errors, cancellation, and ``aclose()`` by the consumer.
"""

from __future__ import annotations

import logging
import time
from typing import Any, AsyncIterator, Iterable, Mapping

import httpx

from open_completions.cancellation import CancelSignal, DeadlineSignal, any_of
from open_completions.config import EndpointProfile
from open_completions.errors import CompletionError
from open_completions.types import ChunkResult, CompletionOptions, CompletionSummary

from .request_builder import PreparedRequest
from .transport import DEFAULT_HTTP_TIMEOUT, issue_request, read_error_text

_logger = logging.getLogger(__name__)

# Emitter states
BUILDING_REQUEST = "building-request"
AWAITING_RESPONSE = "awaiting-response"
STREAMING = "streaming"
BUFFERING = "buffering"
DRAINING_REMAINDER = "draining-remainder"
CLOSED = "closed"
CLOSED_WITH_ERROR = "closed-with-error"


class CompletionStream:
    """One completion call.  Not restartable: iterate it once."""

    def __init__(
        self,
        messages: Iterable[Any] | None,
        options: CompletionOptions | Mapping[str, Any] | None,
        profile: EndpointProfile,
        cancel: CancelSignal | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.messages = list(messages or [])
        self.options = CompletionOptions.coerce(options)
        self.profile = profile
        self.cancel = cancel
        self.summary = CompletionSummary()
        self.state = BUILDING_REQUEST
        self.request: PreparedRequest | None = None
        self.response: httpx.Response | None = None
        self.deadline: DeadlineSignal | None = None
        self.release_count = 0
        self.latency_ms: float = 0
        self._client = client
        self._iterator: AsyncIterator[ChunkResult] | None = None

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    def build_request(self) -> PreparedRequest:
        raise NotImplementedError

    def status_error(self, response: httpx.Response, text: str) -> CompletionError:
        raise NotImplementedError

    def consume(
        self, response: httpx.Response, signal: CancelSignal | None,
    ) -> AsyncIterator[ChunkResult]:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def __aiter__(self) -> AsyncIterator[ChunkResult]:
        if self._iterator is not None:
            raise RuntimeError("CompletionStream can only be iterated once")
        self._iterator = self._run()
        return self._iterator

    async def aclose(self) -> None:
        """Stop early; releases the body and the timer."""
        if self._iterator is not None:
            await self._iterator.aclose()

    async def __aenter__(self) -> CompletionStream:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def collect(self) -> tuple[str, CompletionSummary]:
        """Drain the stream; return the assembled text and the summary."""
        parts: list[str] = []
        async for chunk in self:
            if chunk.delta:
                parts.append(chunk.delta)
        return "".join(parts), self.summary

    @property
    def closed(self) -> bool:
        return self.state in (CLOSED, CLOSED_WITH_ERROR)

    async def _run(self) -> AsyncIterator[ChunkResult]:
        start = time.monotonic()
        try:
            self.request = self.build_request()
        except CompletionError:
            self.state = CLOSED_WITH_ERROR
            raise

        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT)
        timeout_ms = self.profile.timeout_ms
        if timeout_ms and not (self.cancel is not None and self.cancel.cancelled):
            self.deadline = DeadlineSignal(timeout_ms).start()
        signal = any_of(self.cancel, self.deadline)

        try:
            self.state = AWAITING_RESPONSE
            self.response = await issue_request(
                client, self.request, signal, self.deadline,
            )
            if not self.response.is_success:
                text = await read_error_text(self.response, signal)
                raise self.status_error(self.response, text)

            chunks = self.consume(self.response, signal)
            try:
                async for chunk in chunks:
                    yield chunk
            finally:
                await chunks.aclose()
            self.state = CLOSED
        except GeneratorExit:
            # consumer stopped early via aclose()
            self.state = CLOSED
            raise
        except BaseException as exc:
            self.state = CLOSED_WITH_ERROR
            if isinstance(exc, CompletionError):
                _logger.info("Completion failed [%s]: %s", exc.code, exc.message)
            raise
        finally:
            if self.deadline is not None:
                self.deadline.clear()
            if signal is not None:
                signal.detach()
            await self._release()
            if owns_client:
                await client.aclose()
            self.latency_ms = (time.monotonic() - start) * 1000

        _logger.info(
            "Completion done in %.0f ms (finish=%s, usage=%s)",
            self.latency_ms, self.summary.finish_reason, self.summary.usage,
        )

    async def _release(self) -> None:
        if self.response is None or self.release_count:
            return
        self.release_count += 1
        try:
            await self.response.aclose()
        except Exception:
            _logger.warning("Failed to release response body", exc_info=True)

    # ------------------------------------------------------------------
    # Helpers for backends
    # ------------------------------------------------------------------

    def record(self, chunk: ChunkResult) -> None:
        """Fold a chunk's usage/finish reason into the summary."""
        self.summary.update(chunk)
