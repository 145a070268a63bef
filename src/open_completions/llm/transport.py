"""Transport: issue one request and read its body under a cancel signal.

Every await on the network goes through ``race()`` so that a caller abort
or the deadline interrupts it.  Failures are translated into
``CompletionError`` here; nothing in this module retries.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator

import httpx

from open_completions.cancellation import (
    CancelSignal,
    CompositeSignal,
    DeadlineSignal,
    SignalCancelled,
    race,
)
from open_completions.errors import (
    NETWORK_ERROR,
    STREAM_UNSUPPORTED,
    CompletionError,
    aborted_error,
    timeout_error,
)
from open_completions.utils.http_helpers import headers_to_dict, redact_headers

from .request_builder import PreparedRequest

_logger = logging.getLogger(__name__)

# The per-profile deadline bounds the whole call; httpx only guards connect.
DEFAULT_HTTP_TIMEOUT = httpx.Timeout(None, connect=30.0)

_NETWORK_FALLBACK = "Failed to reach completions endpoint"


def cancellation_error(
    signal: CancelSignal | None, deadline: DeadlineSignal | None,
) -> CompletionError:
    """``timeout`` when the deadline fired first, otherwise ``aborted``."""
    fired = signal.fired_by if isinstance(signal, CompositeSignal) else signal
    if deadline is not None and fired is deadline:
        return timeout_error()
    return aborted_error()


def network_error(exc: BaseException) -> CompletionError:
    message = str(exc).strip() or _NETWORK_FALLBACK
    return CompletionError(message, NETWORK_ERROR)


async def issue_request(
    client: httpx.AsyncClient,
    prepared: PreparedRequest,
    signal: CancelSignal | None,
    deadline: DeadlineSignal | None,
) -> httpx.Response:
    """Send *prepared* and return the response once headers arrive."""
    request = prepared.to_httpx(client)
    _logger.debug(
        "%s %s headers=%s", request.method, request.url,
        redact_headers(prepared.headers),
    )
    try:
        response = await race(client.send(request, stream=True), signal)
    except SignalCancelled as exc:
        raise cancellation_error(signal, deadline) from exc
    except httpx.HTTPError as exc:
        raise network_error(exc) from exc
    _logger.debug(
        "Response %d headers=%s", response.status_code,
        redact_headers(headers_to_dict(response.headers)),
    )
    return response


async def read_error_text(
    response: httpx.Response, signal: CancelSignal | None,
) -> str:
    """Best-effort body text of a failed response; never raises."""
    try:
        await race(response.aread(), signal)
        return response.text
    except Exception as exc:
        _logger.warning("Could not read error body (status %d): %s",
                        response.status_code, exc)
        return ""


async def read_body(
    response: httpx.Response,
    signal: CancelSignal | None,
    deadline: DeadlineSignal | None,
) -> bytes:
    """Read the whole body (buffer mode)."""
    try:
        return await race(response.aread(), signal)
    except SignalCancelled as exc:
        raise cancellation_error(signal, deadline) from exc
    except httpx.HTTPError as exc:
        raise network_error(exc) from exc


async def _next_chunk(chunks: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


async def iter_body(
    response: httpx.Response,
    signal: CancelSignal | None,
    deadline: DeadlineSignal | None,
) -> AsyncIterator[bytes]:
    """Yield body reads in arrival order until the transport is done."""
    if not isinstance(response.stream, httpx.AsyncByteStream):
        raise CompletionError(
            "Upstream response does not support streaming", STREAM_UNSUPPORTED,
        )
    chunks = response.aiter_bytes()
    try:
        while True:
            try:
                data = await race(_next_chunk(chunks), signal)
            except SignalCancelled as exc:
                raise cancellation_error(signal, deadline) from exc
            except httpx.HTTPError as exc:
                raise network_error(exc) from exc
            if data is None:
                return
            if data:
                yield data
    finally:
        await chunks.aclose()
