"""Tests for the template-driven HTTP backend and driver dispatch."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from open_completions.cancellation import CancelSignal
from open_completions.config import (
    BufferSchema,
    EndpointProfile,
    GenericSpec,
    RequestPolicy,
    RequestTemplate,
    StreamSchema,
    UsagePaths,
)
from open_completions.errors import CompletionError
from open_completions.llm import (
    ChatCompletionStream,
    TemplateCompletionStream,
    generic_http,
    send,
)
from open_completions.llm.stream import CLOSED, CLOSED_WITH_ERROR
from open_completions.llm.transport import iter_body
from stream_helpers import MockBackend, drain, sse

MESSAGES = [{"role": "user", "content": "hi"}]

CHAT_STREAM = StreamSchema(framing="sse", path_delta="choices[0].delta.content",
                           path_finish="choices[0].finish_reason")


def _profile(
    schema=None,
    body=None,
    method="POST",
    endpoint="/v1/chat",
    timeout_ms=None,
) -> EndpointProfile:
    return EndpointProfile(
        name="gen",
        driver="generic-http",
        base_url="http://test",
        default_model="gpt",
        request=RequestPolicy(timeout_ms=timeout_ms),
        generic=GenericSpec(
            method=method,
            endpoint=endpoint,
            template=RequestTemplate(body=body),
            response_schema=schema or BufferSchema(path_text="output.text"),
        ),
    )


async def _run(backend: MockBackend, profile: EndpointProfile, options=None,
               cancel=None):
    async with backend.client() as client:
        stream = generic_http.send(MESSAGES, options, profile, cancel, client=client)
        chunks = await drain(stream)
    return stream, chunks


async def _hang(request):
    await asyncio.sleep(3600)


# ---------------------------------------------------------------------------
# Response modes
# ---------------------------------------------------------------------------

class TestBufferMode:
    @pytest.mark.asyncio
    async def test_single_document(self):
        backend = MockBackend(['{"output":{"text":"hi"}}'],
                              content_type="application/json")
        stream, chunks = await _run(backend, _profile())
        assert [c.delta for c in chunks] == ["hi"]
        assert stream.summary.usage is None
        assert stream.summary.finish_reason is None
        assert stream.state == CLOSED

    @pytest.mark.asyncio
    async def test_usage_and_finish_in_summary(self):
        schema = BufferSchema(
            path_text="out", path_finish="why",
            usage=UsagePaths(total_tokens="meta.tokens"),
        )
        backend = MockBackend(['{"out": "x", "why": "length", "meta": {"tokens": 12}}'])
        stream, chunks = await _run(backend, _profile(schema))
        assert [c.delta for c in chunks] == ["x"]
        assert stream.summary.finish_reason == "length"
        assert stream.summary.usage == {"total_tokens": 12}

    @pytest.mark.asyncio
    async def test_empty_text_yields_nothing(self):
        backend = MockBackend(['{"output": {}}'])
        _, chunks = await _run(backend, _profile())
        assert chunks == []

    @pytest.mark.asyncio
    async def test_body_split_across_reads(self):
        backend = MockBackend(['{"output":', '{"text":"hé', 'llo"}}'])
        _, chunks = await _run(backend, _profile())
        assert [c.delta for c in chunks] == ["héllo"]

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        backend = MockBackend(["not json"])
        with pytest.raises(CompletionError) as exc_info:
            await _run(backend, _profile())
        assert exc_info.value.code == "invalid_json"
        assert exc_info.value.message == "Failed to parse buffer response as JSON"


class TestStreamMode:
    @pytest.mark.asyncio
    async def test_sse_until_done(self):
        backend = MockBackend([
            'data: {"choices":[{"delta":{"content":"He"}}]}\n\n',
            'data: {"choices":[{"delta":{"content":"llo"}}]}\n\ndata: [DONE]\n\n',
        ])
        stream, chunks = await _run(backend, _profile(CHAT_STREAM))
        assert [c.delta for c in chunks] == ["He", "llo"]
        assert all(c.usage is None and c.finish_reason is None for c in chunks)
        assert stream.state == CLOSED

    @pytest.mark.asyncio
    async def test_done_with_hanging_body(self):
        backend = MockBackend([sse("[DONE]")], hang=True)
        stream, chunks = await _run(backend, _profile(CHAT_STREAM))
        assert chunks == []
        assert backend.body.close_count == 1

    @pytest.mark.asyncio
    async def test_finish_and_usage_only_in_summary(self):
        schema = StreamSchema(
            framing="sse", path_delta="t", path_finish="stop",
            usage=UsagePaths(completion_tokens="n"),
        )
        backend = MockBackend([sse({"t": "a"}), sse({"stop": "end", "n": 3})])
        stream, chunks = await _run(backend, _profile(schema))
        assert [c.delta for c in chunks] == ["a"]
        assert stream.summary.finish_reason == "end"
        assert stream.summary.usage == {"completion_tokens": 3}

    @pytest.mark.asyncio
    async def test_lines_plain_text(self):
        schema = StreamSchema(framing="lines", path_delta="message.content")
        backend = MockBackend(["plain text\n"], content_type="text/plain")
        _, chunks = await _run(backend, _profile(schema))
        assert [c.delta for c in chunks] == ["plain text"]

    @pytest.mark.asyncio
    async def test_lines_ndjson(self):
        schema = StreamSchema(framing="lines", path_delta="message.content")
        backend = MockBackend([
            '{"message":{"content":"a"}}\n{"mess',
            'age":{"content":"b"}}\n\n{"message":{"content":"c"}}',
        ], content_type="application/x-ndjson")
        _, chunks = await _run(backend, _profile(schema))
        assert [c.delta for c in chunks] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_sse_non_json_dropped(self):
        backend = MockBackend(["data: hello\n\n", sse({"choices": [
            {"delta": {"content": "x"}}]})])
        _, chunks = await _run(backend, _profile(CHAT_STREAM))
        assert [c.delta for c in chunks] == ["x"]


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class TestRequest:
    @pytest.mark.asyncio
    async def test_get_with_query(self):
        profile = _profile(body={"q": "{{model}}"}, method="GET")
        backend = MockBackend(['{"output":{"text":"ok"}}'])
        await _run(backend, profile)
        request = backend.requests[0]
        assert request.method == "GET"
        assert str(request.url) == "http://test/v1/chat?q=gpt"
        assert request.content == b""

    @pytest.mark.asyncio
    async def test_post_renders_template(self):
        profile = _profile(body={"model": "{{model}}", "input": "{{messages[]}}",
                                 "stream": "{{stream}}"})
        backend = MockBackend(['{"output":{"text":"ok"}}'])
        await _run(backend, profile, {"model": "other", "stream": False})
        assert json.loads(backend.requests[0].content) == {
            "model": "other", "input": MESSAGES, "stream": False,
        }

    def test_missing_generic_block_fails_eagerly(self):
        with pytest.raises(CompletionError) as exc_info:
            generic_http.send(MESSAGES, None, EndpointProfile(driver="generic-http"))
        assert exc_info.value.code == "invalid_profile"


# ---------------------------------------------------------------------------
# Failures and cancellation
# ---------------------------------------------------------------------------

class TestFailures:
    @pytest.mark.asyncio
    async def test_status_error_uses_body_text(self):
        backend = MockBackend(["quota exceeded"], status_code=429,
                              content_type="text/plain")
        with pytest.raises(CompletionError) as exc_info:
            await _run(backend, _profile())
        err = exc_info.value
        assert err.code == "http_429"
        assert err.status == 429
        assert err.message == "quota exceeded"

    @pytest.mark.asyncio
    async def test_status_error_falls_back_to_reason(self):
        backend = MockBackend([], status_code=502)
        with pytest.raises(CompletionError) as exc_info:
            await _run(backend, _profile())
        assert exc_info.value.code == "http_502"
        assert exc_info.value.message == "Bad Gateway"

    @pytest.mark.asyncio
    async def test_network_error(self):
        def refuse(request):
            raise httpx.ConnectError("", request=request)

        backend = MockBackend(respond=refuse)
        with pytest.raises(CompletionError) as exc_info:
            await _run(backend, _profile())
        assert exc_info.value.code == "network_error"
        assert exc_info.value.message == "Failed to reach completions endpoint"

    @pytest.mark.asyncio
    async def test_timeout_before_response(self):
        backend = MockBackend(respond=_hang)
        loop = asyncio.get_running_loop()
        started = loop.time()
        async with backend.client() as client:
            stream = generic_http.send(MESSAGES, None, _profile(timeout_ms=5),
                                       client=client)
            with pytest.raises(CompletionError) as exc_info:
                await drain(stream)
        assert exc_info.value.code == "timeout"
        assert loop.time() - started < 2
        assert stream.deadline.clear_count == 1
        assert stream.release_count == 0
        assert stream.state == CLOSED_WITH_ERROR

    @pytest.mark.asyncio
    async def test_timeout_mid_stream(self):
        schema = StreamSchema(framing="lines")
        backend = MockBackend(["first\n"], hang=True)
        async with backend.client() as client:
            stream = generic_http.send(MESSAGES, None, _profile(schema, timeout_ms=30),
                                       client=client)
            seen = []
            with pytest.raises(CompletionError) as exc_info:
                async for chunk in stream:
                    seen.append(chunk.delta)
        assert seen == ["first"]
        assert exc_info.value.code == "timeout"
        assert backend.body.close_count == 1
        assert stream.release_count == 1

    @pytest.mark.asyncio
    async def test_pre_cancelled_never_sends(self):
        cancel = CancelSignal()
        cancel.cancel()
        backend = MockBackend(['{"output":{"text":"hi"}}'])
        with pytest.raises(CompletionError) as exc_info:
            await _run(backend, _profile(timeout_ms=1000), cancel=cancel)
        assert exc_info.value.code == "aborted"
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_caller_abort_wins_over_longer_deadline(self):
        cancel = CancelSignal()
        backend = MockBackend(respond=_hang)
        asyncio.get_running_loop().call_later(0.01, cancel.cancel)
        with pytest.raises(CompletionError) as exc_info:
            await _run(backend, _profile(timeout_ms=5000), cancel=cancel)
        assert exc_info.value.code == "aborted"

    @pytest.mark.asyncio
    async def test_consumer_stops_early(self):
        schema = StreamSchema(framing="lines")
        backend = MockBackend(["a\n", "b\n"], hang=True)
        async with backend.client() as client:
            stream = generic_http.send(MESSAGES, None, _profile(schema, timeout_ms=5000),
                                       client=client)
            async for chunk in stream:
                assert chunk.delta == "a"
                break
            await stream.aclose()
        assert stream.state == CLOSED
        assert stream.release_count == 1
        assert backend.body.close_count == 1
        assert stream.deadline.clear_count == 1

    @pytest.mark.asyncio
    async def test_completed_stream_releases_resources(self):
        backend = MockBackend(['{"output":{"text":"hi"}}'])
        stream, _ = await _run(backend, _profile(timeout_ms=5000))
        assert stream.state == CLOSED
        assert stream.release_count == 1
        assert backend.body.close_count == 1
        assert stream.deadline.clear_count == 1

    @pytest.mark.parametrize("chunks,status_code,code", [
        (["not json"], 200, "invalid_json"),
        (["quota exceeded"], 429, "http_429"),
    ])
    @pytest.mark.asyncio
    async def test_failed_stream_releases_resources(self, chunks, status_code, code):
        backend = MockBackend(chunks, status_code=status_code)
        async with backend.client() as client:
            stream = generic_http.send(MESSAGES, None, _profile(timeout_ms=5000),
                                       client=client)
            with pytest.raises(CompletionError) as exc_info:
                await drain(stream)
        assert exc_info.value.code == code
        assert stream.state == CLOSED_WITH_ERROR
        assert stream.release_count == 1
        assert backend.body.close_count == 1
        assert stream.deadline.clear_count == 1

    @pytest.mark.asyncio
    async def test_iterates_once(self):
        backend = MockBackend(['{"output":{"text":"hi"}}'])
        async with backend.client() as client:
            stream = generic_http.send(MESSAGES, None, _profile(), client=client)
            text, summary = await stream.collect()
            assert text == "hi"
            with pytest.raises(RuntimeError):
                stream.__aiter__()


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

class TestDispatch:
    def test_generic_driver(self):
        assert isinstance(send(MESSAGES, None, _profile()), TemplateCompletionStream)

    def test_openai_driver(self):
        assert isinstance(send(MESSAGES, None, EndpointProfile()), ChatCompletionStream)

    def test_unknown_driver(self):
        with pytest.raises(CompletionError) as exc_info:
            send(MESSAGES, None, EndpointProfile(driver="carrier-pigeon"))
        assert exc_info.value.code == "invalid_profile"

    @pytest.mark.asyncio
    async def test_nothing_sent_until_iterated(self):
        backend = MockBackend(['{"output":{"text":"hi"}}'])
        async with backend.client() as client:
            stream = send(MESSAGES, None, _profile(), client=client)
            assert backend.requests == []
            assert [c.delta async for c in stream] == ["hi"]
        assert len(backend.requests) == 1


class _SyncOnlyStream(httpx.SyncByteStream):
    def __iter__(self):
        yield b"data"


class TestTransport:
    @pytest.mark.asyncio
    async def test_body_without_async_stream(self):
        response = httpx.Response(200, stream=_SyncOnlyStream())
        with pytest.raises(CompletionError) as exc_info:
            async for _ in iter_body(response, None, None):
                pass
        assert exc_info.value.code == "stream_unsupported"
