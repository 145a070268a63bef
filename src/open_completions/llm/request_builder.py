"""Request building for both backends.

``build_chat_request`` produces the fixed chat-completions request;
``build_template_request`` renders a profile's ``GenericSpec`` template.
Both return a ``PreparedRequest`` and never touch the network.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

import httpx

from open_completions.config import DEFAULT_BASE_URL, EndpointProfile
from open_completions.errors import INVALID_PROFILE, CompletionError
from open_completions.types import CompletionOptions, Message, RenderingContext
from open_completions.utils.http_helpers import join_url

from .template import render_template

_logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = "/chat/completions"


def _dumps(value: Any) -> str:
    """Compact JSON that keeps non-ASCII text as UTF-8."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


@dataclass
class PreparedRequest:
    """A concrete request: method, URL, headers and an optional body."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)
    content: bytes | None = None
    json_body: Any = None  # the structured body before encoding, for callers/logs
    stream: bool = True

    def to_httpx(self, client: httpx.AsyncClient) -> httpx.Request:
        return client.build_request(
            self.method,
            self.url,
            headers=self.headers,
            params=self.params or None,
            content=self.content,
        )


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def normalize_messages(messages: Iterable[Any] | None) -> list[dict[str, str]]:
    """Reduce messages to role/content pairs with string values."""
    normalized: list[dict[str, str]] = []
    for message in messages or []:
        if isinstance(message, Message):
            message = message.to_dict()
        if not isinstance(message, Mapping):
            continue
        role = message.get("role")
        content = message.get("content")
        normalized.append({
            "role": role if isinstance(role, str) else "user",
            "content": content if isinstance(content, str) else "",
        })
    return normalized


def resolve_stream(options: CompletionOptions, profile: EndpointProfile) -> bool:
    if isinstance(options.stream, bool):
        return options.stream
    if profile.request.stream is not None:
        return profile.request.stream
    return True


def _string_pairs(headers: Mapping[str, Any] | None) -> dict[str, str]:
    if not headers:
        return {}
    return {
        k: v for k, v in headers.items()
        if isinstance(k, str) and isinstance(v, str)
    }


def _apply_auth(headers: dict[str, str], scheme: str | None, token: str | None) -> None:
    """Set ``Authorization`` last so no other header source overrides it."""
    if not token:
        return
    for key in [k for k in headers if k.lower() == "authorization"]:
        del headers[key]
    headers["Authorization"] = f"{scheme or 'Bearer'} {token}"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ---------------------------------------------------------------------------
# Fixed shape: chat completions
# ---------------------------------------------------------------------------

def chat_completions_url(base_url: str | None) -> str:
    base = base_url.rstrip("/") if isinstance(base_url, str) else ""
    return f"{base or DEFAULT_BASE_URL}{CHAT_COMPLETIONS_PATH}"


def build_chat_body(
    messages: Iterable[Any] | None,
    options: CompletionOptions,
    profile: EndpointProfile,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": options.model or profile.default_model,
        "messages": normalize_messages(messages),
        "stream": resolve_stream(options, profile),
    }
    if _is_number(options.temperature):
        payload["temperature"] = options.temperature
    if _is_number(options.max_tokens):
        payload["max_tokens"] = options.max_tokens
    if isinstance(options.response_format, Mapping):
        payload["response_format"] = dict(options.response_format)
    return payload


def build_chat_request(
    messages: Iterable[Any] | None,
    options: CompletionOptions | Mapping[str, Any] | None,
    profile: EndpointProfile,
) -> PreparedRequest:
    opts = CompletionOptions.coerce(options)
    body = build_chat_body(messages, opts, profile)
    headers = {"Content-Type": "application/json"}
    headers.update(_string_pairs(profile.headers))
    headers.update(_string_pairs(opts.extra_headers))
    _apply_auth(headers, profile.auth.scheme, profile.auth.token)
    return PreparedRequest(
        method="POST",
        url=chat_completions_url(profile.base_url),
        headers=headers,
        content=_dumps(body).encode("utf-8"),
        json_body=body,
        stream=body["stream"],
    )


# ---------------------------------------------------------------------------
# Template driven
# ---------------------------------------------------------------------------

def build_rendering_context(
    messages: Iterable[Any] | None,
    options: CompletionOptions,
    profile: EndpointProfile,
) -> RenderingContext:
    return RenderingContext(
        model=options.model or profile.default_model,
        temperature=options.temperature,
        max_tokens=options.max_tokens,
        stream=resolve_stream(options, profile),
        messages=normalize_messages(messages),
        token=profile.auth.token,
        scheme=profile.auth.scheme,
    )


def _query_params(body: Mapping[str, Any]) -> dict[str, str]:
    params: dict[str, str] = {}
    for key, value in body.items():
        if value is None:
            continue
        params[str(key)] = value if isinstance(value, str) else _dumps(value)
    return params


def build_template_request(
    messages: Iterable[Any] | None,
    options: CompletionOptions | Mapping[str, Any] | None,
    profile: EndpointProfile,
) -> PreparedRequest:
    """Render the profile's request template into a concrete request.

    Raises ``CompletionError(code="invalid_profile")`` when the profile has
    no generic-backend block.
    """
    generic = profile.generic
    if generic is None:
        raise CompletionError(
            "Profile does not include generic-http configuration",
            INVALID_PROFILE,
        )
    opts = CompletionOptions.coerce(options)
    ctx = build_rendering_context(messages, opts, profile)

    headers = _string_pairs(profile.headers)
    headers.update(_string_pairs(generic.template.headers))
    headers.update(_string_pairs(opts.extra_headers))
    _apply_auth(headers, ctx.scheme, ctx.token)

    body = (
        render_template(generic.template.body, ctx)
        if generic.template.body is not None else None
    )
    method = (generic.method or "POST").upper()
    url = join_url(profile.base_url.rstrip("/"), "/" + generic.endpoint.lstrip("/"))

    request = PreparedRequest(
        method=method, url=url, headers=headers, json_body=body, stream=ctx.stream,
    )
    if method == "GET":
        if isinstance(body, Mapping):
            request.params = _query_params(body)
        elif body is not None:
            _logger.debug("Ignoring non-mapping body for GET %s", url)
        return request
    if isinstance(body, str):
        request.content = body.encode("utf-8")
    elif body is not None:
        request.content = _dumps(body).encode("utf-8")
        if not any(k.lower() == "content-type" for k in headers):
            headers["Content-Type"] = "application/json"
    return request
