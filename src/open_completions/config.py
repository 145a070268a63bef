"""Endpoint profiles and YAML profile loading.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./open_completions.yaml``
  3. ``~/.config/open-completions/profiles.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Union

import yaml

_logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_ENDPOINT = "/v1/chat"

DRIVER_OPENAI = "openai-compatible"
DRIVER_GENERIC = "generic-http"

Framing = Literal["sse", "lines"]


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AuthSpec:
    """Resolved credentials for a profile."""

    scheme: str = "Bearer"  # "Bearer" | "Basic"
    token: str | None = None


@dataclass(frozen=True)
class RequestPolicy:
    """Per-request defaults: stream preference and total timeout."""

    stream: bool | None = None
    timeout_ms: int | None = None


@dataclass(frozen=True)
class UsagePaths:
    """Paths to token counters inside a response document."""

    prompt_tokens: str | None = None
    completion_tokens: str | None = None
    total_tokens: str | None = None

    def items(self) -> list[tuple[str, str | None]]:
        return [
            ("prompt_tokens", self.prompt_tokens),
            ("completion_tokens", self.completion_tokens),
            ("total_tokens", self.total_tokens),
        ]


@dataclass(frozen=True)
class BufferSchema:
    """One JSON document per response."""

    path_text: str = ""
    path_finish: str | None = None
    usage: UsagePaths | None = None
    mode: Literal["buffer"] = "buffer"


@dataclass(frozen=True)
class StreamSchema:
    """Live byte stream split into frames by ``framing``."""

    framing: Framing = "sse"
    path_delta: str | None = None
    path_finish: str | None = None
    usage: UsagePaths | None = None
    mode: Literal["stream"] = "stream"


ResponseSchema = Union[BufferSchema, StreamSchema]


@dataclass(frozen=True)
class RequestTemplate:
    """Declarative request: extra headers and a JSON-like body tree."""

    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None


@dataclass(frozen=True)
class GenericSpec:
    """Configuration block for the template-driven backend."""

    method: str = "POST"
    endpoint: str = DEFAULT_ENDPOINT
    template: RequestTemplate = field(default_factory=RequestTemplate)
    response_schema: ResponseSchema = field(default_factory=BufferSchema)


@dataclass(frozen=True)
class EndpointProfile:
    """A named, fully resolved backend endpoint."""

    name: str = "default"
    driver: str = DRIVER_OPENAI
    base_url: str = DEFAULT_BASE_URL
    default_model: str = DEFAULT_MODEL
    headers: dict[str, str] = field(default_factory=dict)
    auth: AuthSpec = field(default_factory=AuthSpec)
    request: RequestPolicy = field(default_factory=RequestPolicy)
    generic: GenericSpec | None = None

    @property
    def timeout_ms(self) -> int | None:
        timeout = self.request.timeout_ms
        if timeout is not None and timeout > 0:
            return timeout
        return None


@dataclass
class ProfilesConfig:
    """Top-level config: the active profile name plus named profiles."""

    active: str = "default"
    profiles: dict[str, EndpointProfile] = field(
        default_factory=lambda: {"default": EndpointProfile()}
    )

    @property
    def active_profile(self) -> EndpointProfile:
        if self.active in self.profiles:
            return self.profiles[self.active]
        return next(iter(self.profiles.values()), EndpointProfile())


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./open_completions.yaml"),
    Path.home() / ".config" / "open-completions" / "profiles.yaml",
]


def _pick(raw: dict[str, Any], *keys: str) -> Any:
    """Return the first present key (snake_case and camelCase spellings)."""
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def _str_map(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {
        k: v for k, v in raw.items()
        if isinstance(k, str) and isinstance(v, str)
    }


def _parse_usage(raw: Any) -> UsagePaths | None:
    if not isinstance(raw, dict):
        return None
    return UsagePaths(
        prompt_tokens=raw.get("prompt_tokens"),
        completion_tokens=raw.get("completion_tokens"),
        total_tokens=raw.get("total_tokens"),
    )


def parse_response_schema(raw: Any) -> ResponseSchema:
    """Build a ``BufferSchema`` or ``StreamSchema`` from a mapping."""
    if not isinstance(raw, dict):
        return BufferSchema()
    mode = raw.get("mode", "buffer")
    if mode == "stream":
        sub = raw.get("stream") or {}
        framing = sub.get("framing", "sse")
        if framing == "ndjson":
            framing = "lines"
        if framing not in ("sse", "lines"):
            _logger.warning("Unknown framing %r, falling back to sse", framing)
            framing = "sse"
        return StreamSchema(
            framing=framing,
            path_delta=_pick(sub, "path_delta", "pathDelta"),
            path_finish=_pick(sub, "path_finish", "pathFinish"),
            usage=_parse_usage(_pick(sub, "path_usage", "pathUsage", "usage")),
        )
    if mode != "buffer":
        _logger.warning("Unknown response mode %r, falling back to buffer", mode)
    sub = raw.get("buffer") or {}
    return BufferSchema(
        path_text=_pick(sub, "path_text", "pathText") or "",
        path_finish=_pick(sub, "path_finish", "pathFinish"),
        usage=_parse_usage(_pick(sub, "path_usage", "pathUsage", "usage")),
    )


def _parse_generic(raw: Any) -> GenericSpec | None:
    if not isinstance(raw, dict):
        return None
    tpl = _pick(raw, "request_template", "requestTemplate", "template") or {}
    method = str(raw.get("method") or "POST").upper()
    return GenericSpec(
        method=method,
        endpoint=_pick(raw, "endpoint", "path") or DEFAULT_ENDPOINT,
        template=RequestTemplate(
            headers=_str_map(tpl.get("headers")),
            body=tpl.get("body"),
        ),
        response_schema=parse_response_schema(
            _pick(raw, "response_schema", "responseSchema"),
        ),
    )


def _parse_auth(raw: Any) -> AuthSpec:
    if not isinstance(raw, dict):
        return AuthSpec()
    scheme = "Basic" if raw.get("scheme") == "Basic" else "Bearer"
    token = raw.get("token")
    env_name = raw.get("token_env")
    if not token and env_name:
        token = os.environ.get(env_name)
        if not token:
            _logger.warning("Environment variable %s is not set", env_name)
    if isinstance(token, str):
        token = token.strip() or None
    return AuthSpec(scheme=scheme, token=token)


def _parse_request(raw: Any) -> RequestPolicy:
    if not isinstance(raw, dict):
        return RequestPolicy()
    stream = raw.get("stream")
    timeout = _pick(raw, "timeout_ms", "timeoutMs")
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
        timeout = None
    elif timeout <= 0:
        timeout = None
    return RequestPolicy(
        stream=stream if isinstance(stream, bool) else None,
        timeout_ms=int(timeout) if timeout is not None else None,
    )


def parse_profile(name: str, raw: dict[str, Any]) -> EndpointProfile:
    """Build an ``EndpointProfile`` from one YAML/JSON mapping."""
    generic = _parse_generic(raw.get("generic"))
    driver = raw.get("driver") or (DRIVER_GENERIC if generic else DRIVER_OPENAI)
    base_url = _pick(raw, "base_url", "baseUrl")
    default_model = _pick(raw, "default_model", "defaultModel")
    return EndpointProfile(
        name=name,
        driver=driver,
        base_url=base_url.strip() if isinstance(base_url, str) and base_url.strip()
        else DEFAULT_BASE_URL,
        default_model=default_model.strip()
        if isinstance(default_model, str) and default_model.strip()
        else DEFAULT_MODEL,
        headers=_str_map(raw.get("headers")),
        auth=_parse_auth(raw.get("auth")),
        request=_parse_request(raw.get("request")),
        generic=generic,
    )


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_profiles(path: str | Path | None = None) -> ProfilesConfig:
    """Load endpoint profiles from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    ProfilesConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return ProfilesConfig()
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return ProfilesConfig()

    _logger.info("Loading profiles from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    profiles: dict[str, EndpointProfile] = {}
    for name, praw in (raw.get("profiles") or {}).items():
        if not isinstance(praw, dict):
            _logger.warning("Skipping malformed profile %r", name)
            continue
        profiles[name] = parse_profile(name, praw)

    if not profiles:
        profiles["default"] = EndpointProfile()

    active = raw.get("active")
    if active not in profiles:
        active = next(iter(profiles))
    return ProfilesConfig(active=active, profiles=profiles)
