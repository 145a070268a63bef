"""Typed errors surfaced by completion calls.

Every failure reaches the caller as a ``CompletionError`` whose ``code`` is
one of:

  timeout           - the per-request deadline fired
  aborted           - the caller's cancel signal fired
  network_error     - the request could not be issued
  http_<status>     - non-2xx from a template-driven backend
  upstream_error    - 5xx from an openai-compatible backend
  bad_request       - other non-2xx from an openai-compatible backend
  invalid_json      - a buffered response body was not JSON
  invalid_profile   - the profile lacks the configuration the driver needs
  stream_unsupported - the response has no body stream to read
"""

from __future__ import annotations

TIMEOUT = "timeout"
ABORTED = "aborted"
NETWORK_ERROR = "network_error"
UPSTREAM_ERROR = "upstream_error"
BAD_REQUEST = "bad_request"
INVALID_JSON = "invalid_json"
INVALID_PROFILE = "invalid_profile"
STREAM_UNSUPPORTED = "stream_unsupported"

_TRANSPORT_CODES = frozenset({TIMEOUT, ABORTED, NETWORK_ERROR})


def http_code(status: int) -> str:
    """Error code for a non-2xx status from a template-driven backend."""
    return f"http_{status}"


class CompletionError(Exception):
    """A completion call failed; ``code`` says how."""

    def __init__(self, message: str, code: str, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status

    @property
    def is_transport(self) -> bool:
        return self.code in _TRANSPORT_CODES

    @property
    def is_upstream(self) -> bool:
        return self.status is not None

    def __repr__(self) -> str:
        return (
            f"CompletionError(code={self.code!r}, status={self.status!r}, "
            f"message={self.message!r})"
        )


def timeout_error() -> CompletionError:
    return CompletionError("Completion request timed out", TIMEOUT)


def aborted_error() -> CompletionError:
    return CompletionError("Request aborted", ABORTED)
