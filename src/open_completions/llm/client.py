"""Driver dispatch: pick the backend named by ``profile.driver``."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

import httpx

from open_completions.cancellation import CancelSignal
from open_completions.config import DRIVER_GENERIC, DRIVER_OPENAI, EndpointProfile
from open_completions.errors import INVALID_PROFILE, CompletionError
from open_completions.types import CompletionOptions

from . import generic_http, openai_compatible
from .stream import CompletionStream

_logger = logging.getLogger(__name__)

_DRIVERS = {
    DRIVER_OPENAI: openai_compatible.send,
    DRIVER_GENERIC: generic_http.send,
}


def send(
    messages: Iterable[Any] | None,
    options: CompletionOptions | Mapping[str, Any] | None,
    profile: EndpointProfile,
    cancel: CancelSignal | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> CompletionStream:
    """Start a completion against *profile*.

    Returns a ``CompletionStream``; nothing touches the network until it is
    iterated.  ``cancel`` aborts the call when fired.
    """
    driver = _DRIVERS.get(profile.driver)
    if driver is None:
        raise CompletionError(f"Unknown driver: {profile.driver!r}", INVALID_PROFILE)
    _logger.debug("Dispatching profile %r to %s", profile.name, profile.driver)
    return driver(messages, options, profile, cancel, client=client)
