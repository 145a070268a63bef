"""Cooperative cancellation signals for completion calls.

A ``CancelSignal`` is a one-shot flag backed by ``asyncio.Event``.  Callers
hand one to ``send()`` to abort a call; the call itself owns a
``DeadlineSignal`` that fires after the profile's timeout.  ``any_of()``
composes any number of signals into one, and ``race()`` runs a single I/O
await against a signal, cancelling the I/O when the signal fires first.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

_logger = logging.getLogger(__name__)

T = TypeVar("T")

Callback = Callable[["CancelSignal"], None]


class SignalCancelled(Exception):
    """Raised by ``race()`` when the signal fires before the awaitable."""

    def __init__(self, signal: CancelSignal) -> None:
        super().__init__(signal.reason or "cancelled")
        self.signal = signal


class CancelSignal:
    """One-shot cancellation flag.

    ``cancel()`` is idempotent; callbacks registered with ``on_cancel()``
    run synchronously, once, in registration order.
    """

    def __init__(self, name: str = "caller") -> None:
        self.name = name
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callback] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self._reason = reason or f"{self.name} cancelled"
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb(self)
            except Exception:
                _logger.exception("Cancel callback %r raised", cb)

    def on_cancel(self, callback: Callback) -> Callable[[], None]:
        """Register *callback*; returns a function that unregisters it."""
        if self.cancelled:
            callback(self)
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return _remove

    async def wait(self) -> None:
        await self._event.wait()

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(name={self.name!r}, "
            f"cancelled={self.cancelled}, reason={self._reason!r})"
        )


class DeadlineSignal(CancelSignal):
    """Fires once, ``timeout_ms`` after ``start()``; never restarted."""

    def __init__(self, timeout_ms: int, name: str = "deadline") -> None:
        super().__init__(name)
        self.timeout_ms = timeout_ms
        self._handle: asyncio.TimerHandle | None = None
        self.clear_count = 0

    def start(self) -> DeadlineSignal:
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(
            self.timeout_ms / 1000, self.cancel, "timeout",
        )
        return self

    @property
    def active(self) -> bool:
        return self._handle is not None and not self._handle.cancelled()

    def clear(self) -> None:
        """Stop the timer.  Safe to call after it fired."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
            self.clear_count += 1


class CompositeSignal(CancelSignal):
    """Fires when the first of its sources fires.

    ``fired_by`` records which source fired first so callers can tell a
    deadline from a caller abort.
    """

    def __init__(self, sources: list[CancelSignal]) -> None:
        super().__init__("any")
        self.sources = list(sources)
        self.fired_by: CancelSignal | None = None
        self._detachers = [s.on_cancel(self._source_fired) for s in self.sources]

    def _source_fired(self, source: CancelSignal) -> None:
        if self.fired_by is None:
            self.fired_by = source
        self.cancel(source.reason)

    def detach(self) -> None:
        """Unregister from the sources (they may outlive this call)."""
        for remove in self._detachers:
            remove()
        self._detachers = []


def any_of(*signals: CancelSignal | None) -> CompositeSignal | None:
    """Combine signals into one that fires on the first of them.

    ``None`` entries are ignored; returns ``None`` when nothing is left.
    """
    present = [s for s in signals if s is not None]
    if not present:
        return None
    return CompositeSignal(present)


async def race(awaitable: Awaitable[T], signal: CancelSignal | None) -> T:
    """Await *awaitable* unless *signal* fires first.

    When the signal wins, the awaitable's task is cancelled and awaited
    before ``SignalCancelled`` is raised, so no I/O is left in flight.
    """
    if signal is None:
        return await awaitable
    if signal.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise SignalCancelled(signal)

    task: asyncio.Future[Any] = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(signal.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        waiter.cancel()
        # let the I/O unwind before the caller closes what it was reading
        await asyncio.wait({task})
        raise
    finally:
        if not waiter.done():
            waiter.cancel()

    if task.done():
        return task.result()

    task.cancel()
    await asyncio.wait({task})
    if not task.cancelled() and task.exception() is not None:
        _logger.debug("Cancelled I/O raised while unwinding: %r", task.exception())
    raise SignalCancelled(signal)
