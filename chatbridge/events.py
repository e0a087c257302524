"""Request telemetry for the chat-completions adapter.

The generator reports one ApiRequest per attempt, then either an
ApiResponse or an ApiError. Events go through a TelemetrySink: recording
is synchronous, never blocks and never raises. Subscribers run on a
single background worker, so a slow or broken subscriber cannot stall a
request. The REST layer tags events with the conversation they belong to
through ``session_scope``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import Counter
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

_current_session: ContextVar[str | None] = ContextVar("chatbridge_session", default=None)


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class ApiRequest:
    """A chat-completions POST is about to be sent."""

    model: str
    stream: bool
    messages: int
    max_tokens: int
    session_id: str | None = field(default_factory=_current_session.get)
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class ApiResponse:
    """A completion (or a whole stream) came back."""

    model: str
    stream: bool = False
    usage: dict[str, Any] | None = None
    chunks: int | None = None
    session_id: str | None = field(default_factory=_current_session.get)
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class ApiError:
    """An attempt failed. ``status`` is None for transport failures."""

    model: str
    error: str
    status: int | None = None
    session_id: str | None = field(default_factory=_current_session.get)
    timestamp: datetime = field(default_factory=_now)


TelemetryEvent = ApiRequest | ApiResponse | ApiError
Subscriber = Callable[[TelemetryEvent], Awaitable[None] | None]


@contextmanager
def session_scope(session_id: str) -> Iterator[None]:
    """Tag every event recorded inside the block with ``session_id``."""
    token = _current_session.set(session_id)
    try:
        yield
    finally:
        _current_session.reset(token)


class TelemetrySink:
    """Buffers events for subscribers and counts them by kind.

    Until start() is called (or after stop()), events simply wait in the
    buffer; stop() delivers whatever is left.
    """

    def __init__(self, max_buffered: int = 1000) -> None:
        self._subscribers: list[Subscriber] = []
        self._buffer: asyncio.Queue[TelemetryEvent] = asyncio.Queue(maxsize=max_buffered)
        self._worker: asyncio.Task | None = None
        self.counts: Counter[str] = Counter()
        self.dropped = 0

    def subscribe(self, subscriber: Subscriber) -> None:
        """Receive every event; sync and async callables are both accepted."""
        self._subscribers.append(subscriber)

    def record(self, event: TelemetryEvent) -> None:
        self.counts[type(event).__name__] += 1
        try:
            self._buffer.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Telemetry buffer full, dropped %s", type(event).__name__)

    @property
    def pending(self) -> int:
        return self._buffer.qsize()

    def drain_nowait(self) -> list[TelemetryEvent]:
        """Take every buffered event without delivering it."""
        events = []
        while not self._buffer.empty():
            events.append(self._buffer.get_nowait())
        return events

    async def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._deliver_forever(), name="telemetry")

    async def stop(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        for event in self.drain_nowait():
            await self._deliver(event)
        logger.debug("Telemetry stopped: %s recorded, %d dropped", dict(self.counts), self.dropped)

    async def _deliver_forever(self) -> None:
        while True:
            event = await self._buffer.get()
            await self._deliver(event)

    async def _deliver(self, event: TelemetryEvent) -> None:
        for subscriber in self._subscribers:
            try:
                result = subscriber(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Telemetry subscriber failed on %s", type(event).__name__)
