"""
Event Bus
=========

In-process publish/subscribe channel with a closed set of typed events.

Every event is a frozen dataclass carrying a timestamp and a correlation id
(task or stream id). `name` is the wire name used by JSONL logs and string
subscriptions, e.g. "stream:update" or "extraction:complete".

Usage:
    bus = EventBus()
    bus.subscribe(StreamUpdated, lambda event: print(event.progress))
    bus.subscribe("timeout", on_timeout)
    bus.subscribe("*", run_logger.handle)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, ClassVar

from models import utc_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class Event:
    correlation_id: str | None = None
    timestamp: str = field(default_factory=utc_iso)

    wire_name: ClassVar[str] = "event"

    @property
    def name(self) -> str:
        return self.wire_name

    def payload(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("timestamp", None)
        data.pop("correlation_id", None)
        return data


@dataclass(frozen=True, kw_only=True)
class PhaseStarted(Event):
    phase: str
    wire_name: ClassVar[str] = "phase:start"


@dataclass(frozen=True, kw_only=True)
class PhaseCompleted(Event):
    phase: str
    wire_name: ClassVar[str] = "phase:complete"


@dataclass(frozen=True, kw_only=True)
class OperationStarted(Event):
    operation: str
    module: str
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return f"{self.operation}:start"


@dataclass(frozen=True, kw_only=True)
class OperationCompleted(Event):
    operation: str
    module: str
    from_cache: bool = False
    result: Any = None

    @property
    def name(self) -> str:
        return f"{self.operation}:complete"


@dataclass(frozen=True, kw_only=True)
class OperationFailed(Event):
    operation: str
    module: str
    kind: str
    message: str
    phase: str | None = None

    @property
    def name(self) -> str:
        return f"{self.operation}:error"


@dataclass(frozen=True, kw_only=True)
class StreamUpdated(Event):
    stream_id: str
    operation: str
    progress: int
    snapshot: Any = None
    text_length: int = 0
    wire_name: ClassVar[str] = "stream:update"


@dataclass(frozen=True, kw_only=True)
class StreamCompleted(Event):
    stream_id: str
    operation: str
    result: Any = None
    wire_name: ClassVar[str] = "stream:complete"


@dataclass(frozen=True, kw_only=True)
class StreamFailed(Event):
    stream_id: str
    operation: str
    kind: str
    message: str
    progress: int = 0
    wire_name: ClassVar[str] = "stream:error"


@dataclass(frozen=True, kw_only=True)
class TaskTimedOut(Event):
    task_id: str
    task_type: str
    elapsed_seconds: float
    wire_name: ClassVar[str] = "timeout"


@dataclass(frozen=True, kw_only=True)
class TaskCancelled(Event):
    task_id: str
    task_type: str
    wire_name: ClassVar[str] = "task:cancelled"


@dataclass(frozen=True, kw_only=True)
class ProgressUpdated(Event):
    phase: str
    status: str
    percentage: int
    wire_name: ClassVar[str] = "progress"


@dataclass(frozen=True, kw_only=True)
class LogRecorded(Event):
    level: str
    message: str
    source: str
    wire_name: ClassVar[str] = "log"


Handler = Callable[[Event], Any]
Selector = type[Event] | str


class EventBus:
    """Synchronous fan-out with optional coroutine handlers.

    Handlers run in subscription order inside `publish`, so events from one
    producer reach each handler in the order they were published. A handler
    returning a coroutine is scheduled as a task on the running loop; use
    `drain()` to wait for those.
    """

    def __init__(self) -> None:
        self._subscriptions: list[tuple[Selector, Handler]] = []
        self._pending: set[asyncio.Task[Any]] = set()

    def subscribe(self, selector: Selector, handler: Handler) -> Callable[[], None]:
        """Register a handler. Returns a callable that unsubscribes it."""
        entry = (selector, handler)
        self._subscriptions.append(entry)

        def _unsubscribe() -> None:
            if entry in self._subscriptions:
                self._subscriptions.remove(entry)

        return _unsubscribe

    def unsubscribe(self, selector: Selector, handler: Handler) -> None:
        self._subscriptions = [
            entry for entry in self._subscriptions if entry != (selector, handler)
        ]

    def publish(self, event: Event) -> None:
        for selector, handler in list(self._subscriptions):
            if not _matches(selector, event):
                continue
            try:
                outcome = handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", event.name)
                continue
            if inspect.isawaitable(outcome):
                self._schedule(outcome, event)

    async def drain(self) -> None:
        """Wait until every scheduled coroutine handler has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _schedule(self, awaitable: Any, event: Event) -> None:
        task = asyncio.ensure_future(awaitable)
        self._pending.add(task)

        def _done(finished: asyncio.Task[Any]) -> None:
            self._pending.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                logger.error(
                    "Async handler for %s failed: %s", event.name, exc, exc_info=exc
                )

        task.add_done_callback(_done)


def _matches(selector: Selector, event: Event) -> bool:
    if isinstance(selector, str):
        return selector == "*" or selector == event.name
    return isinstance(event, selector)
