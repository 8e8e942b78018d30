"""Asyncio event bus: listener registry plus a FIFO dispatch queue.

Emission and dispatch are decoupled. ``emit`` appends to a bounded queue and
a single drain loop pops one event at a time, runs every subscriber for that
event concurrently and waits for all of them before moving on. Because the
loop awaits each event to completion, work triggered by consecutive events
never interleaves at the queue level.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal, TypeAlias

from panelsync.errors import ErrorTracker, SubscriberFailure, ValidationError
from panelsync.logger import logger
from panelsync.utils import create_background_task, maybe_await

# --- Event types ---


class EventType(StrEnum):
    SYSTEM_READY = "system:ready"
    SYSTEM_ERROR = "system:error"

    DATA_CHANGED = "data:changed"
    DATA_DELETED = "data:deleted"

    CHAT_CHANGED = "chat:changed"
    CONFIG_CHANGED = "config:changed"

    MESSAGE_RECEIVED = "message:received"
    MESSAGE_SENT = "message:sent"
    MESSAGE_EDITED = "message:edited"
    MESSAGE_DELETED = "message:deleted"
    MESSAGE_REGENERATED = "message:regenerated"

    # Diagnostics
    PARSE_FAILED = "parse-failed"
    DATA_STORED = "data-stored"


@dataclass(frozen=True)
class Event:
    type: str
    payload: Any = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


Listener: TypeAlias = Callable[[Event], Any]
OverflowPolicy: TypeAlias = Literal["drop_oldest", "drop_newest"]


def _validate_type(event_type: object) -> str:
    if not isinstance(event_type, str) or not event_type.strip():
        raise ValidationError(f"Event type must be a non-empty string, got {event_type!r}")
    return str(event_type)


class ListenerRegistry:
    """Maps event type → subscribers, in registration order."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    def subscribe(self, event_type: str, listener: Listener) -> Callable[[], None]:
        """Subscribe to an event type. Returns an unsubscribe function."""
        key = _validate_type(event_type)
        if not callable(listener):
            raise ValidationError(f"Listener must be callable, got {listener!r}")
        self._listeners.setdefault(key, []).append(listener)

        def _unsubscribe() -> None:
            self.unsubscribe(key, listener)

        return _unsubscribe

    def unsubscribe(self, event_type: str, listener: Listener) -> bool:
        listeners = self._listeners.get(event_type)
        if not listeners:
            return False
        try:
            listeners.remove(listener)
        except ValueError:
            return False
        if not listeners:
            del self._listeners[event_type]
        return True

    def once(self, event_type: str, listener: Listener) -> Callable[[], None]:
        """Subscribe *listener* for a single invocation."""
        if not callable(listener):
            raise ValidationError(f"Listener must be callable, got {listener!r}")
        fired = False

        def _once(event: Event) -> Any:
            nonlocal fired
            if fired:
                return None
            fired = True
            self.unsubscribe(event_type, _once)
            return listener(event)

        return self.subscribe(event_type, _once)

    def snapshot(self, event_type: str) -> tuple[Listener, ...]:
        return tuple(self._listeners.get(event_type, ()))

    def count(self, event_type: str | None = None) -> int:
        if event_type is not None:
            return len(self._listeners.get(event_type, ()))
        return sum(len(v) for v in self._listeners.values())

    def clear(self) -> None:
        self._listeners.clear()


@dataclass
class BusStats:
    emitted: int = 0
    processed: int = 0
    errors: int = 0
    dropped: int = 0


class EventBus:
    """Queued async event dispatcher with isolated subscriber failures."""

    def __init__(
        self,
        *,
        drain_interval: float = 0.01,
        max_queue_size: int = 1000,
        overflow: OverflowPolicy = "drop_oldest",
        wait_timeout: float = 5.0,
        errors: ErrorTracker | None = None,
    ) -> None:
        self.registry = ListenerRegistry()
        self.errors = errors if errors is not None else ErrorTracker()
        self._drain_interval = drain_interval
        self._max_queue_size = max(1, max_queue_size)
        self._overflow = overflow
        self._wait_timeout = wait_timeout
        self._queue: deque[Event] = deque()
        self._draining = False
        self._stopping = False
        self._task: asyncio.Task[None] | None = None
        self._stats = BusStats()

    @classmethod
    def from_settings(cls, errors: ErrorTracker | None = None) -> EventBus:
        from panelsync.config import get_settings

        s = get_settings()
        return cls(
            drain_interval=s.bus.drain_interval,
            max_queue_size=s.bus.max_queue_size,
            overflow=s.bus.overflow,
            wait_timeout=s.bus.wait_timeout,
            errors=errors,
        )

    # --- Subscription ---

    def subscribe(self, event_type: str, listener: Listener) -> Callable[[], None]:
        return self.registry.subscribe(event_type, listener)

    def unsubscribe(self, event_type: str, listener: Listener) -> bool:
        return self.registry.unsubscribe(event_type, listener)

    def once(self, event_type: str, listener: Listener) -> Callable[[], None]:
        return self.registry.once(event_type, listener)

    async def wait_for(self, event_type: str, timeout: float | None = None) -> Event:
        """Wait for the next *event_type* event.

        Raises TimeoutError if nothing arrives within *timeout* seconds. The
        temporary subscription is removed either way.
        """
        if timeout is None:
            timeout = self._wait_timeout
        future: asyncio.Future[Event] = asyncio.get_running_loop().create_future()

        def _resolve(event: Event) -> None:
            if not future.done():
                future.set_result(event)

        unsubscribe = self.once(event_type, _resolve)
        try:
            return await asyncio.wait_for(future, timeout)
        except TimeoutError:
            raise TimeoutError(f"Timed out waiting for {event_type} after {timeout}s") from None
        finally:
            unsubscribe()

    # --- Emission ---

    async def emit(
        self,
        event_type: str,
        payload: Any = None,
        *,
        synchronous: bool = False,
    ) -> Event:
        """Queue an event, or dispatch it right away when *synchronous*."""
        event = self._make_event(event_type, payload)
        if synchronous:
            await self._dispatch(event)
        else:
            self._enqueue(event)
        return event

    def emit_nowait(self, event_type: str, payload: Any = None) -> Event:
        """Queue an event from synchronous code."""
        event = self._make_event(event_type, payload)
        self._enqueue(event)
        return event

    def _make_event(self, event_type: str, payload: Any) -> Event:
        event = Event(type=_validate_type(event_type), payload=payload)
        self._stats.emitted += 1
        return event

    def _enqueue(self, event: Event) -> None:
        if len(self._queue) >= self._max_queue_size:
            self._stats.dropped += 1
            if self._overflow == "drop_newest":
                logger.warning("Event queue full, dropping event", event_type=event.type)
                return
            dropped = self._queue.popleft()
            logger.warning("Event queue full, dropping oldest", event_type=dropped.type)
        self._queue.append(event)

    # --- Dispatch ---

    async def drain(self) -> int:
        """Dispatch queued events in FIFO order until the queue is empty.

        Returns the number of events dispatched. A drain already in progress
        makes this a no-op.
        """
        if self._draining:
            return 0
        self._draining = True
        dispatched = 0
        try:
            while self._queue:
                event = self._queue.popleft()
                await self._dispatch(event)
                dispatched += 1
        finally:
            self._draining = False
        return dispatched

    async def _dispatch(self, event: Event) -> None:
        listeners = self.registry.snapshot(event.type)
        if listeners:
            await asyncio.gather(*(self._invoke(listener, event) for listener in listeners))
        self._stats.processed += 1

    async def _invoke(self, listener: Listener, event: Event) -> None:
        try:
            await maybe_await(listener(event))
        except Exception as exc:
            self._stats.errors += 1
            failure = SubscriberFailure(event.type, listener, exc)
            count = self.errors.record(failure, source="event_bus")
            if event.type != EventType.SYSTEM_ERROR:
                self._enqueue(
                    self._make_event(
                        EventType.SYSTEM_ERROR,
                        {"error": str(failure), "source": "event_bus", "count": count},
                    )
                )

    # --- Lifecycle ---

    def start(self) -> None:
        """Start the background drain loop (idempotent)."""
        if self._task is None or self._task.done():
            self._task = create_background_task(self._run(), name="event-bus-drain")

    async def _run(self) -> None:
        while not self._stopping:
            await asyncio.sleep(self._drain_interval)
            if self._queue and not self._draining:
                await self.drain()

    async def stop(self, *, flush: bool = True) -> None:
        """Stop the drain loop. With *flush*, let the in-flight pass finish and
        dispatch whatever is still queued."""
        if self._task is not None:
            self._stopping = True
            if not flush:
                self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
            self._stopping = False
        if flush:
            await self.drain()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending(self) -> int:
        return len(self._queue)

    def clear(self) -> None:
        """Drop all listeners and pending events."""
        self.registry.clear()
        self._queue.clear()

    def stats(self) -> dict[str, Any]:
        return {
            "emitted": self._stats.emitted,
            "processed": self._stats.processed,
            "errors": self._stats.errors,
            "dropped": self._stats.dropped,
            "queue_length": len(self._queue),
            "listener_count": self.registry.count(),
            "draining": self._draining,
        }
