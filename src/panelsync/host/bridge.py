"""Bridge between the host application's events and the internal bus.

The bridge moves through ``UNBOUND → BOUND → ACTIVE``. While the host
context is unavailable it retries on a fixed delay. Once bound it attaches
two kinds of handlers:

* proxies, which forward a host event's payload verbatim under an internal
  name (``bridge.proxies`` in config.toml);
* intercepts for the message lifecycle, which drive the pipeline and the
  deletion engine and only then emit the matching internal event.

``message:received`` and ``message:sent`` are emitted only when the
pipeline stored something. Ordinary conversational turns never reach the
consumers of those events.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable, Mapping
from enum import StrEnum
from typing import Any

from panelsync.deletion import DeletionCandidate, DeletionInferenceEngine
from panelsync.errors import BridgeUnavailable
from panelsync.event_bus import EventBus, EventType
from panelsync.host.context import HostContext, HostContextProvider, HostHandler
from panelsync.host.polling import MessagePoller
from panelsync.logger import logger
from panelsync.pipeline import MessagePipeline, PipelineResult
from panelsync.pipeline.content import has_identity, is_user_message
from panelsync.utils import create_background_task, now_ms


class BridgeState(StrEnum):
    UNBOUND = "unbound"
    BOUND = "bound"
    ACTIVE = "active"


# Logical host event name → handler method. Names the host doesn't
# advertise are skipped.
_INTERCEPTS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("MESSAGE_RECEIVED",), "_on_received"),
    (("CHARACTER_MESSAGE_RENDERED",), "_on_received"),
    (("MESSAGE_SENT",), "_on_sent"),
    (("USER_MESSAGE_RENDERED",), "_on_sent"),
    (("MESSAGE_EDITED",), "_on_edited"),
    (("MESSAGE_DELETED",), "_on_deleted"),
    (("MESSAGE_REGENERATED", "MESSAGE_REGENERATE"), "_on_regenerated"),
    (("CHAT_CHANGED",), "_on_chat_changed"),
)


class HostEventBridge:
    def __init__(
        self,
        bus: EventBus,
        provider: HostContextProvider,
        pipeline: MessagePipeline,
        *,
        engine: DeletionInferenceEngine | None = None,
        proxies: Mapping[str, str] | None = None,
        retry_delay: float = 1.0,
        poll_interval: float = 2.0,
        chat_switch_grace: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._bus = bus
        self._provider = provider
        self._pipeline = pipeline
        self._engine = engine if engine is not None else DeletionInferenceEngine()
        self._proxies = dict(proxies or {})
        self._retry_delay = retry_delay
        self.poller = MessagePoller(
            provider,
            self._on_polled,
            pipeline.has_block,
            interval=poll_interval,
            grace=chat_switch_grace,
            clock=clock,
            errors=bus.errors,
            on_switch=self._on_polled_switch,
        )
        self.state = BridgeState.UNBOUND
        self.conversation_id: str | None = None
        self.bind_attempts = 0
        self.attached: dict[str, str] = {}  # host-native name → logical name
        self._bind_task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(
        cls,
        bus: EventBus,
        provider: HostContextProvider,
        pipeline: MessagePipeline,
        **kwargs: Any,
    ) -> HostEventBridge:
        from panelsync.config import get_settings

        s = get_settings()
        kwargs.setdefault("proxies", s.bridge.proxies)
        kwargs.setdefault("retry_delay", s.bridge.bind_retry_delay)
        kwargs.setdefault("poll_interval", s.bridge.poll_interval)
        kwargs.setdefault("chat_switch_grace", s.bridge.chat_switch_grace)
        return cls(bus, provider, pipeline, **kwargs)

    # --- Context ---

    def _require_context(self) -> HostContext:
        ctx = self._provider.get_context()
        if ctx is None:
            raise BridgeUnavailable("host context not available")
        if ctx.event_source is None:
            raise BridgeUnavailable("host event source not available")
        return ctx

    def current_conversation_id(self) -> str | None:
        ctx = self._provider.get_context()
        if ctx is not None and ctx.conversation_id:
            return ctx.conversation_id
        return self.conversation_id

    def _current_messages(self) -> list[Any]:
        ctx = self._provider.get_context()
        return list(ctx.messages or []) if ctx is not None else []

    # --- Binding ---

    def try_bind(self) -> bool:
        """Make one binding attempt. True once the bridge is active."""
        if self.state is not BridgeState.UNBOUND:
            return True
        self.bind_attempts += 1
        try:
            ctx = self._require_context()
        except BridgeUnavailable as exc:
            logger.info("Host not ready, will retry", attempt=self.bind_attempts, reason=str(exc))
            return False

        self.state = BridgeState.BOUND
        self.conversation_id = ctx.conversation_id
        self._attach(ctx)
        self.state = BridgeState.ACTIVE
        logger.info(
            "Host bridge active",
            attempts=self.bind_attempts,
            events=sorted(self.attached),
            conversation_id=self.conversation_id,
        )
        self._bus.emit_nowait(
            EventType.SYSTEM_READY,
            {"conversation_id": self.conversation_id, "timestamp": now_ms()},
        )
        return True

    def _attach(self, ctx: HostContext) -> None:
        for logical, internal in self._proxies.items():
            native = ctx.event_names.get(logical)
            if native:
                self._on(ctx, native, logical, self._make_proxy(internal))

        for logical_names, method in _INTERCEPTS:
            logical = next((n for n in logical_names if ctx.event_names.get(n)), None)
            if logical is None:
                logger.debug("Host does not provide event", names=logical_names)
                continue
            self._on(ctx, ctx.event_names[logical], logical, self._guarded(logical, method))

    def _on(self, ctx: HostContext, native: str, logical: str, handler: HostHandler) -> None:
        try:
            ctx.event_source.on(native, handler)  # type: ignore[union-attr]
        except Exception as exc:
            self._bus.errors.record(exc, source=f"bridge.attach.{logical}")
            return
        self.attached[native] = logical

    def _make_proxy(self, internal: str) -> HostHandler:
        async def _proxy(data: Any = None, *_: Any) -> None:
            await self._bus.emit(internal, data)

        return _proxy

    def _guarded(self, logical: str, method: str) -> HostHandler:
        target = getattr(self, method)

        async def _handler(data: Any = None, *_: Any) -> Any:
            try:
                return await target(data)
            except Exception as exc:
                self._bus.errors.record(exc, source=f"bridge.{logical}")
                return None

        return _handler

    async def _bind_loop(self) -> None:
        while not self.try_bind():
            await asyncio.sleep(self._retry_delay)

    def start(self) -> None:
        """Start polling and bind now, or keep retrying in the background."""
        self.poller.prime()
        self.poller.start()
        if not self.try_bind() and (self._bind_task is None or self._bind_task.done()):
            self._bind_task = create_background_task(self._bind_loop(), name="host-bridge-bind")

    async def stop(self) -> None:
        if self._bind_task is not None:
            self._bind_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._bind_task
            self._bind_task = None
        await self.poller.stop()

    # --- Message lifecycle ---

    def _resolve(self, data: Any) -> tuple[Any, int | None]:
        """Find the host index of a payload so live and polled delivery share an identity.

        A bare int is the index itself. A mapping without an identity field is
        looked up in the message list, newest first.
        """
        if isinstance(data, int) and not isinstance(data, bool):
            messages = self._current_messages()
            if 0 <= data < len(messages):
                return messages[data], data
        elif isinstance(data, Mapping) and not has_identity(data):
            messages = self._current_messages()
            for index in range(len(messages) - 1, -1, -1):
                if messages[index] == data:
                    return data, index
        return data, None

    async def handle_incoming(
        self,
        data: Any,
        *,
        source: str,
        event_type: str,
        index: int | None = None,
        force: bool = False,
    ) -> PipelineResult:
        """Single entry point for live and polled messages."""
        result = await self._pipeline.process(data, source=source, index=index, force=force)
        if result.ok:
            await self._bus.emit(event_type, data)
        else:
            logger.debug("Message not forwarded", source=source, outcome=str(result.outcome))
        return result

    async def _on_received(self, data: Any) -> PipelineResult:
        payload, index = self._resolve(data)
        result = await self.handle_incoming(
            payload, source="received", event_type=EventType.MESSAGE_RECEIVED, index=index
        )
        self.poller.remember()
        return result

    async def _on_sent(self, data: Any) -> PipelineResult:
        payload, index = self._resolve(data)
        result = await self.handle_incoming(
            payload, source="sent", event_type=EventType.MESSAGE_SENT, index=index
        )
        self.poller.remember()
        return result

    async def _on_polled(self, message: Any, index: int) -> PipelineResult:
        return await self.handle_incoming(
            message, source="poll", event_type=EventType.MESSAGE_RECEIVED, index=index
        )

    async def _on_edited(self, data: Any) -> PipelineResult:
        payload, index = self._resolve(data)
        result = await self.handle_incoming(
            payload,
            source="edited",
            event_type=EventType.MESSAGE_EDITED,
            index=index,
            force=True,
        )
        self.poller.remember()
        return result

    async def _on_deleted(self, data: Any) -> DeletionCandidate:
        messages = self._current_messages()
        snapshot = self.poller.snapshot
        # Only a snapshot taken before the deletion is a useful reference
        reference = snapshot if len(snapshot) > len(messages) else None
        candidate = self._engine.infer(data, messages, reference=reference)

        if candidate.index is not None:
            self._pipeline.invalidate(str(candidate.index))
        self.poller.remember()

        if candidate.skip_rollback:
            logger.info("User message deleted, rollback skipped", index=candidate.index)
        await self._bus.emit(
            EventType.MESSAGE_DELETED,
            {
                "conversation_id": self.current_conversation_id(),
                "timestamp": now_ms(),
                "raw": data,
                "skip_rollback": candidate.skip_rollback,
                "message_info": candidate.as_message_info(),
            },
        )
        return candidate

    async def _on_regenerated(self, data: Any) -> None:
        messages = self._current_messages()
        for index in range(len(messages) - 1, -1, -1):
            if is_user_message(messages[index]) is False:
                self._pipeline.invalidate(str(index))
                break
        await self._bus.emit(
            EventType.MESSAGE_REGENERATED,
            {
                "conversation_id": self.current_conversation_id(),
                "timestamp": now_ms(),
                "raw": data,
            },
        )

    async def _on_chat_changed(self, data: Any) -> None:
        ctx = self._provider.get_context()
        conversation_id = ctx.conversation_id if ctx is not None else None
        if conversation_id is None and isinstance(data, str):
            conversation_id = data
        await self._switch_conversation(conversation_id, data)

    async def _on_polled_switch(self, conversation_id: str | None) -> None:
        # The host changed conversations without telling us
        await self._switch_conversation(conversation_id, None)

    async def _switch_conversation(self, conversation_id: str | None, data: Any) -> None:
        previous = self.conversation_id
        self.conversation_id = conversation_id

        self._pipeline.reset_session()
        self.poller.reset(conversation_id)
        logger.info("Conversation switched", previous=previous, current=conversation_id)
        await self._bus.emit(
            EventType.CHAT_CHANGED,
            {"conversation_id": conversation_id, "previous": previous, "raw": data},
        )
