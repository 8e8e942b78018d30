"""Application wiring: owns the bus, store, pipeline and host bridge.

Usage::

    async with PanelSyncApp(host) as app:
        app.bus.subscribe("data-stored", on_stored)
        ...
"""

from __future__ import annotations

from typing import Any

from panelsync.config import SettingsPluginConfig, get_settings
from panelsync.deletion import DeletionInferenceEngine
from panelsync.errors import ErrorTracker
from panelsync.event_bus import EventBus, EventType
from panelsync.host.bridge import HostEventBridge
from panelsync.host.context import HostContextProvider
from panelsync.logger import logger, set_level
from panelsync.pipeline import MessagePipeline, RowOperationExecutor
from panelsync.state import (
    ChatStateStore,
    EnabledFieldFilter,
    InMemoryChatStateStore,
    SqliteChatStateStore,
)
from panelsync.types import ChatState
from panelsync.utils import now_ms


class PanelSyncApp:
    """Main application class: builds every component from settings."""

    def __init__(
        self,
        host: HostContextProvider,
        *,
        store: ChatStateStore | None = None,
        **bridge_kwargs: Any,
    ) -> None:
        s = get_settings()
        set_level(s.logging.level)

        self.host = host
        self.errors = ErrorTracker(threshold=s.errors.soft_reset_threshold)
        self.bus = EventBus.from_settings(self.errors)
        self.store = store if store is not None else self._make_store()
        self.pipeline = MessagePipeline.from_settings(self.bus, self.store, SettingsPluginConfig())
        self.pipeline.set_executor(RowOperationExecutor(self.store, self.pipeline.merger))
        self.bridge = HostEventBridge.from_settings(
            self.bus,
            host,
            self.pipeline,
            engine=DeletionInferenceEngine(),
            **bridge_kwargs,
        )

        if hasattr(self.store, "set_resolver"):
            self.store.set_resolver(self.bridge.current_conversation_id)
        if hasattr(self.store, "set_on_change"):
            self.store.set_on_change(self._on_state_changed)

    @staticmethod
    def _make_store() -> ChatStateStore:
        s = get_settings()
        field_filter = EnabledFieldFilter.from_settings()
        if s.state.backend == "sqlite":
            return SqliteChatStateStore(s.state.sqlite_path, field_filter=field_filter)
        return InMemoryChatStateStore(field_filter=field_filter)

    async def _on_state_changed(self, conversation_id: str, state: ChatState) -> None:
        await self.bus.emit(
            EventType.DATA_CHANGED,
            {
                "conversation_id": conversation_id,
                "panels": sorted(state.panels),
                "timestamp": now_ms(),
            },
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if isinstance(self.store, SqliteChatStateStore):
            await self.store.open()
        self.bus.start()
        self.bridge.start()
        logger.info("panelsync started", store=type(self.store).__name__)

    async def stop(self) -> None:
        await self.bridge.stop()
        await self.bus.stop(flush=True)
        if isinstance(self.store, SqliteChatStateStore):
            await self.store.close()
        logger.info("panelsync stopped", **self.bus.stats())

    async def __aenter__(self) -> PanelSyncApp:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    async def delete_conversation(self, conversation_id: str) -> bool:
        """Drop a conversation's derived state and announce it."""
        removed = await self.store.delete_state(conversation_id)  # type: ignore[attr-defined]
        self.pipeline.merger.forget(conversation_id)
        if removed:
            logger.info("Conversation state deleted", conversation_id=conversation_id)
            await self.bus.emit(
                EventType.DATA_DELETED,
                {"conversation_id": conversation_id, "timestamp": now_ms()},
            )
        return removed

    async def snapshot(self) -> dict[str, Any]:
        """Current conversation's state as plain JSON-ready data."""
        conversation_id = self.store.get_current_conversation_id()
        if not conversation_id:
            return {}
        state = await self.store.get_state(conversation_id)
        return {"conversation_id": conversation_id, **state.model_dump(mode="json")}
