"""Chat state store contract and the enabled-field filter shared by stores."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol, TypeAlias, runtime_checkable

from panelsync.config import PanelConfig
from panelsync.types import ChatState

ChangeCallback: TypeAlias = Callable[[str, ChatState], Awaitable[None] | None]
ConversationResolver: TypeAlias = Callable[[], str | None]


@runtime_checkable
class ChatStateStore(Protocol):
    """Persisted per-conversation state.

    ``get_state`` must hand out a copy: the pipeline mutates what it reads
    and only writes it back through ``set_state`` on success.
    """

    def get_current_conversation_id(self) -> str | None: ...

    async def get_state(self, conversation_id: str) -> ChatState: ...

    async def set_state(self, conversation_id: str, state: ChatState) -> None: ...

    def merge_enabled_fields(
        self,
        panel: str,
        existing: Mapping[str, Any],
        incoming: Mapping[str, Any],
    ) -> dict[str, Any]: ...


class EnabledFieldFilter:
    """Decides which incoming fields may overwrite stored panel data.

    Panels configured with ``enabled = false`` keep their existing data. A
    ``fields`` list restricts the merge to those names. Panels absent from
    config follow ``allow_unlisted``.
    """

    def __init__(
        self,
        panels: Mapping[str, PanelConfig] | None = None,
        *,
        allow_unlisted: bool = True,
    ) -> None:
        self._panels = dict(panels or {})
        self._allow_unlisted = allow_unlisted

    @classmethod
    def from_settings(cls) -> EnabledFieldFilter:
        from panelsync.config import get_settings

        s = get_settings()
        return cls(s.panels, allow_unlisted=s.pipeline.allow_unlisted_panels)

    def allowed_fields(self, panel: str) -> set[str] | None:
        """Field allowlist for *panel*; None means every field, empty means none."""
        cfg = self._panels.get(panel)
        if cfg is None:
            return None if self._allow_unlisted else set()
        if not cfg.enabled:
            return set()
        return set(cfg.fields) if cfg.fields is not None else None

    def merge(
        self,
        panel: str,
        existing: Mapping[str, Any],
        incoming: Mapping[str, Any],
    ) -> dict[str, Any]:
        allowed = self.allowed_fields(panel)
        merged = dict(existing)
        for name, value in incoming.items():
            if allowed is None or name in allowed:
                merged[name] = value
        return merged


class _StoreBase:
    """Conversation tracking, change notification and field filtering."""

    def __init__(
        self,
        *,
        field_filter: EnabledFieldFilter | None = None,
        resolver: ConversationResolver | None = None,
        on_change: ChangeCallback | None = None,
    ) -> None:
        self.field_filter = field_filter if field_filter is not None else EnabledFieldFilter()
        self.current_conversation_id: str | None = None
        self._resolver = resolver
        self._on_change = on_change

    def set_resolver(self, resolver: ConversationResolver | None) -> None:
        self._resolver = resolver

    def set_on_change(self, callback: ChangeCallback | None) -> None:
        self._on_change = callback

    def get_current_conversation_id(self) -> str | None:
        if self._resolver is not None:
            resolved = self._resolver()
            if resolved:
                return resolved
        return self.current_conversation_id

    def merge_enabled_fields(
        self,
        panel: str,
        existing: Mapping[str, Any],
        incoming: Mapping[str, Any],
    ) -> dict[str, Any]:
        return self.field_filter.merge(panel, existing, incoming)

    async def _notify(self, conversation_id: str, state: ChatState) -> None:
        if self._on_change is None:
            return
        result = self._on_change(conversation_id, state)
        if result is not None:
            await result
