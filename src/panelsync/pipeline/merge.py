"""Merge parsed panel data into persisted chat state.

Merges for one conversation are serialized with a per-conversation lock so
two deliveries racing through the pipeline (live + polled, or a synchronous
emit) cannot read the same state and overwrite each other's fields.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field

from panelsync.logger import logger
from panelsync.state.store import ChatStateStore
from panelsync.types import ChatState, HistoryEntry, ParsedBlock
from panelsync.utils import now_ms


@dataclass
class MergeResult:
    panels: list[str] = field(default_factory=list)
    state: ChatState | None = None

    @property
    def stored(self) -> bool:
        return bool(self.panels)


class PanelMerger:
    def __init__(
        self,
        store: ChatStateStore,
        *,
        history_limit: int = 100,
        history_keep: int = 50,
    ) -> None:
        self._store = store
        self.history_limit = history_limit
        self.history_keep = min(history_keep, history_limit)
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def lock_for(self, conversation_id: str) -> asyncio.Lock:
        return self._locks[conversation_id]

    def forget(self, conversation_id: str) -> bool:
        """Drop the lock of a conversation that no longer has state."""
        lock = self._locks.get(conversation_id)
        if lock is None or lock.locked():
            return False
        del self._locks[conversation_id]
        return True

    async def merge(
        self,
        conversation_id: str,
        parsed: ParsedBlock,
        *,
        source: str,
        message_id: str | None = None,
    ) -> MergeResult:
        """Merge enabled fields and persist. Nothing is written if no field is accepted."""
        incoming = parsed.panel_values()
        rules = parsed.panel_rules()

        async with self.lock_for(conversation_id):
            state = await self._store.get_state(conversation_id)
            stored: list[str] = []

            for panel, values in incoming.items():
                existing = state.panels.get(panel, {})
                merged = self._store.merge_enabled_fields(panel, existing, values)
                accepted = set(self._store.merge_enabled_fields(panel, {}, values))
                if not accepted:
                    logger.debug("No enabled fields in panel", panel=panel)
                    continue
                state.panels[panel] = merged
                for name, rule in rules.get(panel, {}).items():
                    if name in accepted:
                        state.field_rules.setdefault(panel, {})[name] = rule
                stored.append(panel)

            if not stored:
                return MergeResult(panels=[], state=None)

            now = now_ms()
            state.history.append(
                HistoryEntry(
                    timestamp=now,
                    source=source,
                    message_id=message_id,
                    panel_count=len(stored),
                    panels=stored,
                )
            )
            if len(state.history) > self.history_limit:
                state.history = state.history[-self.history_keep :]
            state.last_updated = now

            await self._store.set_state(conversation_id, state)

        logger.info(
            "Panel data stored",
            conversation_id=conversation_id,
            panels=stored,
            source=source,
        )
        return MergeResult(panels=stored, state=state)
