"""Row-level operation commands embedded in data blocks.

Operation payloads bypass the field merge and are handed to an executor.
``RowOperationExecutor`` treats a panel as a table keyed by 1-based row
number: ``{"1": {"1": "Find the key", "2": "open"}, "2": {...}}``.
"""

from __future__ import annotations

from typing import Protocol

from panelsync.logger import logger
from panelsync.pipeline.merge import PanelMerger
from panelsync.state.store import ChatStateStore
from panelsync.types import Operation
from panelsync.utils import now_ms


class OperationExecutor(Protocol):
    async def execute(self, conversation_id: str, operations: list[Operation]) -> int:
        """Apply *operations*; return how many took effect."""
        ...


class RowOperationExecutor:
    def __init__(self, store: ChatStateStore, merger: PanelMerger) -> None:
        self._store = store
        self._merger = merger

    async def execute(self, conversation_id: str, operations: list[Operation]) -> int:
        async with self._merger.lock_for(conversation_id):
            state = await self._store.get_state(conversation_id)
            applied = 0
            for op in operations:
                rows = state.panels.setdefault(op.panel, {})
                if self._apply(rows, op):
                    applied += 1
                else:
                    logger.warning(
                        "Operation had no effect",
                        type=op.type,
                        panel=op.panel,
                        row=op.row,
                    )
                if not rows:
                    state.panels.pop(op.panel, None)
            if applied:
                state.last_updated = now_ms()
                await self._store.set_state(conversation_id, state)
        return applied

    @staticmethod
    def _apply(rows: dict, op: Operation) -> bool:
        row = max(1, op.row)
        key = str(row)
        if op.type == "add":
            if key in rows:
                taken = [int(k) for k in rows if k.isdigit()]
                key = str(max(taken) + 1)
            rows[key] = dict(op.data)
            return True
        if op.type == "update":
            current = rows.get(key)
            rows[key] = {**current, **op.data} if isinstance(current, dict) else dict(op.data)
            return True
        if op.type == "delete":
            return rows.pop(key, None) is not None
        return False
