"""In-process chat state store."""

from __future__ import annotations

from panelsync.state.store import _StoreBase
from panelsync.types import ChatState


class InMemoryChatStateStore(_StoreBase):
    """Keeps states in a dict. Copies on the way in and out."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._states: dict[str, ChatState] = {}

    async def get_state(self, conversation_id: str) -> ChatState:
        state = self._states.get(conversation_id)
        return state.model_copy(deep=True) if state is not None else ChatState()

    async def set_state(self, conversation_id: str, state: ChatState) -> None:
        self._states[conversation_id] = state.model_copy(deep=True)
        await self._notify(conversation_id, state)

    def conversations(self) -> list[str]:
        return sorted(self._states)

    async def delete_state(self, conversation_id: str) -> bool:
        return self._states.pop(conversation_id, None) is not None
