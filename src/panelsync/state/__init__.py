"""Chat state stores.

  store  : ChatStateStore contract, EnabledFieldFilter
  memory : in-process store
  sqlite : aiosqlite-backed store
"""

from panelsync.state.memory import InMemoryChatStateStore
from panelsync.state.sqlite import SqliteChatStateStore
from panelsync.state.store import ChatStateStore, EnabledFieldFilter

__all__ = [
    "ChatStateStore",
    "EnabledFieldFilter",
    "InMemoryChatStateStore",
    "SqliteChatStateStore",
]
