"""In-process host driven by a script of events.

Used by the ``replay`` command and by the test suite. It keeps one message
list per conversation and mirrors how a chat host notifies: lifecycle
events carry the index of the affected message, not the message itself.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Mapping
from typing import Any

from panelsync.errors import ValidationError
from panelsync.host.context import HostContext, HostHandler
from panelsync.utils import maybe_await

HOST_EVENT_NAMES = (
    "MESSAGE_RECEIVED",
    "MESSAGE_SENT",
    "MESSAGE_EDITED",
    "MESSAGE_DELETED",
    "MESSAGE_REGENERATED",
    "CHARACTER_MESSAGE_RENDERED",
    "USER_MESSAGE_RENDERED",
    "CHAT_CHANGED",
    "SETTINGS_UPDATED",
)


class ScriptedEventSource:
    def __init__(self) -> None:
        self.handlers: dict[str, list[HostHandler]] = defaultdict(list)

    def on(self, name: str, handler: HostHandler) -> None:
        self.handlers[name].append(handler)

    async def fire(self, name: str, data: Any = None) -> list[Any]:
        return [await maybe_await(h(data)) for h in list(self.handlers.get(name, ()))]


class ScriptedHost:
    """HostContextProvider with mutable, script-friendly state."""

    def __init__(
        self,
        conversation_id: str | None = "default",
        *,
        event_names: Mapping[str, str] | None = None,
        ready: bool = True,
    ) -> None:
        self.events = ScriptedEventSource()
        self.event_names = dict(event_names) if event_names is not None else {
            n: n for n in HOST_EVENT_NAMES
        }
        self.conversation_id = conversation_id
        self.chats: dict[str | None, list[Any]] = defaultdict(list)
        self.ready = ready

    @property
    def messages(self) -> list[Any]:
        return self.chats[self.conversation_id]

    def get_context(self) -> HostContext | None:
        if not self.ready:
            return None
        return HostContext(
            event_source=self.events,
            event_names=self.event_names,
            conversation_id=self.conversation_id,
            messages=self.messages,
        )

    # --- Script actions ---

    def add_message(self, mes: str, *, is_user: bool = False, **extra: Any) -> int:
        """Append a message without notifying. Returns its index."""
        self.messages.append({"mes": mes, "is_user": is_user, **extra})
        return len(self.messages) - 1

    async def receive(self, mes: str, **extra: Any) -> int:
        index = self.add_message(mes, is_user=False, **extra)
        await self.events.fire(self.event_names.get("MESSAGE_RECEIVED", ""), index)
        return index

    async def send(self, mes: str, **extra: Any) -> int:
        index = self.add_message(mes, is_user=True, **extra)
        await self.events.fire(self.event_names.get("MESSAGE_SENT", ""), index)
        return index

    async def edit(self, index: int, mes: str) -> None:
        self.messages[index]["mes"] = mes
        await self.events.fire(self.event_names.get("MESSAGE_EDITED", ""), index)

    async def delete(self, index: int, notification: Any = ...) -> Any:
        """Remove a message, then notify with *notification* (default: the index)."""
        del self.messages[index]
        payload = index if notification is ... else notification
        return await self.events.fire(self.event_names.get("MESSAGE_DELETED", ""), payload)

    async def regenerate(self) -> None:
        await self.events.fire(self.event_names.get("MESSAGE_REGENERATED", ""), None)

    async def switch_chat(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        await self.events.fire(self.event_names.get("CHAT_CHANGED", ""), conversation_id)

    async def play(self, step: Mapping[str, Any]) -> None:
        """Apply one replay step, e.g. ``{"event": "MESSAGE_RECEIVED", "mes": "..."}``."""
        match step.get("event"):
            case "MESSAGE_RECEIVED":
                await self.receive(step.get("mes", ""))
            case "MESSAGE_SENT":
                await self.send(step.get("mes", ""))
            case "MESSAGE_EDITED":
                await self.edit(int(step["index"]), step.get("mes", ""))
            case "MESSAGE_DELETED":
                await self.delete(int(step["index"]), step.get("notification", ...))
            case "MESSAGE_REGENERATED":
                await self.regenerate()
            case "CHAT_CHANGED":
                await self.switch_chat(str(step["conversation_id"]))
            case "APPEND":
                # Message appears without any notification (polling path)
                self.add_message(step.get("mes", ""), is_user=bool(step.get("is_user", False)))
            case str() as name:
                await self.events.fire(self.event_names.get(name, name), step.get("data"))
            case other:
                raise ValidationError(f"Replay step has no event name: {other!r}")
