"""Host application contract.

The bridge never reaches for ambient globals: a ``HostContextProvider`` is
injected and asked for a fresh ``HostContext`` whenever state is needed.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeAlias, runtime_checkable

HostHandler: TypeAlias = Callable[[Any], Any]


@runtime_checkable
class HostEventSource(Protocol):
    def on(self, name: str, handler: HostHandler) -> Any: ...


@dataclass
class HostContext:
    event_source: HostEventSource | None
    # Logical name (e.g. "MESSAGE_RECEIVED") → host-native event name
    event_names: Mapping[str, str] = field(default_factory=dict)
    conversation_id: str | None = None
    messages: Sequence[Any] = field(default_factory=list)


class HostContextProvider(Protocol):
    def get_context(self) -> HostContext | None:
        """Current host context, or None while the host isn't ready."""
        ...
