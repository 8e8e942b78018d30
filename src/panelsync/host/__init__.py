"""Host application integration: context contract, event bridge, polling fallback."""

from panelsync.host.bridge import BridgeState, HostEventBridge
from panelsync.host.context import HostContext, HostContextProvider, HostEventSource
from panelsync.host.polling import MessagePoller

__all__ = [
    "BridgeState",
    "HostContext",
    "HostContextProvider",
    "HostEventBridge",
    "HostEventSource",
    "MessagePoller",
]
