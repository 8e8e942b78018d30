"""Shared test fixtures for panelsync."""

from __future__ import annotations

import pytest

from panelsync.errors import ErrorTracker
from panelsync.event_bus import Event, EventBus
from panelsync.host.scripted import ScriptedHost
from panelsync.pipeline import MessagePipeline, RowOperationExecutor
from panelsync.state import InMemoryChatStateStore

# ---------------------------------------------------------------------------
# Shared helpers (plain functions importable by test files)
# ---------------------------------------------------------------------------


def make_settings(**overrides):
    """Create a Settings object from pure defaults plus *overrides*.

    Usage::

        s = make_settings(plugin=PluginConfig(enabled=False))
        s = make_settings(panels={"status": PanelConfig(fields=["hp"])})
    """
    from panelsync.config import (
        BridgeConfig,
        BusConfig,
        ErrorsConfig,
        LoggingConfig,
        PipelineConfig,
        PluginConfig,
        Settings,
        StateConfig,
    )

    defaults = {
        "plugin": PluginConfig(),
        "bus": BusConfig(),
        "bridge": BridgeConfig(),
        "pipeline": PipelineConfig(),
        "panels": {},
        "errors": ErrorsConfig(),
        "state": StateConfig(),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    return Settings.model_construct(**defaults)


def block(body: str, tag: str = "infobar_data") -> str:
    """Wrap *body* in a complete data block."""
    return f"Narration.\n<{tag}>{body}</{tag}>"


class StaticConfig:
    """Plugin config collaborator with a settable flag."""

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled

    def is_plugin_enabled(self) -> bool:
        return self.enabled


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class Recorder:
    """Bus subscriber that keeps every event it sees."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    def of(self, event_type: str) -> list[Event]:
        return [e for e in self.events if e.type == event_type]

    @property
    def types(self) -> list[str]:
        return [e.type for e in self.events]


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    Built from pure defaults without reading config.toml or .env.
    """
    monkeypatch.setattr("panelsync.config._settings", make_settings())


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def errors() -> ErrorTracker:
    return ErrorTracker()


@pytest.fixture
def bus(errors: ErrorTracker) -> EventBus:
    return EventBus(errors=errors)


@pytest.fixture
def recorder(bus: EventBus) -> Recorder:
    """Records every catalogued event emitted on ``bus``."""
    from panelsync.event_bus import EventType

    rec = Recorder()
    for event_type in EventType:
        bus.subscribe(event_type, rec)
    return rec


@pytest.fixture
def host() -> ScriptedHost:
    return ScriptedHost("chat-1")


@pytest.fixture
def store(host: ScriptedHost) -> InMemoryChatStateStore:
    return InMemoryChatStateStore(resolver=lambda: host.conversation_id)


@pytest.fixture
def plugin_config() -> StaticConfig:
    return StaticConfig()


@pytest.fixture
def pipeline(bus, store, plugin_config) -> MessagePipeline:
    p = MessagePipeline(bus, store, plugin_config)
    p.set_executor(RowOperationExecutor(store, p.merger))
    return p
