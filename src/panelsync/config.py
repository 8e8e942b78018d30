"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Settings live in config.toml. Environment variables override using ``__`` as
the nested delimiter (e.g. ``BRIDGE__POLL_INTERVAL=5``).

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from panelsync.config import get_settings

    s = get_settings()
    print(s.bridge.poll_interval)
"""

from __future__ import annotations

import re
from typing import Literal

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models. Unknown keys are rejected."""

    model_config = {"extra": "forbid"}


class PluginConfig(_StrictModel):
    enabled: bool = True


class BusConfig(_StrictModel):
    drain_interval: float = 0.01  # seconds
    max_queue_size: int = 1000
    overflow: Literal["drop_oldest", "drop_newest"] = "drop_oldest"
    wait_timeout: float = 5.0  # default for EventBus.wait_for

    @field_validator("max_queue_size")
    @classmethod
    def clamp_queue_size(cls, v: int) -> int:
        return max(1, v)


class BridgeConfig(_StrictModel):
    bind_retry_delay: float = 1.0  # seconds
    poll_interval: float = 2.0  # seconds
    chat_switch_grace: float = 3.0  # seconds
    # Host logical event name → internal event name, forwarded verbatim
    proxies: dict[str, str] = {"SETTINGS_UPDATED": "config:changed"}


class PipelineConfig(_StrictModel):
    data_tag: str = "infobar_data"
    processed_cache_size: int = 1000
    history_limit: int = 100
    history_keep: int = 50
    allow_unlisted_panels: bool = True

    @field_validator("data_tag")
    @classmethod
    def validate_tag(cls, v: str) -> str:
        if not re.fullmatch(r"[A-Za-z_][\w.-]*", v):
            msg = f"Invalid data tag: {v!r}"
            raise ValueError(msg)
        return v

    @field_validator("history_keep")
    @classmethod
    def validate_keep(cls, v: int) -> int:
        if v < 1:
            raise ValueError("history_keep must be a positive integer")
        return v


class PanelConfig(_StrictModel):
    """Per-panel toggle in config.toml under [panels.<name>]."""

    enabled: bool = True
    fields: list[str] | None = None  # None → every field is enabled


class ErrorsConfig(_StrictModel):
    soft_reset_threshold: int = 50


class StateConfig(_StrictModel):
    backend: Literal["memory", "sqlite"] = "memory"
    sqlite_path: str = "data/panelsync.db"


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    plugin: PluginConfig = PluginConfig()
    bus: BusConfig = BusConfig()
    bridge: BridgeConfig = BridgeConfig()
    pipeline: PipelineConfig = PipelineConfig()
    panels: dict[str, PanelConfig] = {}  # [panels.<name>]
    errors: ErrorsConfig = ErrorsConfig()
    state: StateConfig = StateConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


class SettingsPluginConfig:
    """Configuration collaborator backed by the settings singleton.

    Reads the flag on every call so a reloaded config takes effect
    without rewiring the pipeline.
    """

    def is_plugin_enabled(self) -> bool:
        return get_settings().plugin.enabled
