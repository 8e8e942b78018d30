"""Data models for panelsync."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field


@dataclass
class Message:
    """A host message normalized for the pipeline.

    ``identity`` may be missing or unstable; ``content`` is always present.
    """

    identity: str | None
    content: str
    is_host_authored: bool = True
    index: int | None = None
    raw: Any = None


@dataclass
class FieldValue:
    value: Any
    rule: str | None = None


@dataclass
class Operation:
    """A row-level edit command embedded in a data block."""

    type: str  # "add", "update", "delete"
    panel: str
    row: int
    data: dict[str, str] = field(default_factory=dict)


@dataclass
class ParsedBlock:
    """Result of parsing one data block."""

    panels: dict[str, dict[str, FieldValue]] = field(default_factory=dict)
    operations: list[Operation] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.panels and not self.operations

    def panel_values(self) -> dict[str, dict[str, Any]]:
        """Panel data with rules stripped: the shape that gets merged."""
        return {
            panel: {name: fv.value for name, fv in fields.items()}
            for panel, fields in self.panels.items()
        }

    def panel_rules(self) -> dict[str, dict[str, str]]:
        rules: dict[str, dict[str, str]] = {}
        for panel, fields in self.panels.items():
            for name, fv in fields.items():
                if fv.rule is not None:
                    rules.setdefault(panel, {})[name] = fv.rule
        return rules


@dataclass(frozen=True)
class ProcessedMessageRecord:
    message_identity: str
    block_hash: str
    result_hash: str | None  # None when the parse failed


class HistoryEntry(BaseModel):
    timestamp: int  # epoch ms
    source: str  # "received", "sent", "poll", "edited"
    message_id: str | None = None
    panel_count: int = 0
    panels: list[str] = Field(default_factory=list)


class ChatState(BaseModel):
    """Per-conversation derived state. Owned and persisted by the store."""

    panels: dict[str, dict[str, Any]] = Field(default_factory=dict)
    field_rules: dict[str, dict[str, str]] = Field(default_factory=dict)
    history: list[HistoryEntry] = Field(default_factory=list)
    last_updated: int = 0  # epoch ms
