"""Data block parsers.

The pipeline only depends on the ``BlockParser`` protocol. The default
parser understands three layouts, tried in order:

JSON object::

    {"persona": {"name": "Mira", "mood": {"value": "calm", "rule": "1-3 words"}},
     "__operations": [{"type": "add", "panel": "tasks", "row": 1, "data": {"1": "x"}}]}

Operation commands, one per line::

    add tasks(1 {"1"，"Find the key"，"2"，"open"})
    delete tasks(2)

Panel lines, optionally wrapped in an HTML comment::

    <!--
    persona: name="Mira", mood="calm"
    world: weather="rain"
    -->
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any, Protocol

from panelsync.errors import ParseFailure
from panelsync.types import FieldValue, Operation, ParsedBlock

MARKER_PREFIX = "__"
OPERATION_TYPES = frozenset({"add", "update", "delete"})

_OPERATION_RE = re.compile(
    r"^(add|update|delete)\s+([\w-]+)\((\d+)(?:\s*\{([^}]*)\})?\)$",
    re.IGNORECASE,
)
_PARAM_SPLIT_RE = re.compile(r"\s*[，,]\s*")
_COMMENT_RE = re.compile(r"<!--([\s\S]*?)-->")
_PANEL_NAME_RE = re.compile(r"[\w.-]+")
_FIELD_RE = re.compile(r'\s*([^=,"]+?)\s*=\s*"(.*?)"(?=\s*(?:,|$))')


class BlockParser(Protocol):
    def parse(self, block: str) -> ParsedBlock:
        """Parse the inner text of a data block. Raises ParseFailure."""
        ...


class PanelBlockParser:
    """Default parser for JSON, operation-command and panel-line blocks."""

    def parse(self, block: str) -> ParsedBlock:
        text = block.strip()
        if not text:
            raise ParseFailure("empty data block")
        if text.startswith("{"):
            parsed = self._parse_json(text)
        elif _is_operation_line(_meaningful_lines(text)[0]):
            parsed = ParsedBlock(
                operations=self._parse_operations(text),
                metadata={"__format": "operation_commands"},
            )
        else:
            parsed = self._parse_panel_lines(text)
        if parsed.is_empty:
            raise ParseFailure("no panel data or operations in block")
        return parsed

    # --- JSON ---

    def _parse_json(self, text: str) -> ParsedBlock:
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ParseFailure(f"invalid JSON: {exc.msg} (line {exc.lineno})") from exc
        if not isinstance(raw, dict):
            raise ParseFailure("JSON block must be an object")

        parsed = ParsedBlock()
        for key, value in raw.items():
            if key.startswith(MARKER_PREFIX):
                if key == "__operations":
                    parsed.operations.extend(_operation_from_mapping(op) for op in _as_list(value))
                else:
                    parsed.metadata[key] = value
                continue
            if not isinstance(value, Mapping):
                # Scalars at the top level are not panels
                parsed.metadata[key] = value
                continue
            fields = {str(name): _field_value(v) for name, v in value.items()}
            if fields:
                parsed.panels[str(key)] = fields
        return parsed

    # --- Operation commands ---

    def _parse_operations(self, text: str) -> list[Operation]:
        operations: list[Operation] = []
        for line in _meaningful_lines(text):
            match = _OPERATION_RE.match(line)
            if match is None:
                raise ParseFailure(f"unrecognized operation command: {line[:80]}")
            op_type, panel, row, params = match.groups()
            operations.append(
                Operation(
                    type=op_type.lower(),
                    panel=panel,
                    row=int(row),
                    data=_parse_params(params or ""),
                )
            )
        return operations

    # --- Panel lines ---

    def _parse_panel_lines(self, text: str) -> ParsedBlock:
        comments = _COMMENT_RE.findall(text)
        body = "\n".join(comments) if comments else text

        parsed = ParsedBlock()
        for line in _meaningful_lines(body):
            panel, sep, rest = line.partition(":")
            panel = panel.strip()
            if not sep or not _PANEL_NAME_RE.fullmatch(panel):
                continue
            fields = {
                name.strip(): FieldValue(value.replace('""', '"'))
                for name, value in _FIELD_RE.findall(rest)
                if name.strip()
            }
            if fields:
                parsed.panels.setdefault(panel, {}).update(fields)
        if not parsed.panels:
            raise ParseFailure('no "panel: field="value"" lines found')
        return parsed


def _meaningful_lines(text: str) -> list[str]:
    lines = [
        line.strip()
        for line in text.splitlines()
        if line.strip() and not line.strip().startswith(("//", "#"))
    ]
    return lines or [""]


def _is_operation_line(line: str) -> bool:
    return _OPERATION_RE.match(line) is not None


def _parse_params(params: str) -> dict[str, str]:
    """Parse ``"col"，"value"，"col"，"value"`` pairs. A trailing odd item is dropped."""
    parts = [p.strip().strip('"') for p in _PARAM_SPLIT_RE.split(params.strip()) if p.strip()]
    return {parts[i]: parts[i + 1] for i in range(0, len(parts) - 1, 2)}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    raise ParseFailure("__operations must be a list")


def _operation_from_mapping(raw: Any) -> Operation:
    if not isinstance(raw, Mapping):
        raise ParseFailure("operation entries must be objects")
    op_type = str(raw.get("type", "")).lower()
    if op_type not in OPERATION_TYPES:
        raise ParseFailure(f"unknown operation type: {raw.get('type')!r}")
    panel = raw.get("panel")
    if not isinstance(panel, str) or not panel:
        raise ParseFailure("operation is missing a panel name")
    try:
        row = int(raw.get("row", 1))
    except (TypeError, ValueError) as exc:
        raise ParseFailure(f"operation row is not an integer: {raw.get('row')!r}") from exc
    data = raw.get("data") or {}
    if not isinstance(data, Mapping):
        raise ParseFailure("operation data must be an object")
    return Operation(
        type=op_type,
        panel=panel,
        row=row,
        data={str(k): str(v) for k, v in data.items()},
    )


def _field_value(raw: Any) -> FieldValue:
    if isinstance(raw, Mapping) and "value" in raw:
        rule = raw.get("rule")
        return FieldValue(raw["value"], str(rule) if rule is not None else None)
    return FieldValue(raw)
