"""Message pipeline: detect → dedupe → parse → merge → announce.

Entry point for every candidate message, whether it arrived as a live host
notification or was discovered by the polling fallback. The pipeline never
raises: each stage reports its outcome and unexpected failures are recorded
on the error tracker.

Parse failures are non-destructive. Stored state is left exactly as it was
and a ``parse-failed`` diagnostic is emitted instead.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from panelsync.errors import ErrorTracker, ParseFailure
from panelsync.event_bus import EventBus, EventType
from panelsync.logger import logger
from panelsync.pipeline.cache import CacheCheck, ProcessedMessageCache
from panelsync.pipeline.content import (
    extract_block,
    extract_content,
    extract_identity,
    has_complete_block,
    normalize_message,
)
from panelsync.pipeline.merge import PanelMerger
from panelsync.pipeline.operations import OperationExecutor
from panelsync.pipeline.parser import BlockParser, PanelBlockParser
from panelsync.state.store import ChatStateStore
from panelsync.types import ParsedBlock
from panelsync.utils import now_ms, short_hash


class PluginConfigProvider(Protocol):
    def is_plugin_enabled(self) -> bool: ...


class PipelineOutcome(StrEnum):
    STORED = "stored"
    APPLIED = "applied"  # operations only
    DISABLED = "disabled"
    NO_CONTENT = "no-content"
    NO_BLOCK = "no-block"
    DUPLICATE = "duplicate"
    NO_CONVERSATION = "no-conversation"
    PARSE_FAILED = "parse-failed"
    FILTERED = "filtered"  # parsed, but no enabled field accepted
    ERROR = "error"


@dataclass
class PipelineResult:
    outcome: PipelineOutcome
    message_id: str | None = None
    panels: list[str] = field(default_factory=list)
    operations: int = 0
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome in (PipelineOutcome.STORED, PipelineOutcome.APPLIED)


class MessagePipeline:
    def __init__(
        self,
        bus: EventBus,
        store: ChatStateStore,
        config: PluginConfigProvider,
        *,
        parser: BlockParser | None = None,
        executor: OperationExecutor | None = None,
        merger: PanelMerger | None = None,
        cache: ProcessedMessageCache | None = None,
        data_tag: str = "infobar_data",
        errors: ErrorTracker | None = None,
    ) -> None:
        self._bus = bus
        self._store = store
        self._config = config
        self._parser = parser if parser is not None else PanelBlockParser()
        self._executor = executor
        self.merger = merger if merger is not None else PanelMerger(store)
        self.cache = cache if cache is not None else ProcessedMessageCache()
        self.data_tag = data_tag
        self.errors = errors if errors is not None else bus.errors
        self.errors.on_soft_reset(self.cache.clear)

    @classmethod
    def from_settings(
        cls,
        bus: EventBus,
        store: ChatStateStore,
        config: PluginConfigProvider,
        **kwargs: Any,
    ) -> MessagePipeline:
        from panelsync.config import get_settings

        s = get_settings()
        kwargs.setdefault(
            "merger",
            PanelMerger(
                store,
                history_limit=s.pipeline.history_limit,
                history_keep=s.pipeline.history_keep,
            ),
        )
        kwargs.setdefault("cache", ProcessedMessageCache(s.pipeline.processed_cache_size))
        kwargs.setdefault("data_tag", s.pipeline.data_tag)
        return cls(bus, store, config, **kwargs)

    def set_executor(self, executor: OperationExecutor | None) -> None:
        self._executor = executor

    def has_block(self, data: Any) -> bool:
        """Cheap pre-check used by the bridge and poller."""
        return has_complete_block(extract_content(data), self.data_tag)

    def reset_session(self) -> None:
        """Forget processed messages (conversation switch)."""
        self.cache.clear()

    def invalidate(self, message_id: str) -> bool:
        return self.cache.invalidate(message_id)

    async def process(
        self,
        data: Any,
        *,
        source: str = "received",
        index: int | None = None,
        force: bool = False,
    ) -> PipelineResult:
        try:
            return await self._process(data, source=source, index=index, force=force)
        except Exception as exc:
            self.errors.record(exc, source="pipeline")
            return PipelineResult(PipelineOutcome.ERROR, reason=str(exc))

    async def _process(
        self,
        data: Any,
        *,
        source: str,
        index: int | None,
        force: bool,
    ) -> PipelineResult:
        if not self._config.is_plugin_enabled():
            return PipelineResult(PipelineOutcome.DISABLED)

        message = normalize_message(data, index=index)
        if message is None or not message.content:
            logger.debug("No message content found", source=source)
            return PipelineResult(PipelineOutcome.NO_CONTENT)
        content = message.content

        if not has_complete_block(content, self.data_tag):
            return PipelineResult(PipelineOutcome.NO_BLOCK)

        block = extract_block(content, self.data_tag) or ""
        message_id = extract_identity(message, content, index=index)
        block_hash = short_hash(block)

        check = self.cache.check(message_id, block_hash)
        if check is CacheCheck.DUPLICATE and not force:
            logger.debug("Message already processed", message_id=message_id)
            return PipelineResult(PipelineOutcome.DUPLICATE, message_id=message_id)
        if check is CacheCheck.STALE:
            logger.info("Message block changed, reprocessing", message_id=message_id)

        conversation_id = self._store.get_current_conversation_id()
        if not conversation_id:
            logger.warning("No current conversation, skipping block", message_id=message_id)
            return PipelineResult(PipelineOutcome.NO_CONVERSATION, message_id=message_id)

        try:
            parsed = self._parser.parse(block)
        except ParseFailure as exc:
            self.cache.record(message_id, block_hash, None)
            logger.warning(
                "Data block parse failed, keeping existing state",
                message_id=message_id,
                reason=exc.reason,
            )
            await self._bus.emit(
                EventType.PARSE_FAILED,
                {
                    "conversation_id": conversation_id,
                    "message_id": message_id,
                    "source": source,
                    "reason": exc.reason,
                    "timestamp": now_ms(),
                },
            )
            return PipelineResult(
                PipelineOutcome.PARSE_FAILED, message_id=message_id, reason=exc.reason
            )

        # Recorded before the first await so a concurrent delivery of the
        # same message sees it as a duplicate.
        self.cache.record(message_id, block_hash, _result_hash(parsed))
        try:
            return await self._apply(conversation_id, parsed, message_id, source)
        except Exception:
            self.cache.invalidate(message_id)
            raise

    async def _apply(
        self,
        conversation_id: str,
        parsed: ParsedBlock,
        message_id: str,
        source: str,
    ) -> PipelineResult:
        applied = 0
        if parsed.operations:
            if self._executor is None:
                logger.warning(
                    "Block carries operations but no executor is configured",
                    message_id=message_id,
                    count=len(parsed.operations),
                )
            else:
                applied = await self._executor.execute(conversation_id, parsed.operations)

        panels: list[str] = []
        if parsed.panels:
            merged = await self.merger.merge(
                conversation_id, parsed, source=source, message_id=message_id
            )
            panels = merged.panels

        if panels:
            await self._bus.emit(
                EventType.DATA_STORED,
                {
                    "conversation_id": conversation_id,
                    "message_id": message_id,
                    "panel_count": len(panels),
                    "panels": panels,
                    "source": source,
                    "timestamp": now_ms(),
                },
            )
            return PipelineResult(
                PipelineOutcome.STORED, message_id=message_id, panels=panels, operations=applied
            )
        if applied:
            return PipelineResult(PipelineOutcome.APPLIED, message_id=message_id, operations=applied)
        return PipelineResult(PipelineOutcome.FILTERED, message_id=message_id)


def _result_hash(parsed: ParsedBlock) -> str:
    payload = {
        "panels": parsed.panel_values(),
        "operations": [(op.type, op.panel, op.row, op.data) for op in parsed.operations],
    }
    return short_hash(json.dumps(payload, sort_keys=True, default=str))
