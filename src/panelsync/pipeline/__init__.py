"""Message-content pipeline: block detection, dedupe, parsing and merge."""

from panelsync.pipeline.cache import CacheCheck, ProcessedMessageCache
from panelsync.pipeline.merge import MergeResult, PanelMerger
from panelsync.pipeline.operations import OperationExecutor, RowOperationExecutor
from panelsync.pipeline.parser import BlockParser, PanelBlockParser
from panelsync.pipeline.pipeline import (
    MessagePipeline,
    PipelineOutcome,
    PipelineResult,
    PluginConfigProvider,
)

__all__ = [
    "BlockParser",
    "CacheCheck",
    "MergeResult",
    "MessagePipeline",
    "OperationExecutor",
    "PanelBlockParser",
    "PanelMerger",
    "PipelineOutcome",
    "PipelineResult",
    "PluginConfigProvider",
    "ProcessedMessageCache",
    "RowOperationExecutor",
]
