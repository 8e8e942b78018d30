"""Shared utility functions."""

from __future__ import annotations

import asyncio
import hashlib
import inspect
from collections.abc import Coroutine
from datetime import UTC, datetime
from typing import Any

from panelsync.logger import logger


def now_ms() -> int:
    """Current UTC time in epoch milliseconds."""
    return int(datetime.now(UTC).timestamp() * 1000)


def short_hash(text: str, length: int = 12) -> str:
    """Stable short content hash used for message fingerprints."""
    return hashlib.sha1(text.encode("utf-8")).hexdigest()[:length]


async def maybe_await(value: Any) -> Any:
    """Await *value* if it is awaitable, otherwise return it unchanged.

    Host event sources and subscribers may be plain functions or coroutines.
    """
    if inspect.isawaitable(value):
        return await value
    return value


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Create an asyncio task that logs exceptions instead of swallowing them."""
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    """Callback attached to background tasks: logs unhandled exceptions."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # logger.exception() won't work here because we're in a done-callback,
        # not an except handler.
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            exc_info=exc,
        )
