"""Polling fallback for host notifications that never arrive.

Periodically compares the number of visible messages against a remembered
baseline and routes each newly visible message that carries a complete data
block through the same entry point live notifications use. The processed
cache downstream makes double delivery harmless.

The baseline is reset to the *current* length of a newly opened
conversation, never to zero, so existing history is not replayed. Right
after a switch the poller stays quiet for a grace window while the host
finishes loading.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeAlias

from panelsync.errors import ErrorTracker
from panelsync.host.context import HostContextProvider
from panelsync.logger import logger
from panelsync.utils import create_background_task

MessageHandler: TypeAlias = Callable[[Any, int], Awaitable[Any]]
BlockCheck: TypeAlias = Callable[[Any], bool]
SwitchHandler: TypeAlias = Callable[[str | None], Awaitable[Any]]


class MessagePoller:
    def __init__(
        self,
        provider: HostContextProvider,
        on_message: MessageHandler,
        has_block: BlockCheck,
        *,
        interval: float = 2.0,
        grace: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
        errors: ErrorTracker | None = None,
        on_switch: SwitchHandler | None = None,
    ) -> None:
        self._provider = provider
        self._on_switch = on_switch
        self._on_message = on_message
        self._has_block = has_block
        self.interval = interval
        self.grace = grace
        self._clock = clock
        self._errors = errors
        self.baseline = 0
        self.conversation_id: str | None = None
        self.snapshot: list[Any] = []
        self._suspended_until = 0.0
        self._task: asyncio.Task[None] | None = None

    @property
    def suspended(self) -> bool:
        return self._clock() < self._suspended_until

    def _messages(self) -> tuple[str | None, list[Any]] | None:
        ctx = self._provider.get_context()
        if ctx is None:
            return None
        return ctx.conversation_id, list(ctx.messages or [])

    def prime(self) -> None:
        """Adopt the host's current conversation and length without suspending."""
        current = self._messages()
        if current is None:
            return
        self.conversation_id, messages = current
        self.baseline = len(messages)
        self.snapshot = messages

    def remember(self) -> None:
        """Refresh the message snapshot without moving the baseline.

        The snapshot is the pre-deletion view deletion inference consults,
        so it is refreshed after every handled live event.
        """
        current = self._messages()
        if current is not None and current[0] == self.conversation_id:
            self.snapshot = current[1]
            self.baseline = min(self.baseline, len(current[1]))

    def reset(self, conversation_id: str | None = None) -> None:
        """Rebase on a newly opened conversation and suspend for the grace window."""
        current = self._messages()
        messages = current[1] if current is not None else []
        if conversation_id is None and current is not None:
            conversation_id = current[0]
        self.conversation_id = conversation_id
        self.baseline = len(messages)
        self.snapshot = messages
        self._suspended_until = self._clock() + self.grace
        logger.info(
            "Polling baseline reset",
            conversation_id=conversation_id,
            baseline=self.baseline,
            grace=self.grace,
        )

    async def poll_once(self) -> int:
        """One polling pass. Returns how many messages were routed."""
        if self.suspended:
            logger.debug("Polling suspended after conversation switch")
            return 0
        current = self._messages()
        if current is None:
            return 0
        conversation_id, messages = current

        if conversation_id != self.conversation_id:
            logger.info(
                "Conversation change detected by polling",
                previous=self.conversation_id,
                current=conversation_id,
            )
            if self._on_switch is not None:
                await self._on_switch(conversation_id)
            else:
                self.reset(conversation_id)
            return 0

        count = len(messages)
        routed = 0
        if count > self.baseline:
            for index in range(self.baseline, count):
                message = messages[index]
                if self._has_block(message):
                    logger.info("Polling found message with data block", index=index)
                    await self._on_message(message, index)
                    routed += 1
        elif count < self.baseline:
            logger.debug("Conversation shrank", before=self.baseline, after=count)
        self.baseline = count
        self.snapshot = messages
        return routed

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = create_background_task(self._run(), name="message-poller")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.poll_once()
            except Exception as exc:
                if self._errors is not None:
                    self._errors.record(exc, source="poller")
                else:
                    logger.exception("Message polling failed")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
