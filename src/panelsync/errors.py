"""Error taxonomy and the handled-failure counter.

Every failure inside the bus, bridge and pipeline is caught at its own
boundary and reported to an ErrorTracker instead of propagating. When the
tracker crosses its threshold it runs the registered soft-reset hooks
(clearing transient caches) rather than crashing.
"""

from __future__ import annotations

from collections.abc import Callable

from panelsync.logger import logger


class PanelSyncError(Exception):
    """Base class for all panelsync errors."""


class ValidationError(PanelSyncError, ValueError):
    """Bad arguments to subscribe/emit. Raised immediately, never queued."""


class BridgeUnavailable(PanelSyncError):
    """The host context is not reachable yet. Transient; retried."""


class ParseFailure(PanelSyncError):
    """A data block was present but could not be parsed."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class SubscriberFailure(PanelSyncError):
    """A subscriber raised while handling an event."""

    def __init__(self, event_type: str, listener: object, cause: BaseException) -> None:
        name = getattr(listener, "__qualname__", repr(listener))
        super().__init__(f"{name} failed on {event_type}: {cause}")
        self.event_type = event_type
        self.listener = listener
        self.cause = cause


class ErrorTracker:
    """Counts handled failures and soft-resets once the threshold is hit."""

    def __init__(self, threshold: int = 50) -> None:
        self.threshold = max(1, threshold)
        self.count = 0
        self.total = 0
        self.resets = 0
        self._reset_hooks: list[Callable[[], None]] = []

    def on_soft_reset(self, hook: Callable[[], None]) -> None:
        self._reset_hooks.append(hook)

    def record(self, exc: BaseException, *, source: str) -> int:
        """Record a handled failure. Returns the running count."""
        self.count += 1
        self.total += 1
        logger.warning(
            "Handled failure",
            source=source,
            err=str(exc),
            err_type=type(exc).__name__,
            count=self.count,
        )
        if self.count >= self.threshold:
            self.soft_reset()
        return self.count

    def soft_reset(self) -> None:
        logger.warning("Error threshold reached, soft reset", count=self.count)
        for hook in list(self._reset_hooks):
            try:
                hook()
            except Exception:
                logger.exception("Soft-reset hook failed")
        self.count = 0
        self.resets += 1
