"""Classify deleted messages as host- or user-authored.

Host deletion notifications are unreliable: a bare index, an object with
one of several index-like fields, or nothing usable at all. Only deleted
host (generated) messages warrant rolling derived state back, so every
notification is resolved to a definite classification and tagged with the
strategy that produced it.

Resolution order:

1. Bare integer index found in the reference message list → that
   message's author flag.
2. Object notification: an explicit author flag, else the first candidate
   index field that resolves in the reference list.
3. Positional inference over the current conversation tail. Uncertain
   cases classify as host-authored: a needless rollback is cheaper than a
   missed one.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from panelsync.logger import logger
from panelsync.pipeline.content import AUTHOR_FIELDS, is_user_message

INDEX_FIELDS = ("index", "messageIndex", "mesid", "message_id", "messageId", "id")


class InferenceStrategy(StrEnum):
    DIRECT_INDEX = "direct-index"
    EXPLICIT_FLAG = "explicit-flag"
    OBJECT_FIELD = "object-field"
    AFTER_USER_TAIL = "after-user-tail"  # regenerate pattern
    TAIL_POSITION = "tail-position"  # delete-last-reply pattern
    EMPTY_DEFAULT = "empty-default"


class Confidence(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    LOWEST = "lowest"


@dataclass(frozen=True)
class DeletionCandidate:
    raw_notification: Any
    inferred_is_user: bool
    strategy: InferenceStrategy
    confidence: Confidence
    index: int | None = None
    note: str = ""

    @property
    def skip_rollback(self) -> bool:
        return self.inferred_is_user

    def as_message_info(self) -> dict[str, Any]:
        return {
            "is_user": self.inferred_is_user,
            "index": self.index,
            "strategy": str(self.strategy),
            "confidence": str(self.confidence),
            "note": self.note,
        }


def _as_index(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


class DeletionInferenceEngine:
    def infer(
        self,
        notification: Any,
        messages: Sequence[Any],
        reference: Sequence[Any] | None = None,
    ) -> DeletionCandidate:
        """Classify a deletion.

        *messages* is the conversation as it is now (after the deletion).
        *reference* is a secondary source of truth captured before it, when
        available; direct index lookups use it in preference to *messages*.
        """
        lookup = reference if reference is not None else messages

        candidate = self._resolve_direct(notification, lookup)
        if candidate is None and isinstance(notification, Mapping):
            candidate = self._resolve_object(notification, lookup)
        if candidate is None:
            candidate = self._infer_positional(notification, messages)

        logger.info(
            "Deletion classified",
            is_user=candidate.inferred_is_user,
            strategy=str(candidate.strategy),
            confidence=str(candidate.confidence),
            index=candidate.index,
        )
        return candidate

    def _resolve_direct(self, notification: Any, lookup: Sequence[Any]) -> DeletionCandidate | None:
        if isinstance(notification, Mapping):
            return None
        index = _as_index(notification)
        if index is None:
            return None
        is_user = self._author_at(lookup, index)
        if is_user is None:
            return None
        return DeletionCandidate(
            raw_notification=notification,
            inferred_is_user=is_user,
            strategy=InferenceStrategy.DIRECT_INDEX,
            confidence=Confidence.HIGH,
            index=index,
            note=f"message at index {index} resolved directly",
        )

    def _resolve_object(
        self,
        notification: Mapping[str, Any],
        lookup: Sequence[Any],
    ) -> DeletionCandidate | None:
        nested = notification.get("messageInfo")
        sources: list[Mapping[str, Any]] = [notification]
        if isinstance(nested, Mapping):
            sources.append(nested)

        for source in sources:
            for name in AUTHOR_FIELDS:
                flag = source.get(name)
                if isinstance(flag, bool):
                    index = next(
                        (i for f in INDEX_FIELDS if (i := _as_index(source.get(f))) is not None),
                        None,
                    )
                    return DeletionCandidate(
                        raw_notification=notification,
                        inferred_is_user=flag,
                        strategy=InferenceStrategy.EXPLICIT_FLAG,
                        confidence=Confidence.HIGH,
                        index=index,
                        note=f"author flag {name!r} supplied by host",
                    )

        for source in sources:
            for name in INDEX_FIELDS:
                index = _as_index(source.get(name))
                if index is None:
                    continue
                is_user = self._author_at(lookup, index)
                if is_user is None:
                    continue
                return DeletionCandidate(
                    raw_notification=notification,
                    inferred_is_user=is_user,
                    strategy=InferenceStrategy.OBJECT_FIELD,
                    confidence=Confidence.HIGH,
                    index=index,
                    note=f"field {name!r} resolved to index {index}",
                )
        return None

    def _infer_positional(self, notification: Any, messages: Sequence[Any]) -> DeletionCandidate:
        if not messages:
            return DeletionCandidate(
                raw_notification=notification,
                inferred_is_user=False,
                strategy=InferenceStrategy.EMPTY_DEFAULT,
                confidence=Confidence.LOWEST,
                index=0,
                note="no messages remain; assuming a generated message was removed",
            )

        last_is_user = is_user_message(messages[-1])
        if last_is_user:
            return DeletionCandidate(
                raw_notification=notification,
                inferred_is_user=False,
                strategy=InferenceStrategy.AFTER_USER_TAIL,
                confidence=Confidence.MEDIUM,
                index=len(messages),
                note="tail is a user message; the reply after it was removed",
            )
        return DeletionCandidate(
            raw_notification=notification,
            inferred_is_user=False,
            strategy=InferenceStrategy.TAIL_POSITION,
            confidence=Confidence.LOW,
            index=len(messages),
            note="tail is a generated message; assuming the last reply was removed",
        )

    @staticmethod
    def _author_at(messages: Sequence[Any], index: int) -> bool | None:
        if not 0 <= index < len(messages):
            return None
        return is_user_message(messages[index])
