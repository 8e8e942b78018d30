"""Processed-message cache.

Live notifications and the polling fallback can both deliver the same
message; this cache is where they converge. A record is keyed by message
identity and remembers the hash of the block it was built from, so the same
block is handled once while an edited block under the same identity is seen
as a fresher update.
"""

from __future__ import annotations

from collections import OrderedDict
from enum import StrEnum

from panelsync.types import ProcessedMessageRecord


class CacheCheck(StrEnum):
    NEW = "new"
    DUPLICATE = "duplicate"
    STALE = "stale"  # same identity, different block


class ProcessedMessageCache:
    def __init__(self, max_size: int = 1000) -> None:
        self.max_size = max(1, max_size)
        self._records: OrderedDict[str, ProcessedMessageRecord] = OrderedDict()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, identity: object) -> bool:
        return identity in self._records

    def get(self, identity: str) -> ProcessedMessageRecord | None:
        return self._records.get(identity)

    def check(self, identity: str, block_hash: str) -> CacheCheck:
        record = self._records.get(identity)
        if record is None:
            return CacheCheck.NEW
        if record.block_hash == block_hash:
            return CacheCheck.DUPLICATE
        return CacheCheck.STALE

    def record(
        self,
        identity: str,
        block_hash: str,
        result_hash: str | None,
    ) -> ProcessedMessageRecord:
        entry = ProcessedMessageRecord(
            message_identity=identity,
            block_hash=block_hash,
            result_hash=result_hash,
        )
        self._records[identity] = entry
        self._records.move_to_end(identity)
        while len(self._records) > self.max_size:
            self._records.popitem(last=False)
        return entry

    def invalidate(self, identity: str) -> bool:
        return self._records.pop(identity, None) is not None

    def clear(self) -> None:
        self._records.clear()
