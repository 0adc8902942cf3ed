"""Bounded in-memory caches owned by the detection coordinator.

Neither cache evicts on insert. The owner checks :attr:`over_capacity` after
mutating and runs the matching cleanup, so eviction cost is paid in batches.
"""

from __future__ import annotations

import itertools
from collections import OrderedDict
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Tuple

if TYPE_CHECKING:
    from .detection.types import CandidateRecord

INSERTED = "inserted"
REPLACED = "replaced"
KEPT = "kept"


def _trending(record: CandidateRecord) -> float:
    score = record.trending_score
    return float(score) if score is not None else 0.0


class DetectedTokenCache:
    """Identifier keyed store of accepted records.

    A second record for a known identifier only replaces the cached one when
    its trending score is strictly higher; on a tie the first arrival wins.
    """

    def __init__(self, capacity: int = 1000) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = int(capacity)
        self._entries: Dict[str, Tuple[int, CandidateRecord]] = {}
        self._seq = itertools.count()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, address: object) -> bool:
        return address in self._entries

    def __iter__(self) -> Iterator[CandidateRecord]:
        return (record for _, record in self._entries.values())

    @property
    def over_capacity(self) -> bool:
        return len(self._entries) > self.capacity

    def get(self, address: str) -> Optional[CandidateRecord]:
        entry = self._entries.get(address)
        return entry[1] if entry is not None else None

    def supersedes(self, record: CandidateRecord) -> bool:
        """Return ``True`` when *record* would replace the cached entry."""

        current = self.get(record.address)
        return current is not None and _trending(record) > _trending(current)

    def put(self, record: CandidateRecord) -> str:
        current = self.get(record.address)
        if current is None:
            self._entries[record.address] = (next(self._seq), record)
            return INSERTED
        if _trending(record) > _trending(current):
            self._entries[record.address] = (next(self._seq), record)
            return REPLACED
        return KEPT

    def _ordered(self) -> List[Tuple[int, CandidateRecord]]:
        return sorted(
            self._entries.values(),
            key=lambda item: (item[1].detected_at, item[0]),
            reverse=True,
        )

    def recent(self, limit: int = 50) -> List[CandidateRecord]:
        """Return up to *limit* records, most recently detected first."""

        if limit <= 0:
            return []
        return [record for _, record in self._ordered()[:limit]]

    def evict_to_capacity(self) -> List[CandidateRecord]:
        """Drop the oldest records until the cache is back at capacity."""

        if not self.over_capacity:
            return []
        ordered = self._ordered()
        evicted = [record for _, record in ordered[self.capacity:]]
        for record in evicted:
            self._entries.pop(record.address, None)
        return evicted

    def clear(self) -> None:
        self._entries.clear()


class SignatureCache:
    """Insertion ordered set of processed transaction signatures."""

    def __init__(self, capacity: int = 10000) -> None:
        if capacity <= 1:
            raise ValueError("capacity must be greater than one")
        self.capacity = int(capacity)
        self._data: "OrderedDict[str, None]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, signature: object) -> bool:
        return signature in self._data

    @property
    def over_capacity(self) -> bool:
        return len(self._data) > self.capacity

    def add(self, signature: str) -> bool:
        """Record *signature*; returns ``False`` when it was already known."""

        if signature in self._data:
            return False
        self._data[signature] = None
        return True

    def trim(self) -> int:
        """Drop the oldest half of the capacity when over the cap."""

        if not self.over_capacity:
            return 0
        drop = self.capacity // 2
        for _ in range(drop):
            self._data.popitem(last=False)
        return drop

    def clear(self) -> None:
        self._data.clear()
