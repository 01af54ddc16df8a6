"""
State store: per-query accumulator partitions keyed by group key.

The scheduler is the only writer (``apply_committed``/``restore``). Executors
work on independent copies returned by ``read``, so a tick's candidate state is
invisible until the scheduler commits it.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic_core import to_jsonable_python

GroupKey = Tuple[Any, ...]
Partition = Dict[GroupKey, "Accumulator"]

# The single key used by global (ungrouped) aggregates.
GLOBAL_KEY: GroupKey = ()


@dataclass
class Accumulator:
    """
    Running count and per-field sums for one group key.

    Sums are Decimals, so merging is exact and therefore independent of batch
    boundaries and row order.
    """

    count: int = 0
    sums: Dict[str, Decimal] = field(default_factory=dict)

    def add(self, contribution: Mapping[str, Decimal]) -> None:
        self.count += 1
        for name, value in contribution.items():
            self.sums[name] = self.sums.get(name, Decimal(0)) + value

    def merge(self, other: "Accumulator") -> "Accumulator":
        sums = dict(self.sums)
        for name, value in other.sums.items():
            sums[name] = sums.get(name, Decimal(0)) + value
        return Accumulator(count=self.count + other.count, sums=sums)

    def copy(self) -> "Accumulator":
        return Accumulator(count=self.count, sums=dict(self.sums))

    def sum_of(self, name: str) -> Decimal:
        return self.sums.get(name, Decimal(0))


def copy_partition(partition: Mapping[GroupKey, Accumulator]) -> Partition:
    return {key: acc.copy() for key, acc in partition.items()}


def partition_to_payload(partition: Mapping[GroupKey, Accumulator]) -> List[Dict[str, Any]]:
    """Encode a partition as JSON-ready entries, sorted by key for stable output."""
    entries = [
        {
            "key": to_jsonable_python(list(key)),
            "count": acc.count,
            "sums": {name: str(value) for name, value in sorted(acc.sums.items())},
        }
        for key, acc in partition.items()
    ]
    entries.sort(key=lambda entry: [str(part) for part in entry["key"]])
    return entries


def partition_from_payload(
    entries: Sequence[Mapping[str, Any]],
    key_coercers: Sequence[Callable[[Any], Any]],
) -> Partition:
    """
    Decode entries written by ``partition_to_payload``.

    ``key_coercers`` restores each key component to its declared field type.

    Raises
    ------
    ValueError
        If an entry is malformed or its key has the wrong arity.
    """
    partition: Partition = {}
    for entry in entries:
        raw_key = entry["key"]
        if len(raw_key) != len(key_coercers):
            raise ValueError(f"group key {raw_key!r} has {len(raw_key)} parts, expected {len(key_coercers)}")
        key = tuple(coerce(part) for coerce, part in zip(key_coercers, raw_key))
        count = int(entry["count"])
        if count < 0:
            raise ValueError(f"negative count for key {raw_key!r}")
        sums = {name: Decimal(value) for name, value in entry["sums"].items()}
        if key in partition:
            raise ValueError(f"duplicate group key {raw_key!r}")
        partition[key] = Accumulator(count=count, sums=sums)
    return partition


class StateStore:
    """
    Partitioned map: query id -> (group key -> Accumulator).
    """

    def __init__(self, query_ids: Optional[Sequence[str]] = None) -> None:
        self._lock = threading.RLock()
        self._partitions: Dict[str, Partition] = {qid: {} for qid in (query_ids or ())}

    @property
    def query_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._partitions)

    def read(self, query_id: str) -> Partition:
        """Return an independent copy of the last committed partition."""
        with self._lock:
            return copy_partition(self._partitions.get(query_id, {}))

    def group_count(self, query_id: str) -> int:
        with self._lock:
            return len(self._partitions.get(query_id, {}))

    def snapshot(self) -> Dict[str, Partition]:
        with self._lock:
            return {qid: copy_partition(part) for qid, part in self._partitions.items()}

    def apply_committed(self, query_id: str, candidate: Mapping[GroupKey, Accumulator]) -> None:
        with self._lock:
            self._partitions[query_id] = copy_partition(candidate)

    def apply_all(self, candidates: Mapping[str, Mapping[GroupKey, Accumulator]]) -> None:
        """Apply every candidate under one lock so readers never see a partial commit."""
        with self._lock:
            for query_id, candidate in candidates.items():
                self._partitions[query_id] = copy_partition(candidate)

    def restore(self, snapshot: Mapping[str, Mapping[GroupKey, Accumulator]]) -> None:
        with self._lock:
            for query_id, partition in snapshot.items():
                self._partitions[query_id] = copy_partition(partition)


__all__ = [
    "Accumulator",
    "GLOBAL_KEY",
    "GroupKey",
    "Partition",
    "StateStore",
    "copy_partition",
    "partition_from_payload",
    "partition_to_payload",
]
