"""
Query executor: applies one query definition to a micro-batch.

The executor is stateless across ticks. For stateful queries it merges the
batch into a caller-supplied copy of the last committed partition and returns
that copy as the candidate; nothing is committed here.
"""

from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

from streamagg.domain.models import Batch, Record
from streamagg.domain.schema import NUMERIC_TYPES
from streamagg.errors import StateMergeError
from streamagg.queries.abstract import (
    AggregateFunction,
    QueryDefinition,
    QueryResult,
)
from streamagg.state import GLOBAL_KEY, Accumulator, GroupKey, Partition
from streamagg.utils.logging import get_logger

log = get_logger(__name__)


def _sort_token(value: Any) -> Tuple[int, Any]:
    # None sorts first; everything else compares within its own column type.
    return (0, "") if value is None else (1, value)


def order_rows(
    keyed_rows: List[Tuple[GroupKey, Dict[str, Any]]],
    definition: QueryDefinition,
    tie_break_on_key: bool,
) -> List[Dict[str, Any]]:
    """
    Apply the query's ordering rules; ties fall back to ascending group key.
    """
    ordered = list(keyed_rows)
    if tie_break_on_key:
        ordered.sort(key=lambda item: tuple(_sort_token(part) for part in item[0]))
    for rule in reversed(definition.ordering):
        ordered.sort(key=lambda item: _sort_token(item[1].get(rule.field)), reverse=rule.descending)
    return [row for _, row in ordered]


class QueryExecutor:
    """
    Interprets a QueryDefinition against batches.
    """

    def __init__(self, definition: QueryDefinition) -> None:
        self.definition = definition
        self.query_id = definition.query_id
        self._summed = definition.summed_fields

    def execute(self, batch: Batch, committed: Optional[Partition] = None) -> QueryResult:
        """
        Compute output rows (and candidate state for stateful queries).

        Parameters
        ----------
        batch : Batch
            The frozen batch for this tick.
        committed : dict | None
            An independent copy of this query's last committed partition. It is
            mutated in place and returned as ``QueryResult.candidate``.
        """
        result = QueryResult(query_id=self.query_id, output_mode=self.definition.output_mode)
        selected = self._filter(batch.records, result)
        result.rows_in = len(selected)

        if not self.definition.is_stateful:
            keyed = [(GLOBAL_KEY, self._project(record)) for record in selected]
            result.rows = order_rows(keyed, self.definition, tie_break_on_key=False)
            return result

        candidate: Partition = committed if committed is not None else {}
        for record in selected:
            try:
                contribution = self._contribution(record)
            except StateMergeError as exc:
                result.merge_errors += 1
                log.warning(
                    f"[MERGE SKIP] {exc}",
                    extra={"query_id": self.query_id, "batch_id": batch.batch_id},
                )
                continue
            key = self._group_key(record)
            accumulator = candidate.get(key)
            if accumulator is None:
                accumulator = candidate[key] = Accumulator()
            accumulator.add(contribution)

        result.candidate = candidate
        result.rows = self.render(candidate)
        return result

    def render(self, partition: Partition) -> List[Dict[str, Any]]:
        """Recompute aggregate outputs for every known group key, ordered."""
        keyed = [(key, self._render_row(key, acc)) for key, acc in partition.items()]
        return order_rows(keyed, self.definition, tie_break_on_key=True)

    def _filter(self, records: Tuple[Record, ...], result: QueryResult) -> List[Record]:
        predicate = self.definition.filter
        if predicate is None:
            return list(records)
        selected: List[Record] = []
        for record in records:
            try:
                if predicate.matches(record):
                    selected.append(record)
            except TypeError:
                result.filter_errors += 1
                log.warning(
                    f"[FILTER SKIP] Query '{self.query_id}': cannot evaluate {predicate}",
                    extra={"query_id": self.query_id},
                )
        return selected

    def _project(self, record: Record) -> Dict[str, Any]:
        row = record.as_row()
        if self.definition.select is None:
            return row
        return {name: row[name] for name in self.definition.select}

    def _group_key(self, record: Record) -> GroupKey:
        return tuple(getattr(record, name) for name in self.definition.group_by)

    def _contribution(self, record: Record) -> Dict[str, Decimal]:
        # Validate every summed field before touching any accumulator.
        contribution: Dict[str, Decimal] = {}
        for name in self._summed:
            value = getattr(record, name, None)
            if isinstance(value, bool) or not isinstance(value, NUMERIC_TYPES):
                raise StateMergeError(self.query_id, name, value)
            if isinstance(value, float):
                if not math.isfinite(value):
                    raise StateMergeError(self.query_id, name, value)
                value = Decimal(repr(value))
            elif isinstance(value, Decimal) and not value.is_finite():
                raise StateMergeError(self.query_id, name, value)
            contribution[name] = Decimal(value)
        return contribution

    def _render_row(self, key: GroupKey, acc: Accumulator) -> Dict[str, Any]:
        row: Dict[str, Any] = dict(zip(self.definition.group_by, key))
        for agg in self.definition.aggregates:
            if agg.function is AggregateFunction.COUNT:
                row[agg.name] = acc.count
            elif agg.function is AggregateFunction.SUM:
                row[agg.name] = acc.sum_of(agg.field)
            else:
                row[agg.name] = _average(acc.sum_of(agg.field), acc.count, agg.decimals)
        return row


def _average(total: Decimal, count: int, decimals: int) -> Optional[Decimal]:
    if count == 0:
        return None
    return (total / count).quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)


__all__ = ["QueryExecutor", "order_rows"]
