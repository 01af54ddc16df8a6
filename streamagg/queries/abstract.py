"""
Query definition contracts for the streaming aggregation engine.

A query is an immutable, declarative description: optional filter predicate,
optional group-key fields, aggregate expressions, output mode and an ordering
rule. Executors interpret definitions; they never carry query-specific code.
"""

from __future__ import annotations

import enum
import hashlib
import operator
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from streamagg.domain.models import Record
from streamagg.state import Accumulator, GroupKey


class OutputMode(str, enum.Enum):
    APPEND = "append"
    COMPLETE = "complete"


class AggregateFunction(str, enum.Enum):
    SUM = "sum"
    COUNT = "count"
    AVG = "avg"


_COMPARATORS: Dict[str, Callable[[Any, Any], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}


class Predicate(BaseModel):
    """
    A single ``field <op> value`` comparison, e.g. ``total > 100``.
    """

    model_config = ConfigDict(frozen=True)

    field: str
    op: str = Field(..., pattern=r"^(>|>=|<|<=|==|!=)$")
    value: Any

    def matches(self, record: Record) -> bool:
        """
        Raises TypeError when the record value is not comparable with ``value``.
        """
        return _COMPARATORS[self.op](getattr(record, self.field), self.value)

    def __str__(self) -> str:
        return f"{self.field} {self.op} {self.value}"


class AggregateSpec(BaseModel):
    """
    One output column of a grouped query. ``avg`` is derived from the
    accumulator's sum and count and is never stored.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    function: AggregateFunction
    field: Optional[str] = None
    decimals: int = Field(2, ge=0)

    @property
    def summed_field(self) -> Optional[str]:
        if self.function in (AggregateFunction.SUM, AggregateFunction.AVG):
            return self.field
        return None


class OrderingRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    descending: bool = False


class QueryDefinition(BaseModel):
    """
    Immutable definition of one analytical view over the record stream.

    Grouped queries (any aggregates) run in ``complete`` mode; an empty
    ``group_by`` with aggregates is a global aggregate over one implicit key.
    Ungrouped ``append`` queries hold no state and emit each batch's rows.
    """

    model_config = ConfigDict(frozen=True)

    query_id: str = Field(..., pattern=r"^[a-z][a-z0-9_]*$")
    description: str = ""
    filter: Optional[Predicate] = None
    group_by: Tuple[str, ...] = ()
    aggregates: Tuple[AggregateSpec, ...] = ()
    select: Optional[Tuple[str, ...]] = None
    output_mode: OutputMode = OutputMode.APPEND
    ordering: Tuple[OrderingRule, ...] = ()

    @property
    def is_stateful(self) -> bool:
        return bool(self.aggregates)

    @property
    def summed_fields(self) -> List[str]:
        fields: List[str] = []
        for agg in self.aggregates:
            name = agg.summed_field
            if name and name not in fields:
                fields.append(name)
        return fields

    def fingerprint(self) -> str:
        """Stable hash of everything that shapes this query's accumulator state."""
        shape = self.model_dump_json(include={"query_id", "filter", "group_by", "aggregates"})
        return hashlib.sha256(shape.encode("utf-8")).hexdigest()


@dataclass
class QueryResult:
    """
    What one executor produced for one batch: rows to emit and, for stateful
    queries, the candidate partition to commit if the whole tick succeeds.
    """

    query_id: str
    output_mode: OutputMode
    rows: List[Dict[str, Any]] = field(default_factory=list)
    candidate: Optional[Dict[GroupKey, Accumulator]] = None
    rows_in: int = 0
    merge_errors: int = 0
    filter_errors: int = 0


__all__ = [
    "AggregateFunction",
    "AggregateSpec",
    "OrderingRule",
    "OutputMode",
    "Predicate",
    "QueryDefinition",
    "QueryResult",
]
