"""
QueryManager: the statically enumerated set of queries for one engine run.

The catalog is built once at startup for the configured schema variant and
validated against it; there is no ambient global registry.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Callable, Dict, List, Sequence

from streamagg.domain.schema import SchemaRegistry, SchemaVariant
from streamagg.errors import QueryDefinitionError
from streamagg.queries.abstract import (
    AggregateFunction,
    AggregateSpec,
    OrderingRule,
    OutputMode,
    Predicate,
    QueryDefinition,
)
from streamagg.queries.executor import QueryExecutor

HIGH_VALUE_THRESHOLD = Decimal("100")


def default_queries(variant: SchemaVariant) -> List[QueryDefinition]:
    """Catalog of the built-in analytical views for ``variant``."""
    client_keys = ("client_id", "client_name") if variant is SchemaVariant.V1 else ("client_name",)
    breakdown_id, breakdown_field = (
        ("orders_by_status", "status") if variant is SchemaVariant.V1 else ("sales_by_region", "region")
    )
    return [
        QueryDefinition(
            query_id="raw_orders",
            description="Every parsed order, as it arrives.",
            output_mode=OutputMode.APPEND,
        ),
        QueryDefinition(
            query_id="high_value_orders",
            description=f"Orders with total above {HIGH_VALUE_THRESHOLD}.",
            filter=Predicate(field="total", op=">", value=HIGH_VALUE_THRESHOLD),
            output_mode=OutputMode.APPEND,
            ordering=(OrderingRule(field="total", descending=True),),
        ),
        QueryDefinition(
            query_id="global_sales",
            description="Running totals across all orders.",
            aggregates=(
                AggregateSpec(name="total_sales", function=AggregateFunction.SUM, field="total"),
                AggregateSpec(name="total_orders", function=AggregateFunction.COUNT),
                AggregateSpec(name="avg_order_value", function=AggregateFunction.AVG, field="total"),
            ),
            output_mode=OutputMode.COMPLETE,
        ),
        QueryDefinition(
            query_id="sales_by_client",
            description="Spend and order count per client.",
            group_by=client_keys,
            aggregates=(
                AggregateSpec(name="total_spent", function=AggregateFunction.SUM, field="total"),
                AggregateSpec(name="order_count", function=AggregateFunction.COUNT),
            ),
            output_mode=OutputMode.COMPLETE,
            ordering=(OrderingRule(field="total_spent", descending=True),),
        ),
        QueryDefinition(
            query_id="top_products",
            description="Products ranked by revenue.",
            group_by=("product",),
            aggregates=(
                AggregateSpec(name="units_sold", function=AggregateFunction.SUM, field="quantity"),
                AggregateSpec(name="revenue", function=AggregateFunction.SUM, field="total"),
            ),
            output_mode=OutputMode.COMPLETE,
            ordering=(OrderingRule(field="revenue", descending=True),),
        ),
        QueryDefinition(
            query_id=breakdown_id,
            description=f"Order count and value per {breakdown_field}.",
            group_by=(breakdown_field,),
            aggregates=(
                AggregateSpec(name="order_count", function=AggregateFunction.COUNT),
                AggregateSpec(name="total_value", function=AggregateFunction.SUM, field="total"),
            ),
            output_mode=OutputMode.COMPLETE,
            ordering=(OrderingRule(field="order_count", descending=True),),
        ),
    ]


def validate_definition(definition: QueryDefinition, registry: SchemaRegistry) -> None:
    """
    Raises
    ------
    QueryDefinitionError
        If the definition does not fit the registry's schema variant.
    """
    qid = definition.query_id
    fields = set(registry.field_names)

    def _require(name: str, role: str) -> None:
        if name not in fields:
            raise QueryDefinitionError(
                f"Query '{qid}': {role} field '{name}' is not in schema variant {registry.variant.value}"
            )

    if definition.filter is not None:
        _require(definition.filter.field, "filter")
    for name in definition.group_by:
        _require(name, "group-by")

    if definition.is_stateful:
        if definition.output_mode is not OutputMode.COMPLETE:
            raise QueryDefinitionError(f"Query '{qid}': aggregating queries must use complete mode")
        if definition.select is not None:
            raise QueryDefinitionError(f"Query '{qid}': select applies to pass-through queries only")
        names = [agg.name for agg in definition.aggregates]
        if len(set(names)) != len(names) or set(names) & set(definition.group_by):
            raise QueryDefinitionError(f"Query '{qid}': output column names must be unique")
        for agg in definition.aggregates:
            if agg.function is AggregateFunction.COUNT:
                continue
            if agg.field is None:
                raise QueryDefinitionError(f"Query '{qid}': {agg.function.value} needs a field")
            _require(agg.field, "aggregate")
            if not registry.is_numeric(agg.field):
                raise QueryDefinitionError(
                    f"Query '{qid}': cannot {agg.function.value} non-numeric field '{agg.field}'"
                )
        columns = set(definition.group_by) | set(names)
    else:
        if definition.output_mode is not OutputMode.APPEND:
            raise QueryDefinitionError(f"Query '{qid}': complete mode needs aggregates")
        if definition.group_by:
            raise QueryDefinitionError(f"Query '{qid}': grouping needs aggregates")
        for name in definition.select or ():
            _require(name, "select")
        columns = set(definition.select) if definition.select is not None else fields

    for rule in definition.ordering:
        if rule.field not in columns:
            raise QueryDefinitionError(f"Query '{qid}': cannot order by unknown column '{rule.field}'")


class QueryManager:
    """
    Holds the validated query definitions and one executor per query.
    """

    def __init__(self, registry: SchemaRegistry, definitions: Sequence[QueryDefinition]) -> None:
        ids = [d.query_id for d in definitions]
        if len(set(ids)) != len(ids):
            raise QueryDefinitionError(f"Duplicate query ids in catalog: {ids}")
        for definition in definitions:
            validate_definition(definition, registry)
        self.registry = registry
        self._definitions: Dict[str, QueryDefinition] = {d.query_id: d for d in definitions}
        self._executors: Dict[str, QueryExecutor] = {
            d.query_id: QueryExecutor(d) for d in definitions
        }

    @classmethod
    def for_variant(cls, registry: SchemaRegistry) -> "QueryManager":
        return cls(registry, default_queries(registry.variant))

    @property
    def query_ids(self) -> List[str]:
        return list(self._definitions)

    @property
    def definitions(self) -> List[QueryDefinition]:
        return list(self._definitions.values())

    @property
    def executors(self) -> List[QueryExecutor]:
        return list(self._executors.values())

    @property
    def stateful_ids(self) -> List[str]:
        return [qid for qid, d in self._definitions.items() if d.is_stateful]

    def get(self, query_id: str) -> QueryDefinition:
        try:
            return self._definitions[query_id]
        except KeyError:
            raise KeyError(f"Unknown query '{query_id}'. Available: {', '.join(self._definitions)}") from None

    def executor(self, query_id: str) -> QueryExecutor:
        self.get(query_id)
        return self._executors[query_id]

    def fingerprints(self) -> Dict[str, str]:
        return {qid: d.fingerprint() for qid, d in self._definitions.items() if d.is_stateful}

    def key_coercers(self, query_id: str) -> List[Callable[[Any], Any]]:
        """Per-key-part converters used to restore group keys from a checkpoint."""
        return [
            (lambda value, _name=name: self.registry.coerce(_name, value))
            for name in self.get(query_id).group_by
        ]


__all__ = ["HIGH_VALUE_THRESHOLD", "QueryManager", "default_queries", "validate_definition"]
