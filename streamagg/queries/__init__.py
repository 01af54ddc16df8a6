"""
Queries package for the streaming aggregation engine.

Re-exports the declarative query contracts, the executor that interprets them,
and the QueryManager holding the per-run catalog.
"""

from streamagg.queries.abstract import (
    AggregateFunction,
    AggregateSpec,
    OrderingRule,
    OutputMode,
    Predicate,
    QueryDefinition,
    QueryResult,
)
from streamagg.queries.executor import QueryExecutor
from streamagg.queries.manager import QueryManager, default_queries

__all__ = [
    # Contracts
    "AggregateFunction",
    "AggregateSpec",
    "OrderingRule",
    "OutputMode",
    "Predicate",
    "QueryDefinition",
    "QueryResult",
    # Execution
    "QueryExecutor",
    "QueryManager",
    "default_queries",
]
