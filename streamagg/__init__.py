"""
streamagg - incremental, file-driven streaming aggregation engine.

Watches a directory for newly arriving CSV files, parses them against a fixed
schema variant, and keeps several analytical queries continuously up to date
over everything seen so far:

- Raw pass-through and filtered views (append mode)
- Global and grouped aggregates, rankings (complete mode)
- Exactly-once file accounting through an atomic checkpoint ledger
- Crash recovery that resumes accumulators where they left off
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

# Public API exports
from streamagg.config import Settings, get_settings
from streamagg.domain.schema import SchemaRegistry, SchemaVariant
from streamagg.infrastructure.checkpoint import CheckpointManager
from streamagg.infrastructure.sinks import ConsoleSink, JsonFileSink, MemorySink, SinkWriter
from streamagg.queries.abstract import OutputMode, QueryDefinition
from streamagg.queries.manager import QueryManager
from streamagg.scheduler import MicroBatchScheduler, build_scheduler
from streamagg.state import StateStore
from streamagg.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Configuration
    "Settings",
    "get_settings",
    # Schema
    "SchemaRegistry",
    "SchemaVariant",
    # Queries
    "OutputMode",
    "QueryDefinition",
    "QueryManager",
    # Engine
    "CheckpointManager",
    "MicroBatchScheduler",
    "StateStore",
    "build_scheduler",
    # Sinks
    "ConsoleSink",
    "JsonFileSink",
    "MemorySink",
    "SinkWriter",
    # Logging
    "configure_logging",
    "get_logger",
]
