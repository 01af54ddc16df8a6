"""
Domain package for the streaming aggregation engine.

Exports the record layouts, the schema registry, and the file/batch/ledger
models shared by the source monitor, scheduler and checkpoint manager.
"""

from streamagg.domain.models import (
    Batch,
    FileState,
    Ledger,
    OrderRecordV1,
    OrderRecordV2,
    Record,
    SourceFile,
)
from streamagg.domain.schema import SchemaRegistry, SchemaVariant

__all__ = [
    "Batch",
    "FileState",
    "Ledger",
    "OrderRecordV1",
    "OrderRecordV2",
    "Record",
    "SchemaRegistry",
    "SchemaVariant",
    "SourceFile",
]
