"""
Domain models for the streaming aggregation engine.

Defines the two supported order record layouts, the source-file lifecycle,
the micro-batch container, and the durable processed-file ledger.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class Record(BaseModel):
    """
    Base class for a parsed, immutable source row.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        str_strip_whitespace=True,
    )

    def as_row(self) -> Dict[str, Any]:
        """Return the record as a plain field -> value mapping, in declared order."""
        return self.model_dump()


class OrderRecordV1(Record):
    """
    Variant 1 order layout: numeric client id plus name, with order status.
    """

    order_id: int = Field(..., description="Order identifier.")
    client_id: int = Field(..., description="Numeric client identifier.")
    client_name: str = Field(..., min_length=1, description="Client display name.")
    product: str = Field(..., min_length=1, description="Product name.")
    quantity: int = Field(..., ge=0, description="Units ordered.")
    price: Decimal = Field(..., allow_inf_nan=False, description="Unit price.")
    order_date: date = Field(..., description="Order date (ISO).")
    status: str = Field(..., min_length=1, description="Fulfilment status.")
    total: Decimal = Field(..., allow_inf_nan=False, description="Order total.")


class OrderRecordV2(Record):
    """
    Variant 2 order layout: client by name only, with category and region.
    """

    order_id: int = Field(..., description="Order identifier.")
    client_name: str = Field(..., min_length=1, description="Client display name.")
    product: str = Field(..., min_length=1, description="Product name.")
    category: str = Field(..., min_length=1, description="Product category.")
    quantity: int = Field(..., ge=0, description="Units ordered.")
    unit_price: Decimal = Field(..., allow_inf_nan=False, description="Unit price.")
    order_date: date = Field(..., description="Order date (ISO).")
    region: str = Field(..., min_length=1, description="Sales region.")
    total: Decimal = Field(..., allow_inf_nan=False, description="Order total.")


class FileState(str, enum.Enum):
    DISCOVERED = "discovered"
    IN_FLIGHT = "in-flight"
    COMMITTED = "committed"
    QUARANTINED = "quarantined"


@dataclass
class SourceFile:
    """
    A file in the watched directory and where it is in its lifecycle.

    ``path`` is relative to the watched directory and is the file's identity.
    """

    path: str
    discovered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: FileState = FileState.DISCOVERED

    def mark(self, state: FileState) -> None:
        self.state = state


@dataclass(frozen=True)
class Batch:
    """
    The records pulled in by a single scheduler tick, in file then row order.
    """

    batch_id: int
    records: Tuple[Record, ...]
    files: Tuple[str, ...]
    parse_errors: int = 0

    def __len__(self) -> int:
        return len(self.records)

    @property
    def is_empty(self) -> bool:
        return not self.records


class Ledger(BaseModel):
    """
    Durable record of settled files plus consecutive read-failure counts.

    Only the scheduler mutates a ledger; it works on a copy during a tick and
    swaps it in on commit.
    """

    committed: Set[str] = Field(default_factory=set)
    quarantined: Set[str] = Field(default_factory=set)
    read_failures: Dict[str, int] = Field(default_factory=dict)

    @field_serializer("committed", "quarantined")
    def serialize_sorted(self, value: Set[str]) -> List[str]:
        return sorted(value)

    def is_settled(self, path: str) -> bool:
        return path in self.committed or path in self.quarantined

    def record_failure(self, path: str) -> int:
        """Bump and return the consecutive failure count for ``path``."""
        count = self.read_failures.get(path, 0) + 1
        self.read_failures[path] = count
        return count

    def record_success(self, path: str) -> None:
        """A successful read breaks the failure streak, whatever the tick outcome."""
        self.read_failures.pop(path, None)

    def quarantine(self, path: str) -> None:
        self.read_failures.pop(path, None)
        self.quarantined.add(path)

    def commit(self, paths: List[str]) -> None:
        for path in paths:
            self.read_failures.pop(path, None)
            self.committed.add(path)

    def copy_for_tick(self) -> "Ledger":
        return self.model_copy(deep=True)


__all__ = [
    "Record",
    "OrderRecordV1",
    "OrderRecordV2",
    "FileState",
    "SourceFile",
    "Batch",
    "Ledger",
]
