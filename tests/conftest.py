"""
Pytest configuration for the streaming aggregation engine.

Provides fixtures for:
- Settings pointing at per-test temporary directories
- Writing order CSV files into the watched directory
- Building schedulers wired to in-memory sinks
"""

from __future__ import annotations

import csv
from decimal import Decimal
from pathlib import Path
from typing import Callable, Generator, List, Optional, Sequence

import pytest

from streamagg.config import Settings, get_settings
from streamagg.domain.models import OrderRecordV1
from streamagg.domain.schema import SchemaRegistry, SchemaVariant
from streamagg.infrastructure.sinks import MemorySink, SinkWriter
from streamagg.queries.manager import QueryManager
from streamagg.scheduler import MicroBatchScheduler, build_scheduler

V1_HEADER = SchemaVariant.V1.field_names


def v1_row(
    order_id: int,
    client_id: int,
    client_name: str,
    total: str,
    product: str = "Laptop",
    quantity: int = 1,
    status: str = "shipped",
    order_date: str = "2024-01-05",
) -> List[str]:
    """Raw CSV cells for a variant 1 order; price defaults to total / quantity."""
    price = str(Decimal(total) / quantity) if _is_number(total) else "1.00"
    return [
        str(order_id),
        str(client_id),
        client_name,
        product,
        str(quantity),
        price,
        order_date,
        status,
        total,
    ]


def v1_record(order_id: int, client_id: int, client_name: str, total: str, **kwargs) -> OrderRecordV1:
    fields = dict(zip(V1_HEADER, v1_row(order_id, client_id, client_name, total, **kwargs)))
    return OrderRecordV1.model_validate(fields)


def _is_number(text: str) -> bool:
    try:
        Decimal(text)
    except ArithmeticError:
        return False
    return True


@pytest.fixture(autouse=True)
def _clear_settings_cache() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """
    Settings fixture with every directory under ``tmp_path``.
    """
    return Settings(
        schema_variant="v1",
        watch_dir=tmp_path / "incoming",
        checkpoint_dir=tmp_path / "checkpoint",
        output_dir=tmp_path / "output",
        sink="memory",
        poll_interval_seconds=0.01,
        file_read_timeout_seconds=2.0,
        max_file_retries=3,
        max_checkpoint_failures=3,
        query_workers=4,
        log_level="DEBUG",
    )


@pytest.fixture
def registry() -> SchemaRegistry:
    return SchemaRegistry(SchemaVariant.V1)


@pytest.fixture
def queries(registry: SchemaRegistry) -> QueryManager:
    return QueryManager.for_variant(registry)


@pytest.fixture
def write_orders(test_settings: Settings) -> Callable[..., Path]:
    """
    Write a CSV file with a header row into the watched directory.
    """

    def _write(
        name: str,
        rows: Sequence[Sequence[str]],
        header: Optional[Sequence[str]] = None,
        directory: Optional[Path] = None,
    ) -> Path:
        target_dir = directory or test_settings.watch_dir
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / name
        with path.open("w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(list(header) if header is not None else V1_HEADER)
            writer.writerows(rows)
        return path

    return _write


@pytest.fixture
def make_scheduler(test_settings: Settings) -> Generator[Callable[..., MicroBatchScheduler], None, None]:
    """
    Factory building schedulers from ``test_settings`` (optionally overridden).

    Every scheduler created is closed at teardown.
    """
    created: List[MicroBatchScheduler] = []

    def _make(sinks: Optional[Sequence[SinkWriter]] = None, filesystem=None, **overrides) -> MicroBatchScheduler:
        settings = test_settings.model_copy(update=overrides) if overrides else test_settings
        scheduler = build_scheduler(
            settings,
            sinks=list(sinks) if sinks is not None else [MemorySink()],
            filesystem=filesystem,
        )
        created.append(scheduler)
        return scheduler

    yield _make
    for scheduler in created:
        scheduler.close()


@pytest.fixture
def scenario_a_rows() -> List[List[str]]:
    """Three orders totalling 50, 150 and 200."""
    return [
        v1_row(1, 101, "Acme Corp", "50", product="Pen"),
        v1_row(2, 102, "Globex", "150", product="Chair"),
        v1_row(3, 101, "Acme Corp", "200", product="Desk"),
    ]


@pytest.fixture
def make_row() -> Callable[..., List[str]]:
    """Factory for raw variant 1 CSV cells (see ``v1_row``)."""
    return v1_row


@pytest.fixture
def make_record() -> Callable[..., OrderRecordV1]:
    """Factory for validated variant 1 records (see ``v1_record``)."""
    return v1_record
