"""
End-to-end engine behaviour: files in the watched directory, real checkpoints
on disk, in-memory sinks standing in for the output boundary.
"""

from __future__ import annotations

import threading
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Sequence, Set

import pytest

from streamagg.domain.models import FileState
from streamagg.errors import CheckpointWriteError
from streamagg.infrastructure import checkpoint as checkpoint_module
from streamagg.infrastructure.checkpoint import CheckpointManager
from streamagg.infrastructure.filesystem import LocalFileSystem
from streamagg.infrastructure.sinks import MemorySink
from streamagg.queries.abstract import OutputMode

EXPECTED_TOTAL_SALES = Decimal("400")
EXPECTED_AVG_ORDER_VALUE = Decimal("133.33")


class _Crash(BaseException):
    """Simulates the process dying; nothing in the engine may handle it."""


class _FlakySink:
    name = "flaky"

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def write(self, query_id: str, rows: Sequence[Dict[str, Any]], output_mode: OutputMode, batch_id: int) -> None:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise OSError("downstream unavailable")


class _UnreadableFileSystem(LocalFileSystem):
    def __init__(self, unreadable: str) -> None:
        self.unreadable = unreadable

    def read_text(self, path: Path) -> str:
        if path.name == self.unreadable:
            raise PermissionError(f"permission denied: {path.name}")
        return super().read_text(path)


class _HangingFileSystem(LocalFileSystem):
    """Every read of ``hung`` blocks until ``release`` is set."""

    def __init__(self, hung: str) -> None:
        self.hung = hung
        self.release = threading.Event()

    def read_text(self, path: Path) -> str:
        if path.name == self.hung:
            self.release.wait(10)
        return super().read_text(path)


class _FailingReadsFileSystem(LocalFileSystem):
    """Fails the listed attempt numbers (1-based) when reading ``name``."""

    def __init__(self, name: str, failing_attempts: Set[int]) -> None:
        self.name = name
        self.failing_attempts = failing_attempts
        self.attempts = 0

    def read_text(self, path: Path) -> str:
        if path.name == self.name:
            self.attempts += 1
            if self.attempts in self.failing_attempts:
                raise OSError(f"transient read error on attempt {self.attempts}")
        return super().read_text(path)


def _client_totals(sink: MemorySink) -> List[Dict[str, Any]]:
    return [
        {k: row[k] for k in ("client_id", "client_name", "total_spent", "order_count")}
        for row in sink.view("sales_by_client")
    ]


def _split_orders(make_row) -> List[List[List[str]]]:
    first = [
        make_row(1, 101, "Acme Corp", "120.50"),
        make_row(2, 102, "Globex", "80"),
        make_row(3, 103, "Initech", "15.25"),
    ]
    second = [
        make_row(4, 101, "Acme Corp", "300"),
        make_row(5, 103, "Initech", "4.75"),
        make_row(6, 104, "Umbrella", "99.99"),
    ]
    return [first, second]


def test_scenario_a_filter_and_global_aggregate(make_scheduler, write_orders, scenario_a_rows):
    write_orders("orders-001.csv", scenario_a_rows)
    sink = MemorySink()
    scheduler = make_scheduler(sinks=[sink])

    report = scheduler.run_once()

    assert report["committed"] is True
    assert report["batch_id"] == 0
    assert report["rows"] == 3
    assert sorted(row["total"] for row in sink.view("high_value_orders")) == [Decimal("150"), Decimal("200")]
    assert sink.view("global_sales") == [
        {
            "total_sales": EXPECTED_TOTAL_SALES,
            "total_orders": 3,
            "avg_order_value": EXPECTED_AVG_ORDER_VALUE,
        }
    ]
    assert scheduler.file_state("orders-001.csv") is FileState.COMMITTED


def test_scenario_b_same_totals_in_one_or_two_ticks(make_scheduler, write_orders, make_row, tmp_path: Path):
    first, second = _split_orders(make_row)

    together_dir = tmp_path / "together"
    write_orders("orders-001.csv", first, directory=together_dir)
    write_orders("orders-002.csv", second, directory=together_dir)
    together_sink = MemorySink()
    together = make_scheduler(
        sinks=[together_sink], watch_dir=together_dir, checkpoint_dir=tmp_path / "ckpt-together"
    )
    assert together.run_once()["rows"] == 6

    apart_dir = tmp_path / "apart"
    apart_sink = MemorySink()
    apart = make_scheduler(sinks=[apart_sink], watch_dir=apart_dir, checkpoint_dir=tmp_path / "ckpt-apart")
    write_orders("orders-001.csv", first, directory=apart_dir)
    assert apart.run_once()["batch_id"] == 0
    write_orders("orders-002.csv", second, directory=apart_dir)
    assert apart.run_once()["batch_id"] == 1

    assert _client_totals(apart_sink) == _client_totals(together_sink)
    assert apart_sink.view("global_sales") == together_sink.view("global_sales")
    acme = next(row for row in _client_totals(apart_sink) if row["client_id"] == 101)
    assert acme["total_spent"] == Decimal("420.50")
    assert acme["order_count"] == 2


def test_scenario_c_non_numeric_total_is_dropped_and_counted(make_scheduler, write_orders, scenario_a_rows, make_row):
    write_orders("orders-001.csv", [*scenario_a_rows, make_row(4, 102, "Globex", "abc")])
    sink = MemorySink()
    scheduler = make_scheduler(sinks=[sink])

    report = scheduler.run_once()

    assert report["committed"] is True
    assert report["parse_errors"] == 1
    assert report["rows"] == 3
    assert scheduler.stats.parse_errors == 1
    assert sink.view("global_sales")[0]["total_sales"] == EXPECTED_TOTAL_SALES
    assert [row["order_id"] for row in sink.view("raw_orders")] == [1, 2, 3]


def test_committed_files_are_never_reprocessed(make_scheduler, write_orders, scenario_a_rows):
    write_orders("orders-001.csv", scenario_a_rows)
    sink = MemorySink()
    scheduler = make_scheduler(sinks=[sink])
    scheduler.run_once()

    idle = scheduler.run_once()

    assert idle["files"] == []
    assert idle["committed"] is False
    assert scheduler.next_batch_id == 1
    assert sink.view("global_sales")[0]["total_orders"] == 3


def test_header_only_file_commits_without_a_batch(make_scheduler, write_orders, scenario_a_rows):
    write_orders("orders-000.csv", [])
    scheduler = make_scheduler()

    report = scheduler.run_once()

    assert report["committed"] is True
    assert report["batch_id"] is None
    assert scheduler.next_batch_id == 0
    assert "orders-000.csv" in scheduler.ledger.committed

    write_orders("orders-001.csv", scenario_a_rows)
    assert scheduler.run_once()["batch_id"] == 0


def test_restart_resumes_state_and_batch_ids(make_scheduler, write_orders, make_row, tmp_path: Path):
    first, second = _split_orders(make_row)
    write_orders("orders-001.csv", first)
    sink = MemorySink()
    make_scheduler(sinks=[sink]).run_once()

    write_orders("orders-002.csv", second)
    restarted = make_scheduler(sinks=[sink])
    checkpoint = restarted.recover()
    report = restarted.run_once()

    assert checkpoint is not None and checkpoint.batch_id == 0
    assert report["files"] == ["orders-002.csv"]
    assert report["batch_id"] == 1
    assert sink.view("global_sales")[0]["total_orders"] == 6
    assert sink.batches("raw_orders") == [0, 1]


def test_crash_between_emit_and_checkpoint_is_exactly_once(
    make_scheduler, write_orders, make_row, monkeypatch: pytest.MonkeyPatch
):
    first, second = _split_orders(make_row)
    sink = MemorySink()
    write_orders("orders-001.csv", first)
    scheduler = make_scheduler(sinks=[sink])
    scheduler.run_once()

    write_orders("orders-002.csv", second)

    def _die(*args, **kwargs):
        raise _Crash()

    monkeypatch.setattr(scheduler.checkpoints, "persist", _die)
    with pytest.raises(_Crash):
        scheduler.run_once()
    # The sinks already saw batch 1 before the crash.
    assert sink.batches("raw_orders") == [0, 1]

    restarted = make_scheduler(sinks=[sink])
    report = restarted.run_once()

    assert report["batch_id"] == 1
    assert report["files"] == ["orders-002.csv"]
    assert sink.batches("raw_orders") == [0, 1]
    assert [row["order_id"] for row in sink.view("raw_orders")] == [1, 2, 3, 4, 5, 6]
    assert sink.view("global_sales")[0]["total_orders"] == 6
    acme = next(row for row in _client_totals(sink) if row["client_id"] == 101)
    assert acme == {"client_id": 101, "client_name": "Acme Corp", "total_spent": Decimal("420.50"), "order_count": 2}


def test_sink_failure_aborts_tick_and_retries_same_batch(make_scheduler, write_orders, scenario_a_rows, test_settings):
    write_orders("orders-001.csv", scenario_a_rows)
    memory = MemorySink()
    flaky = _FlakySink(failures=1)
    scheduler = make_scheduler(sinks=[memory, flaky])

    aborted = scheduler.run_once()

    assert aborted["committed"] is False
    assert "downstream unavailable" in aborted["error"]
    assert scheduler.file_state("orders-001.csv") is FileState.IN_FLIGHT
    assert scheduler.state.read("global_sales") == {}
    assert scheduler.next_batch_id == 0
    assert CheckpointManager(test_settings.checkpoint_dir, scheduler.queries).restore() is None

    retried = scheduler.run_once()

    assert retried["committed"] is True
    assert retried["batch_id"] == 0
    assert scheduler.stats.ticks_aborted == 1
    assert [row["order_id"] for row in memory.view("raw_orders")] == [1, 2, 3]
    assert memory.view("global_sales")[0]["total_sales"] == EXPECTED_TOTAL_SALES


def test_unreadable_file_is_quarantined_after_retries(make_scheduler, write_orders, scenario_a_rows, make_row):
    write_orders("orders-001.csv", scenario_a_rows)
    write_orders("orders-002.csv", [make_row(9, 105, "Stark Ind", "999")])
    sink = MemorySink()
    scheduler = make_scheduler(
        sinks=[sink], filesystem=_UnreadableFileSystem("orders-002.csv"), max_file_retries=2
    )

    first = scheduler.run_once()
    assert first["committed"] is True
    assert first["committed_files"] == ["orders-001.csv"]
    assert first["failed_files"] == ["orders-002.csv"]
    assert scheduler.file_state("orders-002.csv") is FileState.DISCOVERED
    assert scheduler.ledger.read_failures == {"orders-002.csv": 1}

    second = scheduler.run_once()
    assert second["quarantined_files"] == ["orders-002.csv"]
    assert second["batch_id"] is None
    assert scheduler.file_state("orders-002.csv") is FileState.QUARANTINED

    third = scheduler.run_once()
    assert third["files"] == []
    assert sink.view("global_sales")[0]["total_orders"] == 3

    restarted = make_scheduler(sinks=[MemorySink()])
    restarted.recover()
    assert restarted.ledger.quarantined == {"orders-002.csv"}
    assert restarted.ledger.read_failures == {}


def test_hung_file_does_not_starve_later_files(make_scheduler, write_orders, scenario_a_rows):
    write_orders("a-stuck.csv", scenario_a_rows)
    filesystem = _HangingFileSystem("a-stuck.csv")
    sink = MemorySink()
    scheduler = make_scheduler(
        sinks=[sink], filesystem=filesystem, max_file_retries=5, file_read_timeout_seconds=0.05
    )
    try:
        for _ in range(3):
            assert scheduler.run_once()["failed_files"] == ["a-stuck.csv"]
        write_orders("b-healthy.csv", scenario_a_rows)

        reports = [scheduler.run_once() for _ in range(3)]

        assert reports[0]["committed_files"] == ["b-healthy.csv"]
        assert scheduler.file_state("b-healthy.csv") is FileState.COMMITTED
        assert scheduler.file_state("a-stuck.csv") is FileState.QUARANTINED
        assert reports[1]["quarantined_files"] == ["a-stuck.csv"]
        assert scheduler.ledger.read_failures == {}
        assert sink.view("global_sales")[0]["total_sales"] == EXPECTED_TOTAL_SALES
    finally:
        filesystem.release.set()


def test_successful_read_resets_failure_streak_even_if_tick_aborts(make_scheduler, write_orders, scenario_a_rows):
    write_orders("x.csv", scenario_a_rows)
    memory = MemorySink()
    scheduler = make_scheduler(
        sinks=[memory, _FlakySink(failures=1)],
        filesystem=_FailingReadsFileSystem("x.csv", {1, 3}),
        max_file_retries=2,
    )

    assert scheduler.run_once()["failed_files"] == ["x.csv"]
    assert scheduler.ledger.read_failures == {"x.csv": 1}

    aborted = scheduler.run_once()
    assert aborted["committed"] is False
    assert scheduler.ledger.read_failures == {}

    failed_again = scheduler.run_once()
    assert failed_again["quarantined_files"] == []
    assert scheduler.ledger.read_failures == {"x.csv": 1}
    assert scheduler.file_state("x.csv") is FileState.DISCOVERED

    committed = scheduler.run_once()
    assert committed["committed_files"] == ["x.csv"]
    assert memory.view("global_sales")[0]["total_sales"] == EXPECTED_TOTAL_SALES


def test_checkpoint_failure_aborts_then_becomes_fatal(
    make_scheduler, write_orders, scenario_a_rows, monkeypatch: pytest.MonkeyPatch
):
    write_orders("orders-001.csv", scenario_a_rows)
    scheduler = make_scheduler(max_checkpoint_failures=2)

    def _disk_full(path: Path, data: bytes) -> None:
        raise OSError("No space left on device")

    monkeypatch.setattr(checkpoint_module, "_write_durable", _disk_full)

    first = scheduler.run_once()
    assert first["committed"] is False
    assert "No space left" in first["error"]
    assert scheduler.file_state("orders-001.csv") is FileState.IN_FLIGHT
    assert scheduler.state.read("global_sales") == {}
    assert scheduler.stats.consecutive_checkpoint_failures == 1

    with pytest.raises(CheckpointWriteError) as excinfo:
        scheduler.run_once()
    assert excinfo.value.fatal


def test_checkpoint_recovers_after_transient_failure(
    make_scheduler, write_orders, scenario_a_rows, monkeypatch: pytest.MonkeyPatch
):
    write_orders("orders-001.csv", scenario_a_rows)
    sink = MemorySink()
    scheduler = make_scheduler(sinks=[sink])

    def _io_error(path: Path, data: bytes) -> None:
        raise OSError("I/O error")

    monkeypatch.setattr(checkpoint_module, "_write_durable", _io_error)

    assert scheduler.run_once()["committed"] is False
    monkeypatch.undo()

    report = scheduler.run_once()
    assert report["committed"] is True
    assert report["batch_id"] == 0
    assert scheduler.stats.consecutive_checkpoint_failures == 0
    assert sink.view("global_sales")[0]["total_orders"] == 3


def test_run_until_idle(make_scheduler, write_orders, scenario_a_rows):
    write_orders("orders-001.csv", scenario_a_rows)
    scheduler = make_scheduler()

    stats = scheduler.run(until_idle=True)

    assert stats.ticks == 2
    assert stats.batches_committed == 1
    assert stats.rows_committed == 3
    assert stats.files_committed == 1


def test_request_stop_ends_loop_between_ticks(make_scheduler):
    scheduler = make_scheduler()
    scheduler.request_stop()

    stats = scheduler.run(max_ticks=5)

    assert stats.ticks == 0
    assert scheduler.stopping


def test_file_order_within_batch_does_not_change_aggregates(make_scheduler, write_orders, make_row, tmp_path: Path):
    first, second = _split_orders(make_row)

    forward_dir, reverse_dir = tmp_path / "forward", tmp_path / "reverse"
    write_orders("a.csv", first, directory=forward_dir)
    write_orders("b.csv", second, directory=forward_dir)
    write_orders("a.csv", list(reversed(second)), directory=reverse_dir)
    write_orders("b.csv", list(reversed(first)), directory=reverse_dir)

    forward_sink, reverse_sink = MemorySink(), MemorySink()
    make_scheduler(sinks=[forward_sink], watch_dir=forward_dir, checkpoint_dir=tmp_path / "c1").run_once()
    make_scheduler(sinks=[reverse_sink], watch_dir=reverse_dir, checkpoint_dir=tmp_path / "c2").run_once()

    for query_id in ("global_sales", "sales_by_client", "top_products", "orders_by_status"):
        assert forward_sink.view(query_id) == reverse_sink.view(query_id)


def test_variant_two_end_to_end(make_scheduler, write_orders):
    from streamagg.domain.schema import SchemaVariant

    header = SchemaVariant.V2.field_names
    write_orders(
        "orders-001.csv",
        [
            ["1", "Acme Corp", "Desk", "furniture", "1", "240.00", "2024-02-01", "north", "240.00"],
            ["2", "Globex", "Pen", "stationery", "10", "1.10", "2024-02-02", "south", "11.00"],
            ["3", "Acme Corp", "Chair", "furniture", "2", "120.00", "2024-02-03", "north", "240.00"],
        ],
        header=header,
    )
    sink = MemorySink()
    scheduler = make_scheduler(sinks=[sink], schema_variant=SchemaVariant.V2)

    assert scheduler.run_once()["committed"] is True
    assert sink.view("sales_by_region") == [
        {"region": "north", "order_count": 2, "total_value": Decimal("480.00")},
        {"region": "south", "order_count": 1, "total_value": Decimal("11.00")},
    ]
    assert sink.view("sales_by_client")[0] == {
        "client_name": "Acme Corp",
        "total_spent": Decimal("480.00"),
        "order_count": 2,
    }


def test_wrong_variant_file_is_retried_then_quarantined(make_scheduler, write_orders):
    from streamagg.domain.schema import SchemaVariant

    write_orders("legacy.csv", [], header=SchemaVariant.V2.field_names)
    scheduler = make_scheduler(max_file_retries=1)

    report = scheduler.run_once()

    assert report["quarantined_files"] == ["legacy.csv"]
    assert scheduler.file_state("legacy.csv") is FileState.QUARANTINED
