from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from streamagg.state import (
    GLOBAL_KEY,
    Accumulator,
    StateStore,
    partition_from_payload,
    partition_to_payload,
)

EXPECTED_TOTAL = Decimal("0.3")


def _acc(count: int, **sums: str) -> Accumulator:
    return Accumulator(count=count, sums={name: Decimal(value) for name, value in sums.items()})


def test_add_counts_rows_and_sums_fields():
    acc = Accumulator()
    acc.add({"total": Decimal("0.1")})
    acc.add({"total": Decimal("0.2")})
    assert acc.count == 2
    assert acc.sum_of("total") == EXPECTED_TOTAL
    assert acc.sum_of("quantity") == Decimal(0)


def test_merge_is_exact_and_associative():
    a, b, c = _acc(1, total="0.1"), _acc(1, total="0.2"), _acc(3, total="0.0001", quantity="4")

    left = a.merge(b).merge(c)
    right = a.merge(b.merge(c))

    assert left == right
    assert left.count == 5
    assert left.sum_of("total") == Decimal("0.3001")
    assert a == _acc(1, total="0.1")


def test_payload_restores_typed_keys():
    partition = {
        (101, "Acme Corp"): _acc(2, total="250.00"),
        (102, "Globex"): _acc(1, total="150"),
    }
    coercers = [int, str]

    entries = partition_to_payload(partition)
    restored = partition_from_payload(entries, coercers)

    assert [entry["key"] for entry in entries] == [[101, "Acme Corp"], [102, "Globex"]]
    assert entries[0]["sums"] == {"total": "250.00"}
    assert restored == partition


def test_payload_encodes_dates_and_global_key():
    entries = partition_to_payload({(date(2024, 1, 5),): _acc(1, total="5")})
    assert entries[0]["key"] == ["2024-01-05"]

    restored = partition_from_payload(partition_to_payload({GLOBAL_KEY: _acc(3, total="400")}), [])
    assert restored == {(): _acc(3, total="400")}


@pytest.mark.parametrize(
    "entries",
    [
        [{"key": [1, "x"], "count": 1, "sums": {}}],
        [{"key": [1], "count": -1, "sums": {}}],
        [{"key": [1], "count": 1, "sums": {}}, {"key": ["1"], "count": 2, "sums": {}}],
    ],
)
def test_payload_rejects_malformed_entries(entries):
    with pytest.raises(ValueError):
        partition_from_payload(entries, [int])


def test_read_returns_independent_copy():
    store = StateStore(["global_sales"])
    store.apply_committed("global_sales", {GLOBAL_KEY: _acc(1, total="10")})

    view = store.read("global_sales")
    view[GLOBAL_KEY].add({"total": Decimal("5")})
    view[("new",)] = _acc(1)

    assert store.read("global_sales") == {GLOBAL_KEY: _acc(1, total="10")}
    assert store.group_count("global_sales") == 1


def test_apply_all_and_snapshot():
    store = StateStore(["a", "b"])
    store.apply_all({"a": {GLOBAL_KEY: _acc(2, total="3")}, "b": {("x",): _acc(1)}})

    snapshot = store.snapshot()
    snapshot["a"][GLOBAL_KEY].count = 99

    assert store.read("a")[GLOBAL_KEY].count == 2
    assert store.query_ids == ["a", "b"]


def test_restore_replaces_partitions():
    store = StateStore(["a"])
    store.apply_committed("a", {("stale",): _acc(1)})
    store.restore({"a": {("fresh",): _acc(4)}})
    assert store.read("a") == {("fresh",): _acc(4)}
    assert store.read("unknown") == {}
