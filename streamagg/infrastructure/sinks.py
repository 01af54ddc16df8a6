"""
Sink writers: the output boundary of the engine.

``append`` writes add a batch's rows to the destination's running view;
``complete`` writes replace the view with the full current table. Writes are
keyed by ``(query_id, batch_id)`` so a batch replayed after an aborted tick or
a crash replaces its earlier rows instead of duplicating them.
"""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from pydantic_core import to_jsonable_python
from rich.console import Console

from streamagg.errors import SinkWriteError
from streamagg.queries.abstract import OutputMode
from streamagg.reporter import render_query_table
from streamagg.utils.logging import get_logger

log = get_logger(__name__)

Row = Dict[str, Any]


@runtime_checkable
class SinkWriter(Protocol):
    """
    Common interface all sinks implement.

    Implementations raise (ideally ``SinkWriteError``) on failure; they must not
    swallow errors, since the scheduler relies on the exception to abort the tick.
    """

    name: str

    def write(self, query_id: str, rows: Sequence[Row], output_mode: OutputMode, batch_id: int) -> None:
        ...


class ConsoleSink:
    """Prints each query's rows as a rich table tagged with query name and batch id."""

    name: str = "console"

    def __init__(self, console: Optional[Console] = None, max_rows: int = 50) -> None:
        self.console = console or Console()
        self.max_rows = max_rows

    def write(self, query_id: str, rows: Sequence[Row], output_mode: OutputMode, batch_id: int) -> None:
        self.console.print(
            render_query_table(query_id, rows, output_mode, batch_id, max_rows=self.max_rows)
        )


class MemorySink:
    """
    Keeps every query's current view in memory.

    Append views are stored per batch id, so re-delivering a batch id replaces
    that batch's rows.
    """

    name: str = "memory"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._complete: Dict[str, List[Row]] = {}
        self._append: Dict[str, Dict[int, List[Row]]] = {}
        self.writes: List[Dict[str, Any]] = []

    def write(self, query_id: str, rows: Sequence[Row], output_mode: OutputMode, batch_id: int) -> None:
        snapshot = [dict(row) for row in rows]
        with self._lock:
            if output_mode is OutputMode.COMPLETE:
                self._complete[query_id] = snapshot
            else:
                self._append.setdefault(query_id, {})[batch_id] = snapshot
            self.writes.append(
                {"query_id": query_id, "batch_id": batch_id, "mode": output_mode.value, "rows": len(snapshot)}
            )

    def view(self, query_id: str) -> List[Row]:
        """Current view of a query: the latest table, or all appended rows in batch order."""
        with self._lock:
            if query_id in self._complete:
                return [dict(row) for row in self._complete[query_id]]
            batches = self._append.get(query_id, {})
            return [dict(row) for batch_id in sorted(batches) for row in batches[batch_id]]

    def batches(self, query_id: str) -> List[int]:
        with self._lock:
            return sorted(self._append.get(query_id, {}))


class JsonFileSink:
    """
    Writes JSON files under ``output_dir``:

    - complete: ``<query_id>.json`` holding the full table, replaced atomically;
    - append: ``<query_id>/batch-<id>.json`` per batch, so a replay overwrites.
    """

    name: str = "json"

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = Path(output_dir)

    def write(self, query_id: str, rows: Sequence[Row], output_mode: OutputMode, batch_id: int) -> None:
        if output_mode is OutputMode.COMPLETE:
            target = self.output_dir / f"{query_id}.json"
        else:
            target = self.output_dir / query_id / f"batch-{batch_id:08d}.json"
        payload = {
            "query_id": query_id,
            "batch_id": batch_id,
            "output_mode": output_mode.value,
            "rows": to_jsonable_python(list(rows)),
        }
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(f".{target.name}.tmp")
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, sort_keys=True)
            os.replace(tmp, target)
        except OSError as exc:
            raise SinkWriteError(query_id, str(exc)) from exc
        log.debug("Sink file written", extra={"query_id": query_id, "path": str(target)})

    def view(self, query_id: str) -> List[Row]:
        complete = self.output_dir / f"{query_id}.json"
        if complete.exists():
            return json.loads(complete.read_text(encoding="utf-8"))["rows"]
        rows: List[Row] = []
        for path in sorted((self.output_dir / query_id).glob("batch-*.json")):
            rows.extend(json.loads(path.read_text(encoding="utf-8"))["rows"])
        return rows


def build_sink(kind: str, output_dir: Optional[Path] = None) -> SinkWriter:
    """Resolve a configured sink name."""
    if kind == "console":
        return ConsoleSink()
    if kind == "memory":
        return MemorySink()
    if kind == "json":
        return JsonFileSink(output_dir or Path("data/output"))
    raise ValueError(f"Unknown sink '{kind}'. Available: console, json, memory")


__all__ = ["ConsoleSink", "JsonFileSink", "MemorySink", "SinkWriter", "build_sink"]
