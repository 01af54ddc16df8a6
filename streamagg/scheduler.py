"""
Micro-batch scheduler: the single coordinating loop of the engine.

Each tick discovers new files, parses them into one batch, fans the batch out to
every query executor in parallel, hands every query's rows to the sinks, and
only when all of that succeeded persists a checkpoint and applies the candidate
state. Any failure in between discards the tick's candidates; its files stay
in-flight and are retried on the next tick with the same batch id.

Usage (example):
    from streamagg.scheduler import build_scheduler

    with build_scheduler(settings) as scheduler:
        scheduler.run()
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Sequence, Tuple, TypedDict

from streamagg.config import Settings, get_settings
from streamagg.domain.models import Batch, FileState, Ledger, Record, SourceFile
from streamagg.domain.schema import SchemaRegistry
from streamagg.errors import (
    CheckpointWriteError,
    SchemaValidationError,
    SinkWriteError,
    SourceReadError,
)
from streamagg.infrastructure.checkpoint import Checkpoint, CheckpointManager
from streamagg.infrastructure.filesystem import FileSystem
from streamagg.infrastructure.sinks import SinkWriter, build_sink
from streamagg.queries.abstract import QueryResult
from streamagg.queries.manager import QueryManager
from streamagg.source import FileSourceMonitor
from streamagg.state import Partition, StateStore
from streamagg.utils.logging import bind, get_logger
from streamagg.utils.profiler import profile_block

log = get_logger(__name__)


class TickReport(TypedDict, total=False):
    """
    Outcome of one scheduler tick. ``committed`` is True when a checkpoint was
    published (with or without a batch).
    """

    tick: int
    batch_id: Optional[int]
    files: List[str]
    committed_files: List[str]
    failed_files: List[str]
    quarantined_files: List[str]
    rows: int
    parse_errors: int
    merge_errors: int
    committed: bool
    error: Optional[str]
    profile: Dict[str, object]


@dataclass
class EngineStats:
    ticks: int = 0
    ticks_committed: int = 0
    ticks_aborted: int = 0
    batches_committed: int = 0
    rows_committed: int = 0
    parse_errors: int = 0
    merge_errors: int = 0
    files_committed: int = 0
    files_quarantined: int = 0
    consecutive_checkpoint_failures: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class MicroBatchScheduler:
    """
    Owns batch lifecycle, the in-memory ledger and every commit decision.

    Parameters
    ----------
    monitor : FileSourceMonitor
        Discovers and reads source files.
    registry : SchemaRegistry
        Parses raw rows for the configured variant.
    queries : QueryManager
        The run's query catalog.
    state : StateStore
        Committed accumulator partitions; only this scheduler writes to it.
    checkpoints : CheckpointManager
        Durable commit point.
    sinks : Sequence[SinkWriter]
        Every query's rows go to every sink.
    """

    def __init__(
        self,
        monitor: FileSourceMonitor,
        registry: SchemaRegistry,
        queries: QueryManager,
        state: StateStore,
        checkpoints: CheckpointManager,
        sinks: Sequence[SinkWriter],
        poll_interval: float = 5.0,
        max_file_retries: int = 3,
        max_checkpoint_failures: int = 3,
        query_workers: int = 4,
    ) -> None:
        self.monitor = monitor
        self.registry = registry
        self.queries = queries
        self.state = state
        self.checkpoints = checkpoints
        self.sinks = list(sinks)
        self.poll_interval = poll_interval
        self.max_file_retries = max_file_retries
        self.max_checkpoint_failures = max_checkpoint_failures

        self._ledger = Ledger()
        self._last_batch_id = -1
        self._tracked: Dict[str, SourceFile] = {}
        self._stats = EngineStats()
        self._recovered = False
        self._stop = threading.Event()
        self._log = bind(log)
        self._pool = ThreadPoolExecutor(max_workers=query_workers, thread_name_prefix="query")

    # ----------------------------------------------------------------- accessors

    @property
    def ledger(self) -> Ledger:
        return self._ledger.copy_for_tick()

    @property
    def last_batch_id(self) -> int:
        return self._last_batch_id

    @property
    def next_batch_id(self) -> int:
        return self._last_batch_id + 1

    @property
    def stats(self) -> EngineStats:
        return self._stats

    def file_state(self, path: str) -> Optional[FileState]:
        if path in self._ledger.committed:
            return FileState.COMMITTED
        if path in self._ledger.quarantined:
            return FileState.QUARANTINED
        tracked = self._tracked.get(path)
        return tracked.state if tracked else None

    # ----------------------------------------------------------------- lifecycle

    def recover(self) -> Optional[Checkpoint]:
        """
        Restore ledger, batch id and state from the last checkpoint. Called once,
        before the first tick.

        Raises
        ------
        CheckpointCorruptError
            If the stored checkpoint cannot be trusted; the engine must not start.
        """
        checkpoint = self.checkpoints.restore()
        if checkpoint is not None:
            self._ledger = checkpoint.ledger
            self._last_batch_id = checkpoint.batch_id
            self.state.restore(checkpoint.states)
        self._recovered = True
        log.info(
            "[RECOVERY] Engine state restored" if checkpoint else "[RECOVERY] No checkpoint; starting fresh",
            extra={"next_batch_id": self.next_batch_id, "committed_files": len(self._ledger.committed)},
        )
        return checkpoint

    def request_stop(self) -> None:
        """Ask the loop to stop after the current tick has committed or aborted."""
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def close(self) -> None:
        self._pool.shutdown(wait=True)
        self.monitor.close()

    def __enter__(self) -> "MicroBatchScheduler":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def run(self, max_ticks: Optional[int] = None, until_idle: bool = False) -> EngineStats:
        """
        Drive ticks until stopped.

        Parameters
        ----------
        max_ticks : int | None
            Stop after this many ticks.
        until_idle : bool
            Stop after the first tick that made no durable progress.

        Raises
        ------
        CheckpointWriteError
            With ``fatal=True`` once checkpoint writes keep failing; durability
            can no longer be guaranteed.
        """
        if not self._recovered:
            self.recover()

        ticks = 0
        while not self._stop.is_set():
            report = self.run_once()
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            if until_idle and not report.get("committed"):
                break
            self._stop.wait(self.poll_interval)

        log.info("[ENGINE STOP] Scheduler loop finished", extra=self._stats.as_dict())
        return self._stats

    # ----------------------------------------------------------------- tick

    def run_once(self) -> TickReport:
        """Run exactly one tick and return its report."""
        if not self._recovered:
            self.recover()

        self._stats.ticks += 1
        tick = self._stats.ticks
        with profile_block(f"tick-{tick}") as stats:
            report = self._tick(tick)
            stats.rows = report["rows"]
        report["profile"] = stats.as_dict()
        if report["files"]:
            self._log.debug("Tick profile", extra={"profile": report["profile"]})
        return report

    def _tick(self, tick: int) -> TickReport:
        batch_id = self.next_batch_id
        self._log = bind(log, tick=tick, batch_id=batch_id)
        report = TickReport(
            tick=tick,
            batch_id=None,
            files=[],
            committed_files=[],
            failed_files=[],
            quarantined_files=[],
            rows=0,
            parse_errors=0,
            merge_errors=0,
            committed=False,
            error=None,
        )

        candidates = self.monitor.discover(self._ledger)
        if not candidates:
            self._log.debug("No new files")
            return report

        candidates = [self._tracked.setdefault(source.path, source) for source in candidates]
        for source in candidates:
            source.mark(FileState.IN_FLIGHT)
        report["files"] = [source.path for source in candidates]
        self._log.info(f"[TICK START] #{tick} batch={batch_id}", extra={"files": report["files"]})

        batch, read_ok = self._build_batch(batch_id, candidates, report)
        report["rows"] = len(batch)
        report["parse_errors"] = batch.parse_errors
        self._stats.parse_errors += batch.parse_errors

        if batch.is_empty:
            # Nothing for the queries; still settle files that were read (all rows
            # dropped or header only) and make failure counts durable.
            if read_ok or report["failed_files"]:
                self._commit(tick, None, read_ok, {}, report)
            return report

        try:
            results = self._fan_out(batch)
            report["merge_errors"] = sum(r.merge_errors for r in results)
            self._emit(results, batch.batch_id)
        except SinkWriteError as exc:
            self._abort(tick, batch_id, read_ok, exc, report)
            return report
        except Exception as exc:  # noqa: BLE001 - a failing query must abort the tick, not the engine
            self._log.exception(f"[QUERY FAILED] tick #{tick}")
            self._abort(tick, batch_id, read_ok, exc, report)
            return report

        candidates_by_query = {r.query_id: r.candidate for r in results if r.candidate is not None}
        if self._commit(tick, batch, read_ok, candidates_by_query, report):
            self._stats.merge_errors += report["merge_errors"]
        return report

    def _build_batch(
        self, batch_id: int, candidates: List[SourceFile], report: TickReport
    ) -> Tuple[Batch, List[str]]:
        records: List[Record] = []
        read_ok: List[str] = []
        parse_errors = 0

        for source in candidates:
            try:
                raw_rows = self.monitor.read(source)
            except SourceReadError as exc:
                self._record_read_failure(source, exc, report)
                continue

            dropped = 0
            for line, raw in raw_rows:
                try:
                    records.append(self.registry.parse(raw, line=line, path=source.path))
                except SchemaValidationError as exc:
                    dropped += 1
                    self._log.debug(f"[ROW DROPPED] {exc}", extra={"path": source.path, "line": line})
            if dropped:
                self._log.warning(
                    f"Dropped {dropped} malformed row(s) from {source.path}",
                    extra={"path": source.path, "dropped": dropped, "rows": len(raw_rows)},
                )
            parse_errors += dropped
            read_ok.append(source.path)
            self._ledger.record_success(source.path)

        batch = Batch(
            batch_id=batch_id,
            records=tuple(records),
            files=tuple(read_ok),
            parse_errors=parse_errors,
        )
        return batch, read_ok

    def _record_read_failure(self, source: SourceFile, exc: SourceReadError, report: TickReport) -> None:
        # Failure counts live in the in-memory ledger regardless of how the tick
        # ends, and become durable with the next checkpoint.
        failures = self._ledger.record_failure(source.path)
        report["failed_files"].append(source.path)
        if failures >= self.max_file_retries:
            self._ledger.quarantine(source.path)
            source.mark(FileState.QUARANTINED)
            self._tracked.pop(source.path, None)
            self._stats.files_quarantined += 1
            report["quarantined_files"].append(source.path)
            self._log.error(
                f"[QUARANTINE] {source.path} excluded after {failures} failed reads: {exc.reason}",
                extra={"path": source.path, "failures": failures},
            )
        else:
            source.mark(FileState.DISCOVERED)
            self._log.warning(
                f"[READ FAILED] {source.path} ({failures}/{self.max_file_retries}): {exc.reason}",
                extra={"path": source.path, "failures": failures},
            )

    def _fan_out(self, batch: Batch) -> List[QueryResult]:
        """Run every executor on the frozen batch; each sees only committed state."""
        futures = []
        for executor in self.queries.executors:
            committed = self.state.read(executor.query_id) if executor.definition.is_stateful else None
            futures.append(self._pool.submit(executor.execute, batch, committed))
        # Join point: every query has finished before anything is emitted.
        return [future.result() for future in futures]

    def _emit(self, results: List[QueryResult], batch_id: int) -> None:
        for result in results:
            for sink in self.sinks:
                try:
                    sink.write(result.query_id, result.rows, result.output_mode, batch_id)
                except SinkWriteError:
                    raise
                except Exception as exc:  # noqa: BLE001 - any sink failure aborts the tick
                    raise SinkWriteError(result.query_id, f"{type(exc).__name__}: {exc}") from exc

    def _commit(
        self,
        tick: int,
        batch: Optional[Batch],
        read_ok: List[str],
        candidates: Dict[str, Partition],
        report: TickReport,
    ) -> bool:
        ledger = self._ledger.copy_for_tick()
        ledger.commit(read_ok)
        batch_id = batch.batch_id if batch is not None else self._last_batch_id
        states = self.state.snapshot()
        states.update(candidates)

        try:
            self._persist(batch_id, ledger, states)
        except CheckpointWriteError as exc:
            if exc.fatal:
                raise
            self._abort(tick, batch_id, read_ok, exc, report)
            return False

        # Published: make it visible in memory.
        self.state.apply_all(candidates)
        self._ledger = ledger
        for path in read_ok:
            tracked = self._tracked.pop(path, None)
            if tracked is not None:
                tracked.mark(FileState.COMMITTED)
        self._stats.ticks_committed += 1
        self._stats.files_committed += len(read_ok)
        report["committed"] = True
        report["committed_files"] = list(read_ok)

        if batch is not None:
            self._last_batch_id = batch.batch_id
            self._stats.batches_committed += 1
            self._stats.rows_committed += len(batch)
            report["batch_id"] = batch.batch_id
        self._log.info(
            f"[TICK COMMIT] #{tick} batch={batch.batch_id if batch is not None else '-'}",
            extra={
                "batch_id": report["batch_id"],
                "files": len(read_ok),
                "rows": report["rows"],
                "parse_errors": report["parse_errors"],
                "merge_errors": report["merge_errors"],
            },
        )
        return True

    def _persist(self, batch_id: int, ledger: Ledger, states: Dict[str, Partition]) -> None:
        try:
            self.checkpoints.persist(batch_id, ledger, states)
        except CheckpointWriteError as exc:
            self._stats.consecutive_checkpoint_failures += 1
            failures = self._stats.consecutive_checkpoint_failures
            if failures >= self.max_checkpoint_failures:
                self._log.critical(
                    f"[DURABILITY LOST] {failures} consecutive checkpoint failures; stopping",
                    extra={"failures": failures},
                )
                raise CheckpointWriteError(str(exc), fatal=True) from exc
            raise
        self._stats.consecutive_checkpoint_failures = 0

    def _abort(self, tick: int, batch_id: int, read_ok: List[str], exc: Exception, report: TickReport) -> None:
        self._stats.ticks_aborted += 1
        report["committed"] = False
        report["error"] = str(exc)
        self._log.error(f"[TICK ABORT] #{tick} batch={batch_id}: {exc}", extra={"in_flight": read_ok})


def build_scheduler(
    settings: Optional[Settings] = None,
    sinks: Optional[Sequence[SinkWriter]] = None,
    filesystem: Optional[FileSystem] = None,
) -> MicroBatchScheduler:
    """
    Wire a scheduler from settings: registry, query catalog, state store,
    checkpoint manager, source monitor and sinks.
    """
    settings = settings or get_settings()
    registry = SchemaRegistry(settings.schema_variant)
    queries = QueryManager.for_variant(registry)
    state = StateStore(queries.stateful_ids)
    checkpoints = CheckpointManager(settings.checkpoint_dir, queries, retain=settings.checkpoint_retain)
    monitor = FileSourceMonitor(
        settings.watch_dir,
        header=registry.field_names,
        filesystem=filesystem,
        pattern=settings.file_pattern,
        read_timeout=settings.file_read_timeout_seconds,
    )
    if sinks is None:
        sinks = [build_sink(settings.sink, settings.output_dir)]
    return MicroBatchScheduler(
        monitor=monitor,
        registry=registry,
        queries=queries,
        state=state,
        checkpoints=checkpoints,
        sinks=sinks,
        poll_interval=settings.poll_interval_seconds,
        max_file_retries=settings.max_file_retries,
        max_checkpoint_failures=settings.max_checkpoint_failures,
        query_workers=settings.query_workers,
    )


__all__ = ["EngineStats", "MicroBatchScheduler", "TickReport", "build_scheduler"]
