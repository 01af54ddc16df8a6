"""
Per-tick resource profiling.

The scheduler wraps every tick in ``profile_block``; the resulting numbers end
up in the tick report (``TickReport["profile"]``) and in the engine's debug
logs. A background thread samples RSS so short allocation spikes during a
large batch are not missed.

Usage:
    from streamagg.utils.profiler import profile_block

    with profile_block("tick-12") as stats:
        rows = process_batch()
    stats.rows = rows
    print(stats.as_dict())
"""

from __future__ import annotations

import contextlib
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Generator, Optional

import psutil


@dataclass
class ProfileStats:
    label: str
    duration_seconds: float = 0.0
    peak_rss_bytes: Optional[int] = None
    cpu_percent: Optional[float] = None
    rows: int = 0

    @property
    def rows_per_second(self) -> Optional[float]:
        if not self.rows or self.duration_seconds <= 0:
            return None
        return self.rows / self.duration_seconds

    def as_dict(self) -> Dict[str, Any]:
        throughput = self.rows_per_second
        return {
            "label": self.label,
            "duration_seconds": round(self.duration_seconds, 4),
            "rows": self.rows,
            "rows_per_second": round(throughput, 1) if throughput is not None else None,
            "peak_rss_bytes": self.peak_rss_bytes,
            "cpu_percent": round(self.cpu_percent, 1) if self.cpu_percent is not None else None,
        }


class _RssSampler(threading.Thread):
    """Polls the process RSS until stopped and keeps the maximum seen."""

    def __init__(self, process: psutil.Process, interval_seconds: float, label: str) -> None:
        super().__init__(name=f"rss-{label}", daemon=True)
        self.process = process
        self.interval_seconds = interval_seconds
        self.peak = process.memory_info().rss
        self._halt = threading.Event()

    def run(self) -> None:
        while not self._halt.wait(self.interval_seconds):
            try:
                self.peak = max(self.peak, self.process.memory_info().rss)
            except psutil.Error:
                return

    def stop(self) -> int:
        self._halt.set()
        self.join(timeout=1.0)
        return self.peak


@contextlib.contextmanager
def profile_block(label: str, sample_interval_ms: int = 50) -> Generator[ProfileStats, None, None]:
    """
    Measure wall time, CPU share and peak RSS of the enclosed block.

    ``stats.rows`` may be set inside or after the block to get a throughput
    figure in ``as_dict()``.
    """
    stats = ProfileStats(label=label)
    process = psutil.Process()
    process.cpu_percent(interval=None)  # primes the counter; the first reading is always 0.0
    sampler = _RssSampler(process, sample_interval_ms / 1000.0, label)
    sampler.start()

    started = time.perf_counter()
    try:
        yield stats
    finally:
        stats.duration_seconds = time.perf_counter() - started
        stats.peak_rss_bytes = sampler.stop() or None
        stats.cpu_percent = process.cpu_percent(interval=None)


__all__ = ["ProfileStats", "profile_block"]
