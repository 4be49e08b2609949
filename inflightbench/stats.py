"""
Run-wide counters and the periodic stats printer.

One ``RunCounters`` exists per run: created by the orchestrator before any
client starts, read by the stats reporter, the status endpoint and the
shutdown path, and dropped when the run ends.
"""

import asyncio
import statistics
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from inflightbench.console import log_metric


@dataclass
class LatencyResult:
    samples:     int   = 0
    min_ms:      float = 0.0
    max_ms:      float = 0.0
    mean_ms:     float = 0.0
    median_ms:   float = 0.0
    p95_ms:      float = 0.0
    p99_ms:      float = 0.0
    stddev_ms:   float = 0.0

    @classmethod
    def from_samples(cls, latencies: list[float]) -> "LatencyResult":
        result = cls(samples=len(latencies))
        if latencies:
            latencies = sorted(latencies)
            result.min_ms    = latencies[0]
            result.max_ms    = latencies[-1]
            result.mean_ms   = statistics.mean(latencies)
            result.median_ms = statistics.median(latencies)
            result.p95_ms    = latencies[int(len(latencies) * 0.95)]
            result.p99_ms    = latencies[int(len(latencies) * 0.99)]
            if len(latencies) > 1:
                result.stddev_ms = statistics.stdev(latencies)
        return result


@dataclass
class _Watermark:
    threshold: int
    callback:  Callable[[], None]
    fired:     bool = False


@dataclass
class RunCounters:
    """Lock-protected totals shared by every publisher and subscriber."""

    published:  int = 0
    acked:      int = 0
    failed:     int = 0
    received:   int = 0
    anomalies:  int = 0
    started_at: float = field(default_factory=time.perf_counter)

    def __post_init__(self):
        self._lock = threading.Lock()
        self._latencies: list[float] = []
        self._watermarks: list[_Watermark] = []

    def add_watermark(self, threshold: int, callback: Callable[[], None]):
        """Call *callback* once, the first time publish attempts reach *threshold*."""
        with self._lock:
            mark = _Watermark(threshold, callback)
            if self.published < threshold:
                self._watermarks.append(mark)
                return
        callback()

    def record_attempt(self) -> int:
        with self._lock:
            self.published += 1
            count = self.published
            due = [w for w in self._watermarks if not w.fired and count >= w.threshold]
            for w in due:
                w.fired = True
        for w in due:
            w.callback()
        return count

    def record_ack(self, latency_ms: float | None = None):
        with self._lock:
            self.acked += 1
            if latency_ms is not None:
                self._latencies.append(latency_ms)

    def record_failure(self):
        with self._lock:
            self.failed += 1

    def record_delivery(self, parsed: bool = True):
        with self._lock:
            self.received += 1
            if not parsed:
                self.anomalies += 1

    @property
    def elapsed(self) -> float:
        return time.perf_counter() - self.started_at

    def latency(self) -> LatencyResult:
        with self._lock:
            samples = list(self._latencies)
        return LatencyResult.from_samples(samples)

    def snapshot(self) -> dict:
        with self._lock:
            snap = {
                "published": self.published,
                "acked":     self.acked,
                "failed":    self.failed,
                "received":  self.received,
                "anomalies": self.anomalies,
            }
        elapsed = self.elapsed
        snap["elapsed_s"] = round(elapsed, 3)
        snap["publish_rate"] = round(snap["published"] / elapsed, 1) if elapsed > 0 else 0.0
        snap["receive_rate"] = round(snap["received"] / elapsed, 1) if elapsed > 0 else 0.0
        return snap


def format_snapshot(snap: dict) -> str:
    return (f"⏱ {snap['elapsed_s']:.1f}s | Attempts: {snap['published']}, "
            f"Acks: {snap['acked']}, Fails: {snap['failed']}, "
            f"Received: {snap['received']}")


class StatsReporter:
    """Prints a counters snapshot every *interval* seconds until stopped."""

    def __init__(self, counters: RunCounters, interval: float):
        self.counters = counters
        self.interval = interval
        self._task: asyncio.Task | None = None

    def start(self):
        if self.interval > 0 and self._task is None:
            self._task = asyncio.create_task(self._run(), name="stats-reporter")

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            log_metric(format_snapshot(self.counters.snapshot()))

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
