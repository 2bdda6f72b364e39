"""
Core utilities for the kg_analytics framework.
Contains shared timing helpers and the wall-clock budget used by path search.
"""
import threading
import time
from collections import defaultdict
from contextlib import contextmanager

import pandas as pd


class TimingStats:
    """
    Per-instance timer registry.

    Running timers are kept per thread, so one analyzer shared between
    the analysis bus and a CLI call does not mix up its start marks.
    """

    def __init__(self):
        self.stats = defaultdict(list)
        self._running = threading.local()
        self._lock = threading.Lock()

    def _timers(self):
        timers = getattr(self._running, 'timers', None)
        if timers is None:
            timers = self._running.timers = {}
        return timers

    def start(self, operation):
        self._timers()[operation] = time.perf_counter()

    def end(self, operation):
        """Stop ``operation`` and return its elapsed seconds (None if it never started)."""
        started = self._timers().pop(operation, None)
        if started is None:
            return None
        elapsed = time.perf_counter() - started
        with self._lock:
            self.stats[operation].append(elapsed)
        return elapsed

    @contextmanager
    def timed(self, operation):
        self.start(operation)
        try:
            yield
        finally:
            self.end(operation)

    def to_frame(self):
        """One row per operation: count, total, mean, min and max seconds, slowest first."""
        with self._lock:
            rows = [{'operation': op, 'count': len(times), 'total': sum(times),
                     'mean': sum(times) / len(times), 'min': min(times), 'max': max(times)}
                    for op, times in self.stats.items() if times]
        frame = pd.DataFrame(rows, columns=['operation', 'count', 'total', 'mean', 'min', 'max'])
        return frame.sort_values('total', ascending=False).reset_index(drop=True)

    def get_operation_total(self, operation):
        with self._lock:
            return sum(self.stats.get(operation, ()))


class PerformanceMonitor:
    """Process-wide accumulator for the timed sections of CLI runs."""

    def __init__(self, enabled=True):
        self.enabled = enabled
        self._lock = threading.Lock()
        self.reset()

    def reset(self):
        with self._lock:
            self.totals = defaultdict(float)
            self.counts = defaultdict(int)
            self.started = time.perf_counter()

    @contextmanager
    def timed_operation(self, operation_name, verbose=False):
        """
        Time the enclosed block under ``operation_name``.

        Nothing is recorded while the monitor is disabled. With ``verbose``
        the elapsed time of this call is printed as it finishes.
        """
        if not self.enabled:
            yield
            return

        start_time = time.perf_counter()
        try:
            yield
        finally:
            elapsed = time.perf_counter() - start_time
            with self._lock:
                self.totals[operation_name] += elapsed
                self.counts[operation_name] += 1
            if verbose:
                print(f"  [{operation_name}] {elapsed:.3f}s")

    def summary_frame(self):
        wall = time.perf_counter() - self.started
        with self._lock:
            rows = [{'operation': op, 'seconds': total, 'calls': self.counts[op],
                     'share': 100.0 * total / wall if wall > 0 else 0.0}
                    for op, total in self.totals.items()]
        frame = pd.DataFrame(rows, columns=['operation', 'seconds', 'calls', 'share'])
        return frame.sort_values('seconds', ascending=False).reset_index(drop=True), wall

    def print_timing_summary(self):
        if not self.enabled:
            return

        frame, wall = self.summary_frame()
        print("\n======== TIMING SUMMARY ========")
        print(f"Wall time: {wall:.2f} seconds")
        for row in frame.itertuples(index=False):
            print(f"  {row.operation:<36} {row.seconds:9.3f}s ({row.share:5.1f}%)  x{row.calls}")
        print("================================")


# Global performance monitor
perf_monitor = PerformanceMonitor(enabled=True)


class SearchBudget:
    """
    Wall-clock and result-count budget for exhaustive searches.

    Parameters:
    -----------
    max_results : int or None
        Stop once this many results have been accepted.
    timeout_ms : float or None
        Stop once this many milliseconds have elapsed since creation.
    clock : callable, optional
        Monotonic clock returning seconds, injectable for tests.
    """

    def __init__(self, max_results=None, timeout_ms=None, clock=time.monotonic):
        self.max_results = max_results
        self.timeout_ms = timeout_ms
        self._clock = clock
        self.started = clock()
        self.deadline = None if timeout_ms is None else self.started + timeout_ms / 1000.0
        self.accepted = 0
        self.timed_out = False

    def expired(self):
        """True (and sticky) once the deadline has passed."""
        if not self.timed_out and self.deadline is not None and self._clock() > self.deadline:
            self.timed_out = True
        return self.timed_out

    def accept(self):
        self.accepted += 1

    @property
    def full(self):
        return self.max_results is not None and self.accepted >= self.max_results

    @property
    def elapsed_ms(self):
        return (self._clock() - self.started) * 1000.0
