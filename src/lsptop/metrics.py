"""Process-wide counters and latency histograms.

Every daemon operation goes through :meth:`Metrics.track`, which bumps
``<name>.calls`` before the operation runs, records the duration in the
``<name>`` histogram once it finishes, and bumps ``<name>.errors`` when it
raises. All mutation happens on the daemon's event loop thread, so there
is no locking; :meth:`Metrics.snapshot` copies everything it returns.
"""

from __future__ import annotations

import bisect
import math
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any


def percentile(sorted_samples: list[float], fraction: float) -> float:
    """Nearest-rank percentile of an already sorted sample list."""
    if not sorted_samples:
        return 0.0
    rank = max(1, math.ceil(fraction * len(sorted_samples)))
    return sorted_samples[min(rank, len(sorted_samples)) - 1]


@dataclass
class Metrics:
    counters: dict[str, int] = field(default_factory=dict)
    histograms: dict[str, list[float]] = field(default_factory=dict)
    started_at: float = field(default_factory=time.monotonic)

    def increment(self, name: str, amount: int = 1) -> None:
        self.counters[name] = self.counters.get(name, 0) + amount

    def observe(self, name: str, duration_ms: float) -> None:
        # Samples stay sorted so percentiles are a lookup.
        bisect.insort(self.histograms.setdefault(name, []), duration_ms)

    @contextmanager
    def track(self, name: str) -> Iterator[None]:
        """Count, time and error-count one operation called ``name``."""
        self.increment(f"{name}.calls")
        start = time.perf_counter()
        try:
            yield
        except BaseException:
            self.increment(f"{name}.errors")
            raise
        finally:
            self.observe(name, (time.perf_counter() - start) * 1000)

    def counter(self, name: str) -> int:
        return self.counters.get(name, 0)

    def uptime(self) -> float:
        return time.monotonic() - self.started_at

    def summary(self, name: str) -> dict[str, Any]:
        samples = self.histograms.get(name, [])
        return {
            "count": len(samples),
            "p50": round(percentile(samples, 0.50), 3),
            "p95": round(percentile(samples, 0.95), 3),
            "max": round(samples[-1], 3) if samples else 0.0,
        }

    def snapshot(self) -> dict[str, Any]:
        return {
            "counters": dict(sorted(self.counters.items())),
            "histograms": {name: self.summary(name) for name in sorted(self.histograms)},
        }


_metrics: Metrics | None = None


def get_metrics() -> Metrics:
    """Return the process-wide Metrics, creating it on first use."""
    global _metrics
    if _metrics is None:
        _metrics = Metrics()
    return _metrics


def init_metrics() -> Metrics:
    """Start a fresh Metrics instance (daemon start, tests)."""
    global _metrics
    _metrics = Metrics()
    return _metrics
