"""Per-stage latency samples behind /api/admin/timings.

The hot path only appends a float; aggregates are computed on read.
"""
from __future__ import annotations
import statistics
import time
from collections import deque
from typing import Deque, Dict, List

# newest samples win once a stage is full
MAX_SAMPLES_PER_KIND = 10_000

# single-threaded event loop: no locks
_SAMPLES: Dict[str, Deque[float]] = {}


def record_timing(kind: str, seconds: float) -> None:
    samples = _SAMPLES.get(kind)
    if samples is None:
        samples = _SAMPLES[kind] = deque(maxlen=MAX_SAMPLES_PER_KIND)
    samples.append(float(seconds))


class timeit:
    """async with timeit("store.get_order"):
           order = await store.get_order(order_id)
    """
    __slots__ = ("kind", "started")

    def __init__(self, kind: str):
        self.kind = kind
        self.started = 0.0

    async def __aenter__(self):
        self.started = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self.kind, time.perf_counter() - self.started)


def _percentile(ordered: List[float], q: float) -> float:
    idx = int(round(q * (len(ordered) - 1)))
    return ordered[min(idx, len(ordered) - 1)]


def snapshot() -> List[Dict[str, float]]:
    """One row per stage, sorted by kind, durations in milliseconds."""
    rows = []
    for kind in sorted(_SAMPLES):
        ordered = sorted(_SAMPLES[kind])
        if not ordered:
            continue
        std = statistics.stdev(ordered) if len(ordered) > 1 else 0.0
        rows.append({
            "kind": kind,
            "n": len(ordered),
            "mean_ms": statistics.fmean(ordered) * 1000,
            "std_ms": std * 1000,
            "p95_ms": _percentile(ordered, 0.95) * 1000,
            "max_ms": ordered[-1] * 1000,
        })
    return rows


def reset() -> None:
    _SAMPLES.clear()
