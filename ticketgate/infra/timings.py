# ticketgate/infra/timings.py
"""
In-process latency samples per operation, served by GET /api/admin/timings.

Recording is an append to a bounded deque; aggregation happens only when
someone asks for a snapshot. Single event loop, so no locks.
"""

from __future__ import annotations
import statistics
import time
from collections import defaultdict, deque
from typing import Deque, Dict

# newest samples win once a long-running gate fills the window
WINDOW = 10_000

_SAMPLES: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=WINDOW))
_ERRORS: Dict[str, int] = defaultdict(int)


def clock() -> float:
    # monotonic, for durations only
    return time.perf_counter()


def record(op: str, seconds: float, failed: bool = False) -> None:
    _SAMPLES[op].append(float(seconds))
    if failed:
        _ERRORS[op] += 1


class timeit:
    """
        async with timeit("verify.check_in"):
            ...

    An exception escaping the block is counted against the operation and
    re-raised.
    """
    __slots__ = ("_op", "_t0")

    def __init__(self, op: str):
        self._op = op
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = clock()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record(self._op, clock() - self._t0, failed=exc_type is not None)
        return False


def _percentile(ordered: list[float], p: float) -> float:
    k = round(p / 100 * (len(ordered) - 1))
    return ordered[max(0, min(len(ordered) - 1, k))]


def snapshot() -> Dict[str, Dict[str, float]]:
    out: Dict[str, Dict[str, float]] = {}
    for op, window in _SAMPLES.items():
        if not window:
            continue
        ordered = sorted(window)
        out[op] = {
            "n": len(ordered),
            "errors": _ERRORS.get(op, 0),
            "mean_ms": statistics.fmean(ordered) * 1000,
            "p50_ms": _percentile(ordered, 50) * 1000,
            "p95_ms": _percentile(ordered, 95) * 1000,
            "max_ms": ordered[-1] * 1000,
        }
    return out


def reset() -> None:
    _SAMPLES.clear()
    _ERRORS.clear()
