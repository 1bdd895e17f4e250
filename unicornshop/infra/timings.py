# unicornshop/infra/timings.py
from __future__ import annotations
import statistics
import time
from typing import Dict, List

# ------------ hot path: append only ------------
# one list per kind; no locks, single-threaded event loop
_TIMINGS: Dict[str, List[float]] = {}
_COUNTERS: Dict[str, int] = {}


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    lst = _TIMINGS.get(kind)
    if lst is None:
        lst = []
        _TIMINGS[kind] = lst
    lst.append(float(value))


def incr(kind: str, by: int = 1) -> None:
    _COUNTERS[kind] = _COUNTERS.get(kind, 0) + by


def counter(kind: str) -> int:
    return _COUNTERS.get(kind, 0)


class timeit:
    """async usage:
        async with timeit("store.fulfill"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, now_ts() - self._t0)


# ------------ stats only when asked ------------

def _mean_std(values: list[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return (
        statistics.mean(values),
        statistics.stdev(values) if len(values) > 1 else 0.0
    )


def snapshot() -> dict:
    """Aggregates per timing kind plus a copy of all counters."""
    timings = []
    for kind, vals in sorted(_TIMINGS.items()):
        mean, std = _mean_std(vals)
        timings.append({"kind": kind, "n": len(vals), "mean": mean,
                        "std": std})
    return {"timings": timings, "counters": dict(_COUNTERS)}


def reset() -> None:
    _TIMINGS.clear()
    _COUNTERS.clear()
