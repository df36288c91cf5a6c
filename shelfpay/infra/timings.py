# shelfpay/infra/timings.py
from __future__ import annotations
import statistics
import time
from typing import Dict, List

# ------------ hot path: append only ------------
# one list per kind; no locks, single-threaded event loop
_TIMINGS: Dict[str, List[float]] = {}

# keep memory bounded on long-running workers
MAX_SAMPLES_PER_KIND = 10_000


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    lst = _TIMINGS.get(kind)
    if lst is None:
        lst = []
        _TIMINGS[kind] = lst
    if len(lst) >= MAX_SAMPLES_PER_KIND:
        del lst[: len(lst) // 2]
    lst.append(float(value))


class timeit:
    """async usage:
        async with timeit("reconcile.transaction"):
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


# ------------ stats only on read ------------

def _mean_std(values: list[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return (
        statistics.mean(values),
        statistics.stdev(values) if len(values) > 1 else 0.0
    )


def snapshot() -> Dict[str, Dict[str, float]]:
    """{kind: {"n", "mean_ms", "std_ms", "max_ms"}}"""
    out: Dict[str, Dict[str, float]] = {}
    for kind, vals in _TIMINGS.items():
        mean, std = _mean_std(vals)
        out[kind] = {
            "n": len(vals),
            "mean_ms": mean * 1000,
            "std_ms": std * 1000,
            "max_ms": max(vals) * 1000 if vals else 0.0,
        }
    return out


def reset() -> None:
    _TIMINGS.clear()
