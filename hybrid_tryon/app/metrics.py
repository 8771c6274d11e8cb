"""
In-process counters and latency stats for the composite pipeline.

Exposed as JSON on ``GET /metrics``; nothing is exported or persisted.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from typing import Dict, Optional


_lock = threading.Lock()
_counters: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
# metric -> label -> {"count", "sum_seconds", "max_seconds"}
_latencies: Dict[str, Dict[str, Dict[str, float]]] = defaultdict(dict)


def increment(metric: str, label: str, value: int = 1) -> None:
    with _lock:
        _counters[metric][label] += value


def observe_latency(metric: str, label: str, duration_seconds: float) -> None:
    with _lock:
        stats = _latencies[metric].setdefault(
            label, {"count": 0, "sum_seconds": 0.0, "max_seconds": 0.0}
        )
        stats["count"] += 1
        stats["sum_seconds"] += duration_seconds
        stats["max_seconds"] = max(stats["max_seconds"], duration_seconds)


def snapshot() -> Dict[str, Dict]:
    with _lock:
        counters = {metric: dict(labels) for metric, labels in _counters.items()}
        latencies = {
            metric: {label: dict(stats) for label, stats in labels.items()}
            for metric, labels in _latencies.items()
        }
    return {"counters": counters, "latency": latencies}


def reset() -> None:
    with _lock:
        _counters.clear()
        _latencies.clear()


class Timer:
    """Wall-clock timer for one pipeline stage; ``stop`` records it once."""

    def __init__(self, metric: str, label: str) -> None:
        self.metric = metric
        self.label = label
        self.start = time.perf_counter()
        self._duration: Optional[float] = None

    def elapsed_ms(self) -> int:
        if self._duration is not None:
            return int(self._duration * 1000)
        return int((time.perf_counter() - self.start) * 1000)

    def stop(self) -> float:
        if self._duration is None:
            self._duration = time.perf_counter() - self.start
            observe_latency(self.metric, self.label, self._duration)
        return self._duration

    def __enter__(self) -> "Timer":
        return self

    def __exit__(self, exc_type, exc, traceback) -> None:
        self.stop()
