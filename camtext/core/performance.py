"""Stage timing for the extraction pipeline.

Each pipeline stage (prepare, detect, crop, recognize) runs inside a
``PerformanceTimer``; the durations land in a bounded per-stage history on
the process-wide ``PerformanceMonitor`` so latency can be inspected without
an external metrics stack.
"""

import logging
import threading
import time
from collections import defaultdict, deque
from functools import wraps
from typing import Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


def _percentile(sorted_values: List[float], fraction: float) -> float:
    """Nearest-rank percentile of an already sorted list."""
    index = min(len(sorted_values) - 1, max(0, int(round(fraction * (len(sorted_values) - 1)))))
    return sorted_values[index]


class PerformanceTimer:
    """Times one stage and reports it to a monitor on exit.

    Durations are recorded even when the block raises, so a timed-out
    recognition still shows up in the stage history.
    """

    def __init__(self, operation_name: str, monitor: Optional['PerformanceMonitor'] = None,
                 slow_threshold: Optional[float] = None):
        self.operation_name = operation_name
        self.monitor = monitor
        self.slow_threshold = slow_threshold
        self._started: Optional[float] = None
        self._elapsed: Optional[float] = None

    def __enter__(self) -> 'PerformanceTimer':
        self._started = time.perf_counter()
        self._elapsed = None
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self._elapsed = time.perf_counter() - self._started
        (self.monitor or PerformanceMonitor.instance()).record_operation_time(self.operation_name, self._elapsed)
        if self.slow_threshold is not None and self._elapsed > self.slow_threshold:
            logger.warning(f"{self.operation_name} took {self._elapsed * 1000:.1f} ms")

    @property
    def duration(self) -> float:
        """Seconds spent in the block; the running time while still inside it."""
        if self._started is None:
            return 0.0
        if self._elapsed is None:
            return time.perf_counter() - self._started
        return self._elapsed

    @property
    def duration_ms(self) -> float:
        return self.duration * 1000.0


def performance_timer(operation_name: str = None):
    """Decorator form of PerformanceTimer."""
    def decorator(func: Callable) -> Callable:
        name = operation_name or f"{func.__module__}.{func.__name__}"

        @wraps(func)
        def wrapper(*args, **kwargs):
            with PerformanceTimer(name):
                return func(*args, **kwargs)
        return wrapper
    return decorator


class PerformanceMonitor:
    """Bounded per-operation duration history."""

    _instance: Optional['PerformanceMonitor'] = None
    _instance_lock = threading.Lock()

    def __init__(self, history_size: int = 1000):
        self.history_size = history_size
        self._durations: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=self.history_size))
        self._lock = threading.Lock()

    @classmethod
    def instance(cls) -> 'PerformanceMonitor':
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def record_operation_time(self, operation: str, duration: float) -> None:
        with self._lock:
            self._durations[operation].append(duration)

    def get_operation_stats(self, operation: str) -> Dict[str, float]:
        """count/min/max/avg/total plus p50 and p95, in seconds; empty if never recorded."""
        with self._lock:
            values = sorted(self._durations.get(operation, ()))
        if not values:
            return {}
        total = sum(values)
        return {
            'count': len(values),
            'min': values[0],
            'max': values[-1],
            'avg': total / len(values),
            'total': total,
            'p50': _percentile(values, 0.5),
            'p95': _percentile(values, 0.95),
        }

    def summary(self, prefix: str = "") -> Dict[str, Dict[str, float]]:
        """Stats for every operation whose name starts with prefix."""
        return {name: self.get_operation_stats(name) for name in self.operations() if name.startswith(prefix)}

    def operations(self) -> List[str]:
        with self._lock:
            return sorted(self._durations)

    def reset(self) -> None:
        with self._lock:
            self._durations.clear()
