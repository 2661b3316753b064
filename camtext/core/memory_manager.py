"""Scoped numeric-buffer accounting and memory monitoring.

Buffers (heatmaps, crop pixels, model inputs and outputs) are registered in
a ``BufferArena`` opened with ``ResourceGovernor.scope()``. The arena releases
everything it tracks on every exit path of the ``with`` block, so the
counters exposed by ``stats()`` are deterministic instead of depending on
when the garbage collector runs.

When the live buffer count or byte total would exceed the configured
ceiling, the governor performs a synchronous flush of every arena, including
ones still in use by in-flight work.
"""

import gc
import os
import threading
import time
import logging
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterator, List, Optional, Tuple

import numpy as np
import psutil

logger = logging.getLogger(__name__)


@dataclass
class BufferStats:
    """Snapshot of governor counters."""
    live_buffers: int
    live_bytes: int
    peak_bytes: int
    total_allocations: int
    forced_flushes: int
    open_scopes: int

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class BufferArena:
    """Buffers owned by one unit of work."""

    def __init__(self, governor: 'ResourceGovernor', name: str):
        self.governor = governor
        self.name = name
        self._buffers: Dict[int, Tuple[np.ndarray, int]] = {}
        self.closed = False

    def __len__(self) -> int:
        return len(self._buffers)

    @property
    def live_bytes(self) -> int:
        return sum(nbytes for _, nbytes in self._buffers.values())

    def allocate(self, shape, dtype=np.float32, fill: Optional[float] = None) -> np.ndarray:
        """Allocate and track a new array."""
        array = np.empty(shape, dtype=dtype) if fill is None else np.full(shape, fill, dtype=dtype)
        return self.track(array)

    def track(self, array: np.ndarray) -> np.ndarray:
        """Register an existing array with this arena and return it."""
        if self.closed:
            raise RuntimeError(f"Arena '{self.name}' is closed")
        if id(array) not in self._buffers:
            self.governor._register(self, array)
        return array

    def release(self, array: Optional[np.ndarray] = None) -> int:
        """Release one tracked array, or all of them when array is None.

        Returns:
            Number of bytes released
        """
        with self.governor._lock:
            if array is None:
                keys = list(self._buffers)
            else:
                keys = [id(array)] if id(array) in self._buffers else []
            released = 0
            for key in keys:
                _, nbytes = self._buffers.pop(key)
                released += nbytes
            if keys:
                self.governor._unregister(len(keys), released)
        return released

    def _drop_all(self) -> Tuple[int, int]:
        count = len(self._buffers)
        released = self.live_bytes
        self._buffers.clear()
        return count, released


class ResourceGovernor:
    """Tracks live buffers across arenas and enforces count/byte ceilings."""

    def __init__(self, max_live_buffers: Optional[int] = None, max_live_bytes: Optional[int] = None):
        self.max_live_buffers = max_live_buffers
        self.max_live_bytes = max_live_bytes
        self._lock = threading.RLock()
        self._arenas: List[BufferArena] = []
        self._live_buffers = 0
        self._live_bytes = 0
        self._peak_bytes = 0
        self._total_allocations = 0
        self._forced_flushes = 0

        self._monitor_thread: Optional[threading.Thread] = None
        self._monitor_stop = threading.Event()

    @contextmanager
    def scope(self, name: str = "scope") -> Iterator[BufferArena]:
        """Open an arena whose buffers are released when the block exits."""
        arena = BufferArena(self, name)
        with self._lock:
            self._arenas.append(arena)
        try:
            yield arena
        finally:
            arena.release()
            arena.closed = True
            with self._lock:
                if arena in self._arenas:
                    self._arenas.remove(arena)

    def _register(self, arena: BufferArena, array: np.ndarray) -> None:
        nbytes = int(array.nbytes)
        with self._lock:
            if self._would_exceed(1, nbytes):
                self._flush_locked(reason=f"ceiling reached while allocating in '{arena.name}'")
            arena._buffers[id(array)] = (array, nbytes)
            self._live_buffers += 1
            self._live_bytes += nbytes
            self._total_allocations += 1
            self._peak_bytes = max(self._peak_bytes, self._live_bytes)

    def _unregister(self, count: int, nbytes: int) -> None:
        with self._lock:
            self._live_buffers = max(0, self._live_buffers - count)
            self._live_bytes = max(0, self._live_bytes - nbytes)

    def _would_exceed(self, extra_buffers: int = 0, extra_bytes: int = 0) -> bool:
        if self.max_live_buffers is not None and self._live_buffers + extra_buffers > self.max_live_buffers:
            return True
        if self.max_live_bytes is not None and self._live_bytes + extra_bytes > self.max_live_bytes:
            return True
        return False

    def _flush_locked(self, reason: str) -> Tuple[int, int]:
        count = released = 0
        for arena in self._arenas:
            c, b = arena._drop_all()
            count += c
            released += b
        self._live_buffers = max(0, self._live_buffers - count)
        self._live_bytes = max(0, self._live_bytes - released)
        self._forced_flushes += 1
        logger.warning(f"Forced buffer flush ({reason}): released {count} buffers, {released / 1024 / 1024:.1f} MB")
        return count, released

    def flush(self, reason: str = "manual") -> Tuple[int, int]:
        """Synchronously release every scope-tracked buffer.

        Returns:
            (buffers released, bytes released)
        """
        with self._lock:
            return self._flush_locked(reason)

    def enforce_ceilings(self) -> bool:
        """Flush if the live counters are above a ceiling. Returns True when a flush ran."""
        with self._lock:
            if self._would_exceed():
                self._flush_locked(reason="ceiling exceeded")
                return True
        return False

    def stats(self) -> BufferStats:
        with self._lock:
            return BufferStats(
                live_buffers=self._live_buffers,
                live_bytes=self._live_bytes,
                peak_bytes=self._peak_bytes,
                total_allocations=self._total_allocations,
                forced_flushes=self._forced_flushes,
                open_scopes=len(self._arenas),
            )

    def memory_info(self) -> Dict[str, Any]:
        """Buffer counters plus process and system memory usage."""
        info: Dict[str, Any] = self.stats().to_dict()
        try:
            process = psutil.Process(os.getpid())
            info['rss_mb'] = process.memory_info().rss / (1024 * 1024)
            vm = psutil.virtual_memory()
            info['system_available_mb'] = vm.available / (1024 * 1024)
            info['system_percent'] = vm.percent
        except psutil.Error as e:
            logger.debug(f"psutil memory query failed: {e}")
        info['pid'] = os.getpid()
        return info

    def reclaim(self) -> int:
        """Run a collection pass and yield the thread to the host."""
        collected = gc.collect()
        time.sleep(0)
        return collected

    def start_monitoring(self, interval: float = 5.0) -> None:
        """Periodically log memory usage and enforce ceilings in a daemon thread."""
        if self._monitor_thread is not None and self._monitor_thread.is_alive():
            return
        self._monitor_stop.clear()
        self._monitor_thread = threading.Thread(
            target=self._monitoring_loop,
            args=(interval,),
            name="ResourceGovernorMonitor",
            daemon=True
        )
        self._monitor_thread.start()

    def stop_monitoring(self, timeout: float = 2.0) -> None:
        self._monitor_stop.set()
        if self._monitor_thread is not None:
            self._monitor_thread.join(timeout=timeout)
            self._monitor_thread = None

    def _monitoring_loop(self, interval: float) -> None:
        while not self._monitor_stop.wait(interval):
            info = self.memory_info()
            logger.info(
                f"Memory: {info['live_buffers']} buffers, "
                f"{info['live_bytes'] / 1024 / 1024:.1f} MB tracked, "
                f"rss {info.get('rss_mb', 0.0):.1f} MB"
            )
            self.enforce_ceilings()

