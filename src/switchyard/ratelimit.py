"""In-process trailing-window request counter."""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from typing import Callable


class RateCounter:
    """Counts requests per (tenant, route) over a sliding window."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: dict[tuple[str, str], deque[float]] = defaultdict(deque)

    def _trim(self, key: tuple[str, str], now: float, window_sec: int) -> deque[float]:
        hits = self._hits[key]
        cutoff = now - window_sec
        while hits and hits[0] <= cutoff:
            hits.popleft()
        return hits

    def increment(self, tenant_id: str, route_id: str, window_sec: int = 60) -> int:
        """Record one hit and return the count inside the trailing window, this hit included."""
        now = self._clock()
        with self._lock:
            hits = self._trim((tenant_id, route_id), now, window_sec)
            hits.append(now)
            return len(hits)

    def count(self, tenant_id: str, route_id: str, window_sec: int = 60) -> int:
        """Hits inside the trailing window, without recording a new one."""
        with self._lock:
            return len(self._trim((tenant_id, route_id), self._clock(), window_sec))
