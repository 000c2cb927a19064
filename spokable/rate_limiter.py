from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class RateLimitState:
    last_request: Optional[float]
    request_count: int


class RateLimiter:
    """Keeps outbound calls at least ``min_interval`` seconds apart across all workers.

    Slots are reserved under the lock and waited for outside it, so simultaneous callers
    line up one interval apart while earlier calls stay in flight.
    """

    def __init__(
        self,
        min_interval: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if min_interval < 0:
            raise ValueError("Rate limit interval cannot be negative.")
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_request: Optional[float] = None
        self._request_count = 0

    def await_slot(self, min_interval: Optional[float] = None) -> float:
        """Block until the caller may dispatch. Returns the seconds spent waiting."""
        interval = self.min_interval if min_interval is None else max(0.0, min_interval)
        with self._lock:
            now = self._clock()
            slot = now if self._last_request is None else max(now, self._last_request + interval)
            self._last_request = slot
            self._request_count += 1
        wait = slot - now
        if wait > 0:
            self._sleep(wait)
        return wait

    def state(self) -> RateLimitState:
        with self._lock:
            return RateLimitState(last_request=self._last_request, request_count=self._request_count)

    def reset(self) -> None:
        with self._lock:
            self._last_request = None
            self._request_count = 0
