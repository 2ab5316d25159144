"""Per-origin request spacing."""

import threading
import time
from typing import Callable, Dict


class RateLimiter:
    """Keeps at least min_interval seconds between requests for the same key.

    Keys are independent: the lock only covers reading and reserving the
    next slot, the wait itself happens outside it.
    """

    def __init__(self, min_interval: float = 1.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.min_interval = max(0.0, min_interval)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot: Dict[str, float] = {}

    def acquire(self, key: str) -> float:
        """Block until key may be used again. Returns the seconds waited."""
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot.get(key, now))
            self._next_slot[key] = slot + self.min_interval
        wait = slot - now
        if wait > 0:
            self._sleep(wait)
        return wait

    def reset(self, key: str = None):
        with self._lock:
            if key is None:
                self._next_slot.clear()
            else:
                self._next_slot.pop(key, None)
