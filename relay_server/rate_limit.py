"""
In-memory sliding-window rate limiter, one window per key (client IP).
Owned by the app (app.state.callback_limiter) rather than living in a module global.
Keys whose hits have all aged out are swept once per window, so memory tracks recent clients only.
"""
import math
import threading
import time


class SlidingWindowLimiter:
    def __init__(self, limit: int, window_seconds: int = 60) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._hits: dict[str, list[float]] = {}
        self._lock = threading.Lock()
        self._next_sweep = time.monotonic() + window_seconds

    @property
    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def _sweep(self, now: float, cutoff: float) -> None:
        # Caller holds the lock; hit lists are append-ordered so the last entry is the newest
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in stale:
            del self._hits[key]
        self._next_sweep = now + self.window_seconds

    def check_and_consume(self, key: str) -> tuple[bool, int | None]:
        """
        Record a hit for key if it is under the limit.
        Returns (allowed, retry_after_seconds); retry_after is >= 1 when not allowed.
        """
        if self.limit <= 0:
            return True, None
        now = time.monotonic()
        cutoff = now - self.window_seconds
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now, cutoff)
            hits = [t for t in self._hits.get(key, []) if t > cutoff]
            if len(hits) >= self.limit:
                self._hits[key] = hits
                retry_after = max(1, math.ceil(self.window_seconds - (now - hits[0])))
                return False, retry_after
            hits.append(now)
            self._hits[key] = hits
            return True, None

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
