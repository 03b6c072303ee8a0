# rate_limit.py
import asyncio
import os
import time


def _env_float(name, default):
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return float(default)


class TokenBucket:
    """Asynchronous token bucket pacing exchange requests.

    The bucket holds at most ``capacity`` tokens and regains
    ``refill_per_sec`` tokens every second.  Binance counts request *weight*
    rather than requests, so :meth:`acquire` accepts the weight of the call.

    Waiters are served one at a time under a lock, which keeps the order of
    requests stable within a cycle.
    """

    def __init__(self, capacity: float, refill_per_sec: float):
        if capacity <= 0 or refill_per_sec <= 0:
            raise ValueError("capacity and refill_per_sec must be positive")
        self.capacity = float(capacity)
        self.tokens = float(capacity)
        self.refill_per_sec = float(refill_per_sec)
        self._lock = asyncio.Lock()
        self._last = time.monotonic()

    def _refill(self) -> None:
        now = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + (now - self._last) * self.refill_per_sec)
        self._last = now

    async def acquire(self, weight: float = 1) -> None:
        """Wait until ``weight`` tokens are available, then consume them."""
        if weight > self.capacity:
            raise ValueError(f"weight {weight} exceeds bucket capacity {self.capacity}")
        async with self._lock:
            self._refill()
            while self.tokens < weight:
                await asyncio.sleep(max((weight - self.tokens) / self.refill_per_sec, 0.005))
                self._refill()
            self.tokens -= weight


def build_rate_limiter():
    """Create a :class:`TokenBucket` configured from environment variables.

    ``GRID_RATE_LIMIT_RPS``
        Refill rate in request weight per second (default 8).
    ``GRID_RATE_LIMIT_BURST``
        Maximum burst size; defaults to double the refill rate.
    """
    rps = _env_float("GRID_RATE_LIMIT_RPS", 8)
    burst = _env_float("GRID_RATE_LIMIT_BURST", rps * 2)
    return TokenBucket(capacity=burst, refill_per_sec=rps)
