"""Minimum-interval rate limiter for outbound API calls."""

import threading
import time
from typing import Callable, Optional


class RateLimiter:
    """Spaces calls at least ``min_interval`` seconds apart.

    The lock is held while sleeping, so concurrent callers queue up behind
    each other instead of bursting once the interval has passed.

    Usage:
        limiter = RateLimiter.per_hour(3500)
        limiter.wait()
        response = session.get(...)
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep
    ):
        if min_interval < 0:
            raise ValueError(f"min_interval must be >= 0, got {min_interval}")
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_call: Optional[float] = None

    @classmethod
    def per_hour(cls, requests_per_hour: int, **kwargs) -> "RateLimiter":
        if requests_per_hour <= 0:
            raise ValueError(f"requests_per_hour must be positive, got {requests_per_hour}")
        return cls(3600.0 / requests_per_hour, **kwargs)

    def wait(self) -> float:
        """Block until the next call is allowed.

        Returns:
            Seconds slept (0.0 when no wait was needed)
        """
        with self._lock:
            slept = 0.0
            if self._last_call is not None:
                delay = self._last_call + self.min_interval - self._clock()
                if delay > 0:
                    self._sleep(delay)
                    slept = delay
            self._last_call = self._clock()
            return slept
