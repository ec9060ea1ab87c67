"""Rate limiting for cluster API calls."""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Generator

from prometheus_client import Histogram

logger = logging.getLogger(__name__)


class RateLimiter:
    """Thread-safe rate limiter using semaphore and token bucket.

    Limits both concurrent requests and requests per second so that a burst
    of reconciles across many keys does not overwhelm the API server.
    """

    def __init__(
        self,
        max_concurrent: int = 10,
        requests_per_second: float = 20.0,
        wait_histogram: Histogram | None = None,
    ) -> None:
        """Initialize rate limiter.

        Args:
            max_concurrent: Maximum number of concurrent API calls
            requests_per_second: Maximum requests per second (averaged), 0 disables
            wait_histogram: Optional histogram observing time spent waiting
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._semaphore = threading.BoundedSemaphore(max_concurrent)
        self._min_interval = 1.0 / requests_per_second if requests_per_second > 0 else 0
        self._next_slot = 0.0
        self._lock = threading.Lock()
        self._max_concurrent = max_concurrent
        self._requests_per_second = requests_per_second
        self._wait_histogram = wait_histogram

        logger.info(
            "Rate limiter initialized: max_concurrent=%d, requests_per_second=%.1f",
            max_concurrent,
            requests_per_second,
        )

    def _reserve_slot(self) -> float:
        """Reserve the next request slot and return how long to sleep for it."""
        with self._lock:
            now = time.monotonic()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self._min_interval
            return slot - now

    @contextmanager
    def acquire(self) -> Generator[None, None, None]:
        """Acquire rate limit slot (context manager).

        Usage:
            with rate_limiter.acquire():
                # make API call
        """
        wait_start = time.monotonic()
        self._semaphore.acquire()
        try:
            # Sleep outside the lock so other callers can reserve later slots
            interval_wait = self._reserve_slot()
            if interval_wait > 0:
                time.sleep(interval_wait)

            total_wait = time.monotonic() - wait_start
            if self._wait_histogram is not None and total_wait > 0.001:
                self._wait_histogram.observe(total_wait)

            yield
        finally:
            self._semaphore.release()

    def __repr__(self) -> str:
        return (
            f"RateLimiter(max_concurrent={self._max_concurrent}, "
            f"requests_per_second={self._requests_per_second})"
        )
