"""Tests for rate limiting."""

import threading
import time

import pytest
from prometheus_client import CollectorRegistry, Histogram

from ratelimit import RateLimiter


class TestRateLimiter:
    """Tests for RateLimiter class."""

    def test_allows_single_request(self):
        limiter = RateLimiter(max_concurrent=10, requests_per_second=100)

        with limiter.acquire():
            pass  # Should not block

    def test_enforces_concurrent_limit(self):
        limiter = RateLimiter(max_concurrent=2, requests_per_second=1000)
        active_count = 0
        max_active = 0
        lock = threading.Lock()

        def worker():
            nonlocal active_count, max_active
            with limiter.acquire():
                with lock:
                    active_count += 1
                    max_active = max(max_active, active_count)
                time.sleep(0.05)
                with lock:
                    active_count -= 1

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert max_active <= 2

    def test_enforces_rate_limit(self):
        # 10 requests per second = 100ms between requests
        limiter = RateLimiter(max_concurrent=10, requests_per_second=10)

        start = time.monotonic()
        for _ in range(3):
            with limiter.acquire():
                pass
        elapsed = time.monotonic() - start

        # 3 requests at 10/sec should take at least 200ms (2 intervals)
        assert elapsed >= 0.18  # Allow small tolerance

    def test_unlimited_rate(self):
        limiter = RateLimiter(max_concurrent=1, requests_per_second=0)

        start = time.monotonic()
        for _ in range(20):
            with limiter.acquire():
                pass

        assert time.monotonic() - start < 0.5

    def test_releases_slot_on_error(self):
        limiter = RateLimiter(max_concurrent=1, requests_per_second=1000)

        with pytest.raises(RuntimeError):
            with limiter.acquire():
                raise RuntimeError("API call failed")

        with limiter.acquire():
            pass  # Slot was released

    def test_observes_wait_time(self):
        registry = CollectorRegistry()
        histogram = Histogram("wait_seconds", "Wait", registry=registry)
        limiter = RateLimiter(
            max_concurrent=10, requests_per_second=10, wait_histogram=histogram
        )

        for _ in range(3):
            with limiter.acquire():
                pass

        assert registry.get_sample_value("wait_seconds_count") >= 1

    def test_rejects_zero_concurrency(self):
        with pytest.raises(ValueError):
            RateLimiter(max_concurrent=0)

    def test_repr(self):
        limiter = RateLimiter(max_concurrent=5, requests_per_second=50)
        repr_str = repr(limiter)

        assert "max_concurrent=5" in repr_str
        assert "requests_per_second=50" in repr_str
