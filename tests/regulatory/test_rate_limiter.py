"""Tests for src/regulatory/fetching/rate_limiter.py."""

from __future__ import annotations

import random
from unittest.mock import MagicMock

import pytest
import requests

from src.regulatory.errors import CircuitBreakerOpenError, TransientFetchError
from src.regulatory.fetching.rate_limiter import (
    DomainRateLimiter,
    RateLimitConfig,
    calculate_backoff_delay,
    is_retryable_error,
)


class FakeClock:
    """Monotonic clock that only moves when told to (or when slept on)."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock: FakeClock) -> DomainRateLimiter:
    return DomainRateLimiter(RateLimitConfig(), clock=clock, sleep=clock.sleep)


class TestCircuitBreaker:
    """Tests for per-domain circuit breaking."""

    def test_opens_after_threshold_errors(self, limiter) -> None:
        """Five consecutive errors open the breaker and refuse slots."""
        for i in range(5):
            limiter.record_error("a.hr", f"HTTP 503 #{i}")

        assert limiter.is_circuit_open("a.hr")
        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            limiter.wait_for_slot("a.hr")
        assert exc_info.value.domain == "a.hr"

    def test_four_errors_keep_breaker_closed(self, limiter) -> None:
        """Test four errors keep breaker closed."""
        for _ in range(4):
            limiter.record_error("a.hr", "HTTP 500")

        assert not limiter.is_circuit_open("a.hr")
        assert limiter.get_health_status("a.hr").is_healthy is False

    def test_success_resets_streak(self, limiter) -> None:
        """A success in between breaks the consecutive-error streak."""
        for _ in range(4):
            limiter.record_error("a.hr", "HTTP 500")
        limiter.record_success("a.hr")
        for _ in range(4):
            limiter.record_error("a.hr", "HTTP 500")

        assert not limiter.is_circuit_open("a.hr")

    def test_other_domains_unaffected(self, limiter) -> None:
        """One open breaker does not block another domain."""
        for _ in range(5):
            limiter.record_error("a.hr", "HTTP 500")

        assert limiter.wait_for_slot("b.hr") == 0.0
        assert not limiter.is_circuit_open("b.hr")

    def test_auto_reset_after_cool_off(self, limiter, clock) -> None:
        """Test auto reset after cool off."""
        for _ in range(5):
            limiter.record_error("a.hr", "HTTP 500")

        clock.now += 3600.0
        limiter.wait_for_slot("a.hr")

        assert not limiter.is_circuit_open("a.hr")
        assert limiter.get_health_status("a.hr").consecutive_errors == 0

    def test_manual_reset(self, limiter) -> None:
        """Test manual reset."""
        for _ in range(5):
            limiter.record_error("a.hr", "HTTP 500")

        limiter.reset_circuit_breaker("a.hr")

        assert not limiter.is_circuit_open("a.hr")


class TestSlots:
    """Tests for request spacing."""

    def test_first_request_does_not_wait(self, limiter) -> None:
        """Test first request does not wait."""
        assert limiter.wait_for_slot("a.hr") == 0.0

    def test_consecutive_requests_spaced_by_delay(self, limiter, clock) -> None:
        """Test consecutive requests spaced by delay."""
        limiter.wait_for_slot("a.hr")
        waited = limiter.wait_for_slot("a.hr")

        assert waited == pytest.approx(2.0)
        assert clock.sleeps == [pytest.approx(2.0)]

    def test_per_minute_cap(self, clock) -> None:
        """The window cap pushes the next slot a full minute out."""
        limiter = DomainRateLimiter(
            RateLimitConfig(request_delay=0.0, max_requests_per_minute=3),
            clock=clock,
            sleep=clock.sleep,
        )
        for _ in range(3):
            assert limiter.wait_for_slot("a.hr") == 0.0

        assert limiter.wait_for_slot("a.hr") == pytest.approx(60.0)


class TestHealthStatus:
    """Tests for health snapshots."""

    def test_success_rate_and_totals(self, limiter) -> None:
        """Test success rate and totals."""
        limiter.record_success("a.hr")
        limiter.record_success("a.hr")
        limiter.record_error("a.hr", "timeout")

        health = limiter.get_health_status("a.hr")

        assert health.total_requests == 3
        assert health.success_rate == pytest.approx(2 / 3)
        assert health.last_error == "timeout"
        assert health.to_dict()["domain"] == "a.hr"

    def test_all_health_status(self, limiter) -> None:
        """Test all health status."""
        limiter.record_success("a.hr")
        limiter.record_error("b.hr", "x")

        assert set(limiter.get_all_health_status()) == {"a.hr", "b.hr"}


class TestIsRetryableError:
    """Tests for is_retryable_error."""

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
    def test_retryable_statuses(self, status) -> None:
        """Test retryable statuses."""
        assert is_retryable_error(None, status) is True

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 410])
    def test_client_errors_not_retryable(self, status) -> None:
        """Test client errors not retryable."""
        assert is_retryable_error(None, status) is False

    def test_network_errors(self) -> None:
        """Test network errors."""
        assert is_retryable_error(requests.ConnectionError("reset")) is True
        assert is_retryable_error(requests.Timeout("slow")) is True
        assert is_retryable_error(Exception("ECONNRESET by peer")) is True

    def test_open_breaker_not_retryable(self) -> None:
        """Test open breaker not retryable."""
        assert is_retryable_error(CircuitBreakerOpenError("a.hr")) is False

    def test_transient_fetch_error(self) -> None:
        """Test transient fetch error."""
        assert is_retryable_error(TransientFetchError("x", status=503)) is True
        assert is_retryable_error(TransientFetchError("x", status=404)) is False

    def test_http_error_uses_response_status(self) -> None:
        """Test http error uses response status."""
        response = MagicMock(status_code=502)
        assert is_retryable_error(requests.HTTPError(response=response)) is True


class TestBackoff:
    """Tests for calculate_backoff_delay."""

    def test_never_exceeds_max(self) -> None:
        """Test never exceeds max."""
        rng_state = random.getstate()
        try:
            random.seed(7)
            for attempt in range(12):
                for _ in range(50):
                    delay = calculate_backoff_delay(attempt, base_delay=1.0, max_delay=30.0)
                    assert 0.0 < delay <= 30.0
        finally:
            random.setstate(rng_state)

    def test_mean_grows_with_attempt(self) -> None:
        """Average delay increases with attempt until the cap."""
        rng_state = random.getstate()
        try:
            random.seed(11)
            means = []
            for attempt in range(4):
                samples = [calculate_backoff_delay(attempt, 1.0, 30.0) for _ in range(400)]
                means.append(sum(samples) / len(samples))
        finally:
            random.setstate(rng_state)

        assert means == sorted(means)
        assert means[0] < means[-1]

    def test_jitter_bounds(self) -> None:
        """Jitter keeps the delay within half to all of the capped value."""
        for _ in range(100):
            delay = calculate_backoff_delay(3, base_delay=1.0, max_delay=30.0)
            assert 4.0 <= delay <= 8.0
