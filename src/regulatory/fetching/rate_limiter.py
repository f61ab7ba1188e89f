"""Per-domain rate limiting and circuit breaking for outbound fetches.

Each domain gets its own request slots, rolling health counters and
circuit breaker. Opening the breaker for one domain never affects another.

``DomainRateLimiter`` is a plain object meant to be created once per worker
and passed to the code that fetches, so tests can run isolated instances
with a fake clock.

Usage:
    limiter = DomainRateLimiter()
    limiter.wait_for_slot("narodne-novine.nn.hr")
    try:
        response = fetch(url)
    except requests.RequestException as exc:
        limiter.record_error("narodne-novine.nn.hr", str(exc))
    else:
        limiter.record_success("narodne-novine.nn.hr")
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

import requests

from src.regulatory.errors import CircuitBreakerOpenError, TransientFetchError
from src.regulatory.types import utc_now

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

RETRYABLE_ERROR_MESSAGES = (
    "econnreset",
    "etimedout",
    "enotfound",
    "econnrefused",
    "eai_again",
    "socket hang up",
    "network",
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "connection aborted",
    "name or service not known",
    "temporary failure in name resolution",
)


@dataclass(frozen=True)
class RateLimitConfig:
    """Politeness and breaker settings shared by all domains.

    Attributes:
        request_delay: Minimum seconds between two requests to one domain.
        max_requests_per_minute: Cap on requests per domain in any 60s window.
        circuit_breaker_threshold: Consecutive errors that open the breaker.
        unhealthy_threshold: Consecutive errors that mark a domain unhealthy
            while the breaker is still closed.
        circuit_breaker_reset: Seconds after which an open breaker closes
            on its own.
        max_retries: Retry attempts for one fetch after the first try.
        base_retry_delay: Base of the exponential retry backoff, seconds.
        max_retry_delay: Cap of the retry backoff, seconds.
        request_timeout: Hard timeout for one request, seconds.
    """

    request_delay: float = 2.0
    max_requests_per_minute: int = 20
    circuit_breaker_threshold: int = 5
    unhealthy_threshold: int = 3
    circuit_breaker_reset: float = 3600.0
    max_retries: int = 3
    base_retry_delay: float = 1.0
    max_retry_delay: float = 30.0
    request_timeout: float = 30.0


@dataclass(frozen=True)
class DomainHealth:
    """Point-in-time health snapshot for one domain."""

    domain: str
    consecutive_errors: int
    circuit_open: bool
    is_healthy: bool
    success_rate: float
    total_requests: int
    last_error: str | None = None
    last_success_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "consecutive_errors": self.consecutive_errors,
            "circuit_open": self.circuit_open,
            "is_healthy": self.is_healthy,
            "success_rate": self.success_rate,
            "total_requests": self.total_requests,
            "last_error": self.last_error,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
        }


@dataclass
class _DomainState:
    next_slot_at: float = 0.0
    slot_times: deque = field(default_factory=deque)
    consecutive_errors: int = 0
    success_count: int = 0
    error_count: int = 0
    last_error: str | None = None
    last_success_at: datetime | None = None
    circuit_open: bool = False
    circuit_opened_at: float | None = None


class DomainRateLimiter:
    """Grants per-domain request slots and tracks domain health.

    Args:
        config: Limits and thresholds. Defaults to ``RateLimitConfig()``.
        clock: Monotonic clock in seconds. Injectable for tests.
        sleep: Blocking sleep function. Injectable for tests.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._domains: dict[str, _DomainState] = {}

    def _state(self, domain: str) -> _DomainState:
        state = self._domains.get(domain)
        if state is None:
            state = _DomainState()
            self._domains[domain] = state
        return state

    def _check_circuit(self, domain: str, state: _DomainState) -> None:
        if not state.circuit_open:
            return
        opened_at = state.circuit_opened_at or 0.0
        if self._clock() - opened_at >= self.config.circuit_breaker_reset:
            logger.info("Circuit breaker for %s auto-reset after cool-off", domain)
            state.circuit_open = False
            state.circuit_opened_at = None
            state.consecutive_errors = 0
            return
        raise CircuitBreakerOpenError(domain, state.last_error)

    def wait_for_slot(self, domain: str) -> float:
        """Block until the domain may be requested again.

        Slots are reserved under the lock in arrival order and the caller
        sleeps outside it, so waiters on other domains are never held up.

        Returns:
            Seconds spent waiting.

        Raises:
            CircuitBreakerOpenError: If the domain's breaker is open.
        """
        with self._lock:
            state = self._state(domain)
            self._check_circuit(domain, state)

            now = self._clock()
            slot = max(now, state.next_slot_at)

            while state.slot_times and state.slot_times[0] <= slot - 60.0:
                state.slot_times.popleft()
            if len(state.slot_times) >= self.config.max_requests_per_minute:
                slot = max(slot, state.slot_times[0] + 60.0)

            state.slot_times.append(slot)
            state.next_slot_at = slot + self.config.request_delay

        wait = slot - now
        if wait > 0:
            logger.debug("Waiting %.2fs for slot on %s", wait, domain)
            self._sleep(wait)
        return max(wait, 0.0)

    def record_success(self, domain: str) -> None:
        with self._lock:
            state = self._state(domain)
            state.consecutive_errors = 0
            state.success_count += 1
            state.last_success_at = utc_now()

    def record_error(self, domain: str, message: str) -> None:
        """Count a failed request; opens the breaker at the threshold."""
        with self._lock:
            state = self._state(domain)
            state.consecutive_errors += 1
            state.error_count += 1
            state.last_error = message

            if (
                not state.circuit_open
                and state.consecutive_errors >= self.config.circuit_breaker_threshold
            ):
                state.circuit_open = True
                state.circuit_opened_at = self._clock()
                logger.warning(
                    "Circuit breaker opened for %s after %d consecutive errors (last: %s)",
                    domain,
                    state.consecutive_errors,
                    message,
                )
            elif state.consecutive_errors >= self.config.unhealthy_threshold:
                logger.warning(
                    "Domain %s unhealthy: %d consecutive errors",
                    domain,
                    state.consecutive_errors,
                )

    def reset_circuit_breaker(self, domain: str) -> None:
        """Manually close the breaker and clear the error streak."""
        with self._lock:
            state = self._state(domain)
            state.circuit_open = False
            state.circuit_opened_at = None
            state.consecutive_errors = 0
        logger.info("Circuit breaker manually reset for %s", domain)

    def is_circuit_open(self, domain: str) -> bool:
        with self._lock:
            state = self._domains.get(domain)
            return bool(state and state.circuit_open)

    def get_health_status(self, domain: str) -> DomainHealth:
        with self._lock:
            state = self._state(domain)
            total = state.success_count + state.error_count
            return DomainHealth(
                domain=domain,
                consecutive_errors=state.consecutive_errors,
                circuit_open=state.circuit_open,
                is_healthy=(
                    not state.circuit_open
                    and state.consecutive_errors < self.config.unhealthy_threshold
                ),
                success_rate=state.success_count / total if total else 1.0,
                total_requests=total,
                last_error=state.last_error,
                last_success_at=state.last_success_at,
            )

    def get_all_health_status(self) -> dict[str, DomainHealth]:
        with self._lock:
            domains = list(self._domains)
        return {domain: self.get_health_status(domain) for domain in domains}


def is_retryable_error(error: object, status_code: int | None = None) -> bool:
    """Decide whether a failed request is worth retrying.

    Args:
        error: The exception raised, or None when only a status is known.
        status_code: HTTP status of the response, if any.

    Returns:
        True for 408/429/5xx statuses and network-level failures.
    """
    if status_code is not None and status_code in RETRYABLE_STATUS_CODES:
        return True

    if isinstance(error, CircuitBreakerOpenError):
        return False
    if isinstance(error, TransientFetchError):
        return error.status is None or error.status in RETRYABLE_STATUS_CODES
    if isinstance(error, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(error, requests.HTTPError) and error.response is not None:
        return error.response.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, Exception):
        message = str(error).lower()
        return any(pattern in message for pattern in RETRYABLE_ERROR_MESSAGES)

    return False


def calculate_backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
) -> float:
    """Exponential backoff with multiplicative jitter.

    The capped delay ``min(base * 2^attempt, max)`` is scaled by a random
    factor in [0.5, 1.0], so the result never exceeds ``max_delay`` and its
    mean grows with ``attempt`` until the cap.
    """
    capped_attempt = min(max(attempt, 0), 30)
    capped = min(base_delay * (2 ** capped_attempt), max_delay)
    return capped * random.uniform(0.5, 1.0)
