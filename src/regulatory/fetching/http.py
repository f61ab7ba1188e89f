"""HTTP content fetching with rate limiting, retries and a hard timeout."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Mapping

import requests

from src.config import get_config
from src.parsing.urls import extract_domain
from src.regulatory.errors import CircuitBreakerOpenError

from .rate_limiter import DomainRateLimiter, calculate_backoff_delay, is_retryable_error

logger = logging.getLogger(__name__)

DEFAULT_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


@dataclass(frozen=True)
class FetchResponse:
    """Raw response of a single fetch."""

    url: str
    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 400

    @property
    def content_type(self) -> str | None:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value
        return None

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class FetchOutcome:
    """Result of a rate-limited fetch including retries.

    Exactly one of these holds:
    - ``ok``: a successful response is available.
    - ``circuit_open``: the domain's breaker refused the request.
    - ``error`` is set: the final attempt failed; ``retryable`` tells the
      caller whether trying again later may help.
    """

    url: str
    response: FetchResponse | None = None
    error: str | None = None
    attempts: int = 0
    retryable: bool = False
    circuit_open: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and self.response is not None and self.response.ok


class HttpFetcher:
    """Thin requests wrapper with a hard timeout and a fixed user agent.

    Raises ``requests.RequestException`` on network failure; HTTP error
    statuses are returned, not raised.
    """

    def __init__(
        self,
        *,
        timeout: float | None = None,
        user_agent: str | None = None,
        session: requests.Session | None = None,
    ) -> None:
        config = get_config()
        self.timeout = timeout if timeout is not None else config.request_timeout
        self.user_agent = user_agent or config.user_agent
        self._session = session or requests.Session()

    def fetch(self, url: str) -> FetchResponse:
        response = self._session.get(
            url,
            timeout=self.timeout,
            headers={
                "User-Agent": self.user_agent,
                "Accept": DEFAULT_ACCEPT,
                "Accept-Language": "hr,en;q=0.9",
            },
        )
        return FetchResponse(
            url=response.url or url,
            status=response.status_code,
            headers=dict(response.headers),
            body=response.content,
        )


def fetch_with_retry(
    fetcher: HttpFetcher,
    limiter: DomainRateLimiter,
    url: str,
    *,
    max_retries: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> FetchOutcome:
    """Fetch ``url`` through the domain's rate limiter, retrying transient errors.

    Never raises for network or HTTP failures; the outcome says what happened.
    An open circuit breaker ends the attempt immediately.
    """
    domain = extract_domain(url)
    config = limiter.config
    retries = config.max_retries if max_retries is None else max_retries
    attempts = 0

    for attempt in range(retries + 1):
        try:
            limiter.wait_for_slot(domain)
        except CircuitBreakerOpenError as exc:
            logger.info("Skipping %s: %s", url, exc)
            return FetchOutcome(url=url, error=str(exc), attempts=attempts, circuit_open=True)

        attempts += 1
        try:
            response = fetcher.fetch(url)
        except requests.RequestException as exc:
            message = f"{type(exc).__name__}: {exc}"
            limiter.record_error(domain, message)
            retryable = is_retryable_error(exc)
            if retryable and attempt < retries:
                delay = calculate_backoff_delay(
                    attempt, config.base_retry_delay, config.max_retry_delay
                )
                logger.warning(
                    "Retryable network error for %s: %s. Retry %d/%d in %.1fs",
                    domain,
                    message,
                    attempt + 1,
                    retries,
                    delay,
                )
                sleep(delay)
                continue
            return FetchOutcome(url=url, error=message, attempts=attempts, retryable=retryable)

        if response.ok:
            limiter.record_success(domain)
            return FetchOutcome(url=url, response=response, attempts=attempts)

        message = f"HTTP {response.status}"
        limiter.record_error(domain, message)
        retryable = is_retryable_error(None, response.status)
        if retryable and attempt < retries:
            delay = calculate_backoff_delay(attempt, config.base_retry_delay, config.max_retry_delay)
            logger.warning(
                "Retryable status for %s: %s. Retry %d/%d in %.1fs",
                domain,
                message,
                attempt + 1,
                retries,
                delay,
            )
            sleep(delay)
            continue
        return FetchOutcome(
            url=url,
            response=response,
            error=message,
            attempts=attempts,
            retryable=retryable,
        )

    return FetchOutcome(url=url, error=f"Failed after {attempts} attempts", attempts=attempts)
