"""Retry policy: exponential backoff with jitter and error classification."""

import random
from typing import Mapping, Optional, Set

import httpx

from src.models.errors import (
    PermanentUpstreamError,
    RateLimitError,
    TransientUpstreamError,
    UpstreamError,
)


def calculate_backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter_max: float = 0.3
) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Formula: min(max_delay, (base_delay * (2 ** attempt)) + random_jitter)

    Args:
        attempt: Retry attempt number (0-indexed)
        base_delay: Base delay in seconds
        max_delay: Maximum delay cap in seconds
        jitter_max: Maximum jitter to add in seconds

    Returns:
        Delay in seconds
    """
    exponential_delay = base_delay * (2 ** attempt)
    jitter = random.uniform(0, jitter_max)
    return min(max_delay, exponential_delay + jitter)


class RetryPolicy:
    """
    Classifies upstream failures and computes backoff delays.

    Transient: timeouts, transport errors, 5xx
    Rate limited: 429, or 403 with X-RateLimit-Remaining: 0 or Retry-After
    Permanent: every other 4xx
    """

    TRANSIENT_STATUS_CODES: Set[int] = {500, 502, 503, 504}

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter_max: float = 0.3
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_max = jitter_max

    def backoff(self, attempt: int) -> float:
        return calculate_backoff_delay(attempt, self.base_delay, self.max_delay, self.jitter_max)

    @staticmethod
    def is_rate_limited(status_code: int, headers: Mapping[str, str]) -> bool:
        if status_code == 429:
            return True
        if status_code != 403:
            return False
        # Secondary rate limits answer 403 with Retry-After and quota left
        return headers.get("X-RateLimit-Remaining") == "0" or headers.get("Retry-After") is not None

    def is_retryable(self, status_code: Optional[int] = None, is_timeout: bool = False) -> bool:
        if is_timeout:
            return True
        if status_code is None:
            return False
        return status_code in self.TRANSIENT_STATUS_CODES or status_code >= 500

    def error_for_status(
        self,
        status_code: int,
        headers: Mapping[str, str],
        endpoint: str,
    ) -> UpstreamError:
        """Build the taxonomy error for an HTTP error status."""
        if self.is_rate_limited(status_code, headers):
            return RateLimitError(f"Rate limited: HTTP {status_code}", status_code=status_code, endpoint=endpoint)
        if self.is_retryable(status_code):
            return TransientUpstreamError(f"HTTP {status_code}", status_code=status_code, endpoint=endpoint)
        return PermanentUpstreamError(f"HTTP {status_code}", status_code=status_code, endpoint=endpoint)

    def classify(self, exc: BaseException, endpoint: str) -> BaseException:
        """
        Map a raw exception from the executor onto the upstream error taxonomy.

        Already-classified errors pass through unchanged; anything that is not
        an httpx error is returned as-is and treated as unexpected by callers.
        """
        if isinstance(exc, UpstreamError):
            return exc

        if isinstance(exc, httpx.TimeoutException):
            return TransientUpstreamError(f"Timeout: {exc}", endpoint=endpoint)

        if isinstance(exc, httpx.HTTPStatusError):
            return self.error_for_status(exc.response.status_code, exc.response.headers, endpoint)

        if isinstance(exc, httpx.TransportError):
            return TransientUpstreamError(f"Network error: {exc}", endpoint=endpoint)

        return exc
