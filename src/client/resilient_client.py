"""Resilient API client composing cache, circuit breaker, quota tracker and retries."""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from src.client.cache import ResponseCache
from src.client.circuit_breaker import CircuitBreaker
from src.client.quota_tracker import QuotaTracker
from src.client.retry_handler import RetryPolicy
from src.models.data_models import CircuitState, HalfOpenToken, RequestSignature
from src.models.errors import (
    CircuitOpenError,
    RateLimitError,
    TransientUpstreamError,
)

Executor = Callable[[], Awaitable[Any]]


class ResilientClient:
    """
    Guards every outbound call with, in order:

    1. Response cache (fresh hit returns without touching anything else)
    2. Circuit breaker per endpoint group (fast-fail while open)
    3. Quota tracker (sleep until reset below the low-water mark)
    4. The executor, retried with exponential backoff on transient errors

    Identical concurrent signatures share a single in-flight executor call.
    All state lives on the instance; nothing is module-global.
    """

    def __init__(
        self,
        cache: Optional[ResponseCache] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        quota_tracker: Optional[QuotaTracker] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleeper: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        logger: Optional['StructuredLogger'] = None,
    ):
        self.cache = cache or ResponseCache()
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.quota = quota_tracker or QuotaTracker()
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleeper
        self.logger = logger
        self._inflight: Dict[str, asyncio.Future] = {}

    @classmethod
    def from_config(cls, config: 'PipelineConfig', logger: Optional['StructuredLogger'] = None) -> "ResilientClient":
        """Build a client with components sized from PipelineConfig."""
        return cls(
            cache=ResponseCache(ttl_seconds=config.cache_ttl_sec, max_entries=config.cache_max_entries),
            circuit_breaker=CircuitBreaker(
                failure_threshold=config.circuit_failure_threshold,
                cooldown_seconds=config.circuit_cooldown_seconds,
            ),
            quota_tracker=QuotaTracker(
                low_water_mark=config.low_water_mark_remaining,
                max_wait=config.max_quota_wait_sec,
                logger=logger,
            ),
            retry_policy=RetryPolicy(
                max_retries=config.max_retries,
                base_delay=config.retry_base_delay,
                max_delay=config.retry_max_delay,
                jitter_max=config.retry_jitter_max,
            ),
            logger=logger,
        )

    async def call(
        self,
        signature: RequestSignature,
        executor: Executor,
        use_cache: bool = True,
    ) -> Any:
        """
        Execute `executor` under the resilience policy for `signature`.

        Args:
            signature: Identity of the request (cache key, endpoint group)
            executor: Zero-argument coroutine function performing the call;
                may return an httpx.Response or an already-decoded value
            use_cache: Set False to bypass cache reads and writes

        Returns:
            Decoded response value

        Raises:
            CircuitOpenError: Circuit for the endpoint group is open
            PermanentUpstreamError: Non-retryable 4xx response
            TransientUpstreamError: Retries exhausted or circuit opened
            RateLimitError: Still rate limited after all retries
        """
        key = signature.key
        cacheable = use_cache and signature.method == "GET"

        if cacheable:
            cached = self.cache.get(key)
            if cached is not None:
                if self.logger:
                    self.logger.cache_hit(key)
                return cached

        inflight = self._inflight.get(key)
        if inflight is None:
            inflight = asyncio.ensure_future(self._execute(signature, executor, cacheable))
            self._inflight[key] = inflight
            inflight.add_done_callback(lambda fut: self._forget(key, fut))

        # Shield so one cancelled waiter does not cancel the shared call
        return await asyncio.shield(inflight)

    def _forget(self, key: str, future: asyncio.Future) -> None:
        if self._inflight.get(key) is future:
            del self._inflight[key]
        if not future.cancelled():
            # Mark the exception as retrieved even if every waiter was cancelled
            future.exception()

    async def _execute(self, signature: RequestSignature, executor: Executor, cacheable: bool) -> Any:
        group = signature.endpoint_group
        category = self.quota.category_for(signature.endpoint)
        max_retries = self.retry_policy.max_retries
        attempt = 0

        while True:
            permission = self.circuit_breaker.should_allow(group)
            if permission is False:
                raise CircuitOpenError(group, self.circuit_breaker.retry_after(group))
            token = permission if isinstance(permission, HalfOpenToken) else None

            await self.quota.wait_if_needed(category)

            start = time.monotonic()
            try:
                if self.logger:
                    self.logger.request_start(signature.endpoint, attempt)
                value = await self._invoke(signature, executor, category)
            except Exception as exc:
                error = self.retry_policy.classify(exc, signature.endpoint)

                if self.logger:
                    self.logger.request_error(
                        signature.endpoint, getattr(error, "status_code", None), str(error), attempt
                    )

                if isinstance(error, RateLimitError):
                    # Quota exhaustion is not an upstream health signal
                    self.circuit_breaker.release(group, token)
                    if error.reset_at is None:
                        headers = _response_headers(exc)
                        error.reset_at = self.quota.reset_at_from_headers(headers)
                        error.category = headers.get("X-RateLimit-Resource") or category
                    self.quota.mark_exhausted(error.category, error.reset_at)
                    if attempt >= max_retries:
                        if error is exc:
                            raise
                        raise error from exc
                    attempt += 1
                    continue

                if isinstance(error, TransientUpstreamError):
                    previous = self.circuit_breaker.state(group)
                    self.circuit_breaker.record_failure(group, retryable=True)
                    opened = self.circuit_breaker.state(group) == CircuitState.OPEN
                    if opened and previous != CircuitState.OPEN and self.logger:
                        self.logger.circuit_breaker_state(group, CircuitState.OPEN.value)
                    if attempt >= max_retries or opened:
                        if error is exc:
                            raise
                        raise error from exc
                    await self._sleep(self.retry_policy.backoff(attempt))
                    attempt += 1
                    continue

                # Permanent or unexpected: no retry, no effect on the circuit
                self.circuit_breaker.release(group, token)
                if error is exc:
                    raise
                raise error from exc

            if token is not None and self.logger:
                self.logger.circuit_breaker_state(group, CircuitState.CLOSED.value)
            self.circuit_breaker.record_success(group, token)
            if self.logger:
                self.logger.request_success(
                    signature.endpoint, round((time.monotonic() - start) * 1000, 2)
                )
            if cacheable and value is not None:
                self.cache.set(signature.key, value)
            return value

    async def _invoke(self, signature: RequestSignature, executor: Executor, category: str) -> Any:
        result = await executor()
        if not isinstance(result, httpx.Response):
            return result

        headers = result.headers
        self.quota.update_from_headers(headers, signature.endpoint)

        if result.status_code >= 400:
            error = self.retry_policy.error_for_status(result.status_code, headers, signature.endpoint)
            if isinstance(error, RateLimitError):
                error.reset_at = self.quota.reset_at_from_headers(headers)
                error.category = headers.get("X-RateLimit-Resource") or category
            raise error

        if result.status_code == 204 or not result.content:
            return None
        return result.json()

    def invalidate(self, endpoint_prefix: str, method: str = "GET") -> int:
        """Drop cached responses whose endpoint starts with endpoint_prefix; returns the count."""
        return self.cache.invalidate_prefix(f"{method.upper()}:{endpoint_prefix}")

    def stats(self) -> Dict[str, Any]:
        return {
            "cache": self.cache.stats(),
            "circuits": self.circuit_breaker.snapshot(),
            "quota": self.quota.snapshots(),
            "inflight": len(self._inflight),
        }


def _response_headers(exc: BaseException) -> Any:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.headers
    return {}
