"""Unit tests for the resilient client composition."""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from src.client.cache import ResponseCache
from src.client.circuit_breaker import CircuitBreaker
from src.client.quota_tracker import QuotaTracker
from src.client.resilient_client import ResilientClient
from src.client.retry_handler import RetryPolicy
from src.models.data_models import CircuitState, RequestSignature
from src.models.errors import (
    CircuitOpenError,
    PermanentUpstreamError,
    RateLimitError,
    TransientUpstreamError,
)
from tests.fixtures.sample_data import FakeClock, RecordingSleeper

REPO = RequestSignature.create("GET", "/repos/octocat/hello-world")


def _client(
    clock: FakeClock = None,
    sleeper: RecordingSleeper = None,
    quota: QuotaTracker = None,
    failure_threshold: int = 5,
    max_retries: int = 2,
) -> ResilientClient:
    clock = clock or FakeClock()
    return ResilientClient(
        cache=ResponseCache(ttl_seconds=300, now=clock),
        circuit_breaker=CircuitBreaker(failure_threshold=failure_threshold, cooldown_seconds=60.0, clock=clock),
        quota_tracker=quota or QuotaTracker(now=lambda: 1_000.0, sleeper=RecordingSleeper()),
        retry_policy=RetryPolicy(max_retries=max_retries, base_delay=0.5, max_delay=4.0, jitter_max=0.0),
        sleeper=sleeper or RecordingSleeper(),
    )


def _transient() -> TransientUpstreamError:
    return TransientUpstreamError("HTTP 503", status_code=503)


class TestCaching:

    @pytest.mark.asyncio
    async def test_fresh_cache_hit_skips_executor(self):
        client = _client()
        executor = AsyncMock(return_value={"id": 1})

        first = await client.call(REPO, executor)
        second = await client.call(REPO, executor)

        assert first == second == {"id": 1}
        assert executor.await_count == 1
        assert client.cache.stats()["hits"] == 1

    @pytest.mark.asyncio
    async def test_expired_entry_calls_upstream_again(self):
        clock = FakeClock()
        client = _client(clock=clock)
        executor = AsyncMock(return_value={"id": 1})

        await client.call(REPO, executor)
        clock.advance(300)
        await client.call(REPO, executor)

        assert executor.await_count == 2

    @pytest.mark.asyncio
    async def test_use_cache_false_bypasses_cache(self):
        client = _client()
        executor = AsyncMock(return_value={"id": 1})

        await client.call(REPO, executor, use_cache=False)
        await client.call(REPO, executor, use_cache=False)

        assert executor.await_count == 2
        assert len(client.cache) == 0

    @pytest.mark.asyncio
    async def test_non_get_requests_are_not_cached(self):
        client = _client()
        signature = RequestSignature.create("POST", "/repos/a/b/dispatches")
        executor = AsyncMock(return_value={"ok": True})

        await client.call(signature, executor)
        await client.call(signature, executor)

        assert executor.await_count == 2

    @pytest.mark.asyncio
    async def test_params_order_does_not_change_cache_key(self):
        client = _client()
        executor = AsyncMock(return_value=[])

        await client.call(RequestSignature.create("GET", "/repos/a/b/pulls", {"state": "closed", "page": 1}), executor)
        await client.call(RequestSignature.create("GET", "/repos/a/b/pulls", {"page": 1, "state": "closed"}), executor)

        assert executor.await_count == 1

    @pytest.mark.asyncio
    async def test_invalidate_drops_entries_under_endpoint(self):
        client = _client()
        executor = AsyncMock(return_value={"id": 1})
        await client.call(REPO, executor)
        await client.call(RequestSignature.create("GET", "/users/octocat"), executor)

        assert client.invalidate("/repos/octocat/hello-world") == 1
        await client.call(REPO, executor)

        assert executor.await_count == 3
        assert len(client.cache) == 2


class TestInflightDedup:

    @pytest.mark.asyncio
    async def test_concurrent_identical_calls_share_one_execution(self):
        client = _client()
        release = asyncio.Event()
        calls = 0

        async def executor():
            nonlocal calls
            calls += 1
            await release.wait()
            return {"id": 7}

        tasks = [asyncio.create_task(client.call(REPO, executor)) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks)

        assert calls == 1
        assert results == [{"id": 7}] * 3
        assert client.stats()["inflight"] == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_call(self):
        client = _client()
        release = asyncio.Event()

        async def executor():
            await release.wait()
            return {"id": 7}

        first = asyncio.create_task(client.call(REPO, executor))
        second = asyncio.create_task(client.call(REPO, executor))
        await asyncio.sleep(0)

        first.cancel()
        release.set()

        assert await second == {"id": 7}
        with pytest.raises(asyncio.CancelledError):
            await first

    @pytest.mark.asyncio
    async def test_shared_failure_reaches_every_waiter(self):
        client = _client(max_retries=0)
        executor = AsyncMock(side_effect=PermanentUpstreamError("HTTP 404", status_code=404))

        results = await asyncio.gather(
            client.call(REPO, executor),
            client.call(REPO, executor),
            return_exceptions=True,
        )

        assert executor.await_count == 1
        assert all(isinstance(r, PermanentUpstreamError) for r in results)


class TestRetries:

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self):
        sleeper = RecordingSleeper()
        client = _client(sleeper=sleeper)
        executor = AsyncMock(side_effect=[_transient(), {"id": 1}])

        assert await client.call(REPO, executor) == {"id": 1}
        assert executor.await_count == 2
        assert sleeper.delays == [0.5]
        assert client.circuit_breaker.state(REPO.endpoint_group) == CircuitState.CLOSED
        assert client.circuit_breaker.failure_count(REPO.endpoint_group) == 0

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        sleeper = RecordingSleeper()
        client = _client(sleeper=sleeper, max_retries=2)
        executor = AsyncMock(side_effect=_transient())

        with pytest.raises(TransientUpstreamError):
            await client.call(REPO, executor)

        assert executor.await_count == 3
        assert sleeper.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(self):
        client = _client()
        request = httpx.Request("GET", "https://api.github.com/repos/octocat/missing")
        executor = AsyncMock(return_value=httpx.Response(404, request=request))

        with pytest.raises(PermanentUpstreamError) as exc_info:
            await client.call(REPO, executor)

        assert exc_info.value.status_code == 404
        assert executor.await_count == 1
        assert client.circuit_breaker.failure_count(REPO.endpoint_group) == 0

    @pytest.mark.asyncio
    async def test_httpx_transport_errors_are_retried(self):
        client = _client()
        executor = AsyncMock(side_effect=[httpx.ConnectError("reset"), {"id": 1}])

        assert await client.call(REPO, executor) == {"id": 1}

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate_unchanged(self):
        client = _client()
        executor = AsyncMock(side_effect=KeyError("decode"))

        with pytest.raises(KeyError):
            await client.call(REPO, executor)
        assert executor.await_count == 1


class TestCircuitIntegration:

    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast_without_calling_upstream(self):
        client = _client(failure_threshold=2, max_retries=5)
        executor = AsyncMock(side_effect=_transient())

        with pytest.raises(TransientUpstreamError):
            await client.call(REPO, executor)
        # Retrying stops as soon as the circuit opens
        assert executor.await_count == 2

        with pytest.raises(CircuitOpenError) as exc_info:
            await client.call(REPO, executor)
        assert executor.await_count == 2
        assert exc_info.value.endpoint_group == "repositories"

    @pytest.mark.asyncio
    async def test_other_groups_unaffected_by_open_circuit(self):
        client = _client(failure_threshold=1, max_retries=0)

        with pytest.raises(TransientUpstreamError):
            await client.call(REPO, AsyncMock(side_effect=_transient()))

        user = RequestSignature.create("GET", "/users/octocat")
        assert await client.call(user, AsyncMock(return_value={"login": "octocat"})) == {"login": "octocat"}

    @pytest.mark.asyncio
    async def test_half_open_trial_success_closes_circuit(self):
        clock = FakeClock()
        client = _client(clock=clock, failure_threshold=1, max_retries=0)

        with pytest.raises(TransientUpstreamError):
            await client.call(REPO, AsyncMock(side_effect=_transient()))

        clock.advance(60.0)
        assert await client.call(REPO, AsyncMock(return_value={"id": 1})) == {"id": 1}
        assert client.circuit_breaker.state("repositories") == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_trial_failure_reopens(self):
        clock = FakeClock()
        client = _client(clock=clock, failure_threshold=1, max_retries=3)

        with pytest.raises(TransientUpstreamError):
            await client.call(REPO, AsyncMock(side_effect=_transient()))

        clock.advance(60.0)
        trial = AsyncMock(side_effect=_transient())
        with pytest.raises(TransientUpstreamError):
            await client.call(REPO, trial)

        assert trial.await_count == 1
        assert client.circuit_breaker.state("repositories") == CircuitState.OPEN


class TestQuotaIntegration:

    @pytest.mark.asyncio
    async def test_429_waits_for_reset_before_next_attempt(self):
        quota_sleeper = RecordingSleeper()
        quota = QuotaTracker(now=lambda: 1_000.0, sleeper=quota_sleeper)
        client = _client(quota=quota)
        limited = httpx.Response(429, headers={
            "X-RateLimit-Limit": "5000",
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": "1030",
            "X-RateLimit-Resource": "core",
        })
        ok = httpx.Response(200, json={"id": 1}, headers={"X-RateLimit-Remaining": "4999", "X-RateLimit-Reset": "4600"})
        executor = AsyncMock(side_effect=[limited, ok])

        assert await client.call(REPO, executor) == {"id": 1}
        assert quota_sleeper.delays == [30.0]
        assert quota.snapshot("core").remaining == 4999
        # Quota exhaustion is not an upstream failure
        assert client.circuit_breaker.failure_count("repositories") == 0

    @pytest.mark.asyncio
    async def test_rate_limit_raised_when_retries_exhausted(self):
        client = _client(max_retries=1)
        limited = httpx.Response(403, headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "1010"})
        executor = AsyncMock(return_value=limited)

        with pytest.raises(RateLimitError) as exc_info:
            await client.call(REPO, executor)

        assert exc_info.value.reset_at == 1010.0
        assert executor.await_count == 2

    @pytest.mark.asyncio
    async def test_secondary_rate_limit_waits_for_retry_after(self):
        quota_sleeper = RecordingSleeper()
        quota = QuotaTracker(now=lambda: 1_000.0, sleeper=quota_sleeper)
        client = _client(quota=quota)
        limited = httpx.Response(403, headers={
            "X-RateLimit-Remaining": "4000",
            "X-RateLimit-Reset": "4600",
            "Retry-After": "20",
        })
        executor = AsyncMock(side_effect=[limited, httpx.Response(200, json={"id": 1})])

        assert await client.call(REPO, executor) == {"id": 1}
        assert quota_sleeper.delays == [20.0]

    @pytest.mark.asyncio
    async def test_low_quota_waits_before_calling(self):
        quota_sleeper = RecordingSleeper()
        quota = QuotaTracker(low_water_mark=10, now=lambda: 1_000.0, sleeper=quota_sleeper)
        quota.update_from_headers({"X-RateLimit-Remaining": "2", "X-RateLimit-Reset": "1005"})
        client = _client(quota=quota)

        await client.call(REPO, AsyncMock(return_value={"id": 1}))

        assert quota_sleeper.delays == [5.0]

    @pytest.mark.asyncio
    async def test_empty_body_returns_none_and_is_not_cached(self):
        client = _client()
        executor = AsyncMock(return_value=httpx.Response(204))

        assert await client.call(REPO, executor) is None
        assert len(client.cache) == 0
