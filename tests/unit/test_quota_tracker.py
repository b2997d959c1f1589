"""Unit tests for quota tracking from rate-limit headers."""

import pytest

from src.client.quota_tracker import QuotaTracker
from tests.fixtures.sample_data import RecordingSleeper


def _tracker(now: float = 1_000.0, **kwargs) -> QuotaTracker:
    return QuotaTracker(now=lambda: now, sleeper=RecordingSleeper(), **kwargs)


class TestHeaderParsing:

    def test_updates_snapshot_from_headers(self):
        tracker = _tracker()
        tracker.update_from_headers({
            "X-RateLimit-Limit": "5000",
            "X-RateLimit-Remaining": "4990",
            "X-RateLimit-Used": "10",
            "X-RateLimit-Reset": "1700",
            "X-RateLimit-Resource": "core",
        })

        snap = tracker.snapshot("core")
        assert snap.limit == 5000
        assert snap.remaining == 4990
        assert snap.used == 10
        assert snap.reset_at == 1700.0

    def test_ignores_responses_without_quota_headers(self):
        tracker = _tracker()
        assert tracker.update_from_headers({"Content-Type": "application/json"}) is None
        assert tracker.snapshot("core").remaining is None

    def test_unparseable_headers_are_ignored(self):
        tracker = _tracker()
        assert tracker.update_from_headers({"X-RateLimit-Remaining": "inf"}) is None
        assert tracker.update_from_headers({"X-RateLimit-Remaining": "soon"}) is None

    def test_category_inferred_from_path(self):
        tracker = _tracker()
        tracker.update_from_headers({"X-RateLimit-Remaining": "7"}, "/search/issues")
        assert tracker.snapshot("search").remaining == 7

    def test_reset_prefers_retry_after_then_reset_header(self):
        tracker = _tracker(now=1_000.0)
        assert tracker.reset_at_from_headers({"X-RateLimit-Reset": "1500", "Retry-After": "5"}) == 1005.0
        assert tracker.reset_at_from_headers({"X-RateLimit-Reset": "1500"}) == 1500.0
        assert tracker.reset_at_from_headers({}) == 1060.0

    def test_rate_limit_body(self):
        tracker = _tracker()
        tracker.update_from_rate_limit_body({
            "resources": {
                "core": {"limit": 5000, "remaining": 12, "reset": 2000, "used": 4988},
                "search": {"limit": 30, "remaining": 30, "reset": 2000, "used": 0},
            }
        })
        assert tracker.snapshot("core").remaining == 12
        assert tracker.snapshot("search").limit == 30


class TestWaiting:

    def test_no_wait_when_quota_unknown(self):
        assert _tracker().required_wait("core") == 0.0

    def test_no_wait_above_low_water_mark(self):
        tracker = _tracker(low_water_mark=10)
        tracker.update_from_headers({"X-RateLimit-Remaining": "10", "X-RateLimit-Reset": "1100"})
        assert tracker.required_wait("core") == 0.0

    def test_waits_until_reset_below_low_water_mark(self):
        tracker = _tracker(now=1_000.0, low_water_mark=10)
        tracker.update_from_headers({"X-RateLimit-Remaining": "3", "X-RateLimit-Reset": "1042"})
        assert tracker.required_wait("core") == 42.0

    def test_wait_bounded_by_max_wait(self):
        tracker = _tracker(now=1_000.0, max_wait=30.0)
        tracker.mark_exhausted("core", reset_at=5_000.0)
        assert tracker.required_wait("core") == 30.0

    @pytest.mark.asyncio
    async def test_exhausted_quota_sleeps_until_reset(self):
        sleeper = RecordingSleeper()
        tracker = QuotaTracker(now=lambda: 1_000.0, sleeper=sleeper)
        tracker.mark_exhausted("core", reset_at=1_120.0)

        waited = await tracker.wait_if_needed("core")

        assert waited == 120.0
        assert sleeper.delays == [120.0]
        # Snapshot is stale until the next response refreshes it
        assert tracker.snapshot("core").remaining is None
        assert await tracker.wait_if_needed("core") == 0.0

    @pytest.mark.asyncio
    async def test_reset_in_past_does_not_sleep(self):
        sleeper = RecordingSleeper()
        tracker = QuotaTracker(now=lambda: 2_000.0, sleeper=sleeper)
        tracker.mark_exhausted("core", reset_at=1_500.0)

        assert await tracker.wait_if_needed("core") == 0.0
        assert sleeper.delays == []
