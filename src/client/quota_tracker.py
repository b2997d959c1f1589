"""Upstream quota tracking from rate-limit response headers."""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from src.models.data_models import QuotaSnapshot

QUOTA_CATEGORIES = ("core", "search", "graphql")


def _int_header(headers: Mapping[str, str], name: str) -> Optional[int]:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return int(float(value))
    except (ValueError, OverflowError):
        return None


class QuotaTracker:
    """Per-category quota snapshots with a pre-emptive wait below a low-water mark.

    Snapshots are refreshed from every response's X-RateLimit-* headers.
    Before a call, `wait_if_needed` sleeps until the category resets when
    remaining calls drop below `low_water_mark`, bounded by `max_wait`.

    Times are epoch seconds because X-RateLimit-Reset is an epoch timestamp.
    """

    def __init__(
        self,
        low_water_mark: int = 10,
        max_wait: float = 900.0,
        now: Callable[[], float] = time.time,
        sleeper: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        logger: Optional['StructuredLogger'] = None,
    ):
        """Initialize quota tracker.

        Args:
            low_water_mark: Remaining-call threshold that triggers a wait
            max_wait: Maximum seconds to sleep for a single reset
            now: Clock function returning epoch seconds (default: time.time)
            sleeper: Async sleep function (default: asyncio.sleep)
            logger: Optional structured logger
        """
        self.low_water_mark = low_water_mark
        self.max_wait = max_wait
        self._now = now
        self._sleep = sleeper
        self.logger = logger
        self._snapshots: Dict[str, QuotaSnapshot] = {}

    @staticmethod
    def category_for(path: str) -> str:
        """Infer the quota category of a request path."""
        if path.startswith("/search"):
            return "search"
        if path.startswith("/graphql"):
            return "graphql"
        return "core"

    def snapshot(self, category: str) -> QuotaSnapshot:
        if category not in self._snapshots:
            self._snapshots[category] = QuotaSnapshot(category=category)
        return self._snapshots[category]

    def snapshots(self) -> Dict[str, Dict[str, Any]]:
        return {name: snap.to_dict() for name, snap in self._snapshots.items()}

    def update_from_headers(self, headers: Mapping[str, str], path: str = "/") -> Optional[QuotaSnapshot]:
        """Refresh the snapshot for the response's category; no-op without quota headers."""
        remaining = _int_header(headers, "X-RateLimit-Remaining")
        if remaining is None:
            return None

        category = headers.get("X-RateLimit-Resource") or self.category_for(path)
        snap = self.snapshot(category)
        snap.remaining = remaining
        snap.limit = _int_header(headers, "X-RateLimit-Limit") or snap.limit
        snap.used = _int_header(headers, "X-RateLimit-Used")
        reset = _int_header(headers, "X-RateLimit-Reset")
        if reset is not None:
            snap.reset_at = float(reset)
        return snap

    def reset_at_from_headers(self, headers: Mapping[str, str]) -> float:
        """Resolve the reset time of a rate-limited response.

        Prefers Retry-After (set by secondary rate limits), then
        X-RateLimit-Reset, then one minute from now.
        """
        retry_after = _int_header(headers, "Retry-After")
        if retry_after is not None:
            return self._now() + retry_after
        reset = _int_header(headers, "X-RateLimit-Reset")
        if reset is not None:
            return float(reset)
        return self._now() + 60.0

    def mark_exhausted(self, category: str, reset_at: float) -> None:
        snap = self.snapshot(category)
        snap.remaining = 0
        snap.reset_at = reset_at

    def update_from_rate_limit_body(self, body: Mapping[str, Any]) -> None:
        """Refresh snapshots from a /rate_limit response body."""
        resources = body.get("resources", {})
        for category in QUOTA_CATEGORIES:
            data = resources.get(category)
            if not data:
                continue
            snap = self.snapshot(category)
            snap.limit = data.get("limit")
            snap.remaining = data.get("remaining")
            snap.used = data.get("used")
            if data.get("reset") is not None:
                snap.reset_at = float(data["reset"])

    def required_wait(self, category: str) -> float:
        """Seconds to wait before calling into `category`; 0 when quota is healthy."""
        snap = self.snapshot(category)
        if snap.remaining is None or snap.reset_at is None:
            return 0.0
        if snap.remaining > 0 and snap.remaining >= self.low_water_mark:
            return 0.0
        return min(max(0.0, snap.reset_at - self._now()), self.max_wait)

    async def wait_if_needed(self, category: str) -> float:
        """Sleep until the category resets if below the low-water mark."""
        wait = self.required_wait(category)
        if wait <= 0:
            return 0.0

        snap = self.snapshot(category)
        if self.logger:
            self.logger.quota_wait(category, snap.remaining, wait)
        await self._sleep(wait)

        # Quota is unknown until the next response refreshes it
        snap.remaining = None
        return wait
