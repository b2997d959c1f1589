"""In-memory TTL cache for idempotent upstream reads."""

import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional

from src.models.data_models import CacheEntry


class ResponseCache:
    """
    Short-TTL memoization keyed by request signature.

    Entries are never returned past their expiry; expired entries are
    evicted lazily on read. When full, the least recently used entry
    is dropped.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 1000,
        now: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._now = now
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None if missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        if self._now() >= entry.expires_at:
            del self._entries[key]
            self.misses += 1
            return None

        self._entries.move_to_end(key)
        self.hits += 1
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return

        self._entries[key] = CacheEntry(key=key, value=value, expires_at=self._now() + ttl)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with prefix; returns the count."""
        keys = [k for k in self._entries if k.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, int]:
        return {"hits": self.hits, "misses": self.misses, "size": len(self._entries)}
