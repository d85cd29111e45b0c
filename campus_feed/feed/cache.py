"""In-process bounded cache for the feed domain.

Key schema
----------
profile:{user_id}                               AuthorProfile | None  TTL 30 min
page:{collection}:{query_signature}:{page}:{n}  list[dict]            TTL 2 min

One BoundedCache instance is constructed per process (or per test) and injected
into the orchestrator; nothing here is a module-level singleton.
"""

from __future__ import annotations

import json
import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from campus_feed.feed.sources import CollectionQuery

logger = logging.getLogger(__name__)

PROFILE_TTL_S: float = 1800.0  # 30 minutes
PAGE_TTL_S: float = 120.0      # 2 minutes
DEFAULT_TTL_S: float = 300.0   # 5 minutes

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

Clock = Callable[[], float]


@dataclass
class CacheEntry(Generic[V]):
    value: V
    written_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.written_at >= self.ttl


class BoundedCache(Generic[K, V]):
    """Fixed-capacity key→value store with per-entry TTL and strict LRU eviction.

    ``get`` and ``has`` treat an expired entry as absent and drop it. A hit via
    either refreshes the key's recency. Inserting a new key at capacity evicts
    exactly one entry, the least recently accessed.
    """

    def __init__(
        self,
        capacity: int = 500,
        default_ttl: float = DEFAULT_TTL_S,
        clock: Clock = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._default_ttl = default_ttl
        self._clock = clock
        # Insertion order doubles as access order: oldest access first.
        self._entries: OrderedDict[K, CacheEntry[V]] = OrderedDict()

    @property
    def capacity(self) -> int:
        return self._capacity

    def _live_entry(self, key: K) -> CacheEntry[V] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return entry

    def get(self, key: K) -> V | None:
        """Return the cached value or None on miss/expiry.

        A cached ``None`` is indistinguishable from a miss here; use ``has``
        first when None is a meaningful cached value.
        """
        entry = self._live_entry(key)
        return entry.value if entry is not None else None

    def has(self, key: K) -> bool:
        return self._live_entry(key) is not None

    def set(self, key: K, value: V, ttl: float | None = None) -> None:
        entry = CacheEntry(
            value=value,
            written_at=self._clock(),
            ttl=self._default_ttl if ttl is None else ttl,
        )
        if key in self._entries:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            return
        if len(self._entries) >= self._capacity:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Cache full (%d); evicted %r", self._capacity, evicted)
        self._entries[key] = entry

    def delete(self, key: K) -> bool:
        return self._entries.pop(key, None) is not None

    def cleanup(self) -> int:
        """Purge every expired entry. Returns how many were removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Key helpers
# ---------------------------------------------------------------------------


def profile_key(user_id: str) -> str:
    return f"profile:{user_id}"


def page_key(collection_path: str, query: CollectionQuery, page: int, page_size: int) -> str:
    """Query-signature key for one cached page of raw records."""
    signature = json.dumps(
        {
            "order_by": query.order_by_field,
            "direction": query.direction.value,
            "filters": [[f, _jsonable(v)] for f, v in query.filters],
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return f"page:{collection_path}:{signature}:{page}:{page_size}"


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)
