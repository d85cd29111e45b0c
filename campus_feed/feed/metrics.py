"""Fetch-latency and cache hit/miss counters. Pure in-memory state."""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from datetime import datetime, timezone

from campus_feed.feed.schemas import MetricsSnapshot

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_SIZE: int = 100


class MetricsRecorder:
    def __init__(
        self,
        sample_size: int = DEFAULT_SAMPLE_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch_times: deque[float] = deque(maxlen=sample_size)
        self._cache_hits = 0
        self._cache_misses = 0
        self._clock = clock
        self._started_at = clock()
        self._last_cleanup_at: datetime | None = None

    def record_fetch_time(self, ms: float) -> None:
        """Add a latency sample; the oldest is dropped once the ring is full."""
        self._fetch_times.append(float(ms))

    def record_cache_hit(self) -> None:
        self._cache_hits += 1

    def record_cache_miss(self) -> None:
        self._cache_misses += 1

    def mark_cleanup(self) -> None:
        self._last_cleanup_at = datetime.now(timezone.utc)

    @property
    def average_fetch_time(self) -> float:
        if not self._fetch_times:
            return 0.0
        return sum(self._fetch_times) / len(self._fetch_times)

    @property
    def cache_hit_rate(self) -> float:
        total = self._cache_hits + self._cache_misses
        return self._cache_hits / total if total > 0 else 0.0

    def snapshot(self) -> MetricsSnapshot:
        return MetricsSnapshot(
            average_fetch_time_ms=self.average_fetch_time,
            cache_hit_rate=self.cache_hit_rate,
            sample_count=len(self._fetch_times),
            cache_hits=self._cache_hits,
            cache_misses=self._cache_misses,
            uptime_s=self._clock() - self._started_at,
            last_cleanup_at=self._last_cleanup_at,
        )

    def log_performance(self) -> None:
        logger.info(
            "Feed performance: avg_fetch=%.2fms hit_rate=%.1f%% samples=%d",
            self.average_fetch_time,
            self.cache_hit_rate * 100,
            len(self._fetch_times),
        )
