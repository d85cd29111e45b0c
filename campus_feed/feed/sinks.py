"""Metrics sinks for coalesced analytics batches.

Redis key schema
----------------
analytics:{kind}   JSON list (RPUSH)   capped at the newest 10 000 records
"""

import json
import logging

from redis.asyncio import Redis

from campus_feed.feed.sources import Record

logger = logging.getLogger(__name__)

_MAX_RECORDS_PER_KIND: int = 10_000


def _analytics_key(kind: str) -> str:
    return f"analytics:{kind}"


class RedisMetricsSink:
    def __init__(self, redis: Redis, max_records: int = _MAX_RECORDS_PER_KIND) -> None:
        self._redis = redis
        self._max_records = max_records

    async def write_batch(self, kind: str, records: list[Record]) -> None:
        """Append records and trim the list in one pipeline round-trip."""
        if not records:
            return
        key = _analytics_key(kind)
        pipeline = self._redis.pipeline()
        pipeline.rpush(key, *(json.dumps(r, default=str) for r in records))
        pipeline.ltrim(key, -self._max_records, -1)
        await pipeline.execute()


class LoggingMetricsSink:
    """Writes each batch as one INFO line. Default sink for local development."""

    async def write_batch(self, kind: str, records: list[Record]) -> None:
        logger.info("analytics %s: %d records %s", kind, len(records), json.dumps(records, default=str))
