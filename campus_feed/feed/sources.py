"""Collaborator abstractions: the backing store and the analytics sink.

The core only talks to these Protocols. Implementations: Firestore
(campus_feed.feed.firestore), Redis / logging sinks (campus_feed.feed.sinks),
and in-memory fakes in the test suite.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from campus_feed.feed.constants import SortDirection

Record = dict[str, Any]


@dataclass(frozen=True)
class CollectionQuery:
    """Ordering, result cap and equality filters for one collection read.

    ``filters`` is kept as a sorted tuple of (field, value) pairs so two
    queries built from equal dicts compare and hash equal.
    """

    order_by_field: str = "createdAt"
    direction: SortDirection = SortDirection.DESCENDING
    limit: int = 50
    filters: tuple[tuple[str, Any], ...] = ()

    @classmethod
    def build(
        cls,
        order_by_field: str = "createdAt",
        direction: SortDirection = SortDirection.DESCENDING,
        limit: int = 50,
        filters: Mapping[str, Any] | None = None,
    ) -> CollectionQuery:
        return cls(
            order_by_field=order_by_field,
            direction=direction,
            limit=limit,
            filters=tuple(sorted((filters or {}).items())),
        )


@dataclass(frozen=True)
class SubscriptionKey:
    """Composite identity of a live subscription: (collection path, query)."""

    collection_path: str
    query: CollectionQuery = field(default_factory=CollectionQuery)

    def __str__(self) -> str:
        filters = ",".join(f"{f}={v}" for f, v in self.query.filters)
        return (
            f"{self.collection_path}[{self.query.order_by_field} "
            f"{self.query.direction.value} limit={self.query.limit}"
            f"{' ' + filters if filters else ''}]"
        )


class LiveCollectionSource(Protocol):
    """Standing queries that yield the full matching record list on every change."""

    def open_subscription(
        self, collection_path: str, query: CollectionQuery
    ) -> AsyncIterator[list[Record]]:
        """Return a stream of record batches. Iteration errors are delivery failures."""
        ...

    async def close_subscription(self, stream: AsyncIterator[list[Record]]) -> None:
        """Stop the upstream listener behind ``stream``. Idempotent."""
        ...


class PointReader(Protocol):
    async def get(self, collection_path: str, doc_id: str) -> Record | None:
        """Return the document as a dict, or None when it does not exist."""
        ...


class CollectionReader(Protocol):
    async def fetch(
        self, collection_path: str, query: CollectionQuery, offset: int = 0
    ) -> list[Record]:
        """One-shot read of up to ``query.limit`` records after skipping ``offset``."""
        ...


class MetricsSink(Protocol):
    async def write_batch(self, kind: str, records: list[Record]) -> None:
        """Persist a coalesced group of analytics records of one kind."""
        ...
