"""Feed orchestrator — ties live data, scoring, ordering and analytics together.

Ordering modes
--------------
- relevance         : score_item final score, highest first (newer wins ties)
- recency           : created_at, newest first
- most_liked        : like count, then newest
- most_commented    : comment count, then newest
- oldest_first      : created_at, oldest first
- same_affiliation  : relevance, restricted to the viewer's school

Raw-field modes never call the scorer. Items without a usable timestamp sort
as the oldest possible item.

All live feeds share one standing query on the posts collection. The first
open session opens it, every batch is ranked separately for each open
session, and closing the last session tears it down. A session that joins
an already-open feed is sent the latest batch straight away.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable, Coroutine, Iterable, Mapping
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from campus_feed.exceptions import FetchError, RecordParseError
from campus_feed.feed.batching import BatchCoalescer
from campus_feed.feed.cache import PAGE_TTL_S, PROFILE_TTL_S, BoundedCache, page_key, profile_key
from campus_feed.feed.constants import (
    RAW_FIELD_MODES,
    OperationKind,
    OrderingMode,
    SortDirection,
)
from campus_feed.feed.metrics import MetricsRecorder
from campus_feed.feed.schemas import (
    AuthorProfile,
    ContentItem,
    FeedUpdate,
    MetricsSnapshot,
    ScoreBreakdown,
    ViewerContext,
)
from campus_feed.feed.scoring import (
    DEFAULT_SCORING_CONFIG,
    ScoringConfig,
    build_post_metrics,
    score_item,
    summarize_scores,
)
from campus_feed.feed.sources import (
    CollectionQuery,
    CollectionReader,
    LiveCollectionSource,
    MetricsSink,
    PointReader,
    Record,
    SubscriptionKey,
)
from campus_feed.feed.subscriptions import Subscription, SubscriptionManager

if TYPE_CHECKING:
    from campus_feed.config import Settings

logger = logging.getLogger(__name__)

OnUpdate = Callable[[FeedUpdate], Awaitable[None]]
OnFeedError = Callable[[FetchError], Awaitable[None]]

# Sampled post_metrics records per ranked batch.
_SAMPLED_POST_LIMIT: int = 10

# Server-side ordering for one-shot pages. Relevance pages take the newest
# candidates and re-rank them.
_PAGE_ORDERING: dict[OrderingMode, tuple[str, SortDirection]] = {
    OrderingMode.RELEVANCE: ("createdAt", SortDirection.DESCENDING),
    OrderingMode.SAME_AFFILIATION: ("createdAt", SortDirection.DESCENDING),
    OrderingMode.RECENCY: ("createdAt", SortDirection.DESCENDING),
    OrderingMode.OLDEST_FIRST: ("createdAt", SortDirection.ASCENDING),
    OrderingMode.MOST_LIKED: ("likeCount", SortDirection.DESCENDING),
    OrderingMode.MOST_COMMENTED: ("commentCount", SortDirection.DESCENDING),
}


# ===========================================================================
# Ordering helpers (pure)
# ===========================================================================


def _timestamp(item: ContentItem) -> float:
    return item.created_at.timestamp() if item.created_at is not None else float("-inf")


def order_items(
    items: Iterable[ContentItem],
    mode: OrderingMode,
    scores: Mapping[str, ScoreBreakdown] | None = None,
) -> list[ContentItem]:
    items = list(items)
    if mode is OrderingMode.RECENCY:
        return sorted(items, key=_timestamp, reverse=True)
    if mode is OrderingMode.OLDEST_FIRST:
        return sorted(items, key=_timestamp)
    if mode is OrderingMode.MOST_LIKED:
        return sorted(items, key=lambda i: (i.like_count, _timestamp(i)), reverse=True)
    if mode is OrderingMode.MOST_COMMENTED:
        return sorted(items, key=lambda i: (i.comment_count, _timestamp(i)), reverse=True)
    scores = scores or {}

    def relevance(item: ContentItem) -> tuple[float, float]:
        breakdown = scores.get(item.item_id)
        return (breakdown.final_score if breakdown else 0.0, _timestamp(item))

    return sorted(items, key=relevance, reverse=True)


def _same_school(a: str | None, b: str | None) -> bool:
    return a is not None and b is not None and a.strip().casefold() == b.strip().casefold()


def filter_same_affiliation(
    items: Iterable[ContentItem],
    authors: Mapping[str, AuthorProfile | None],
    viewer: ViewerContext | None,
) -> list[ContentItem]:
    """Keep items posted from, or authored by someone at, the viewer's school.

    A viewer without an affiliation gets every item back.
    """
    items = list(items)
    if viewer is None or viewer.affiliation is None:
        return items
    kept: list[ContentItem] = []
    for item in items:
        author = authors.get(item.author_id)
        if _same_school(item.affiliation, viewer.affiliation) or (
            author is not None and _same_school(author.affiliation, viewer.affiliation)
        ):
            kept.append(item)
    return kept


def parse_records(records: Iterable[Record]) -> list[ContentItem]:
    """Parse a raw batch, skipping (and logging) records that cannot be items."""
    items: list[ContentItem] = []
    for record in records:
        try:
            items.append(ContentItem.from_record(record))
        except RecordParseError as exc:
            logger.warning("Skipping post record: %s", exc)
    return items


# ===========================================================================
# Sessions
# ===========================================================================


class FeedSession:
    """Handle returned by ``get_ranked_feed``. Close it to stop updates."""

    def __init__(
        self,
        orchestrator: FeedOrchestrator,
        viewer: ViewerContext | None,
        mode: OrderingMode,
        on_update: OnUpdate,
        on_error: OnFeedError | None = None,
    ) -> None:
        self.viewer = viewer
        self.mode = mode
        self.latest: FeedUpdate | None = None
        self._orchestrator = orchestrator
        self._on_update = on_update
        self._on_error = on_error
        self._closed = False

    @property
    def active(self) -> bool:
        return not self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._orchestrator._release(self)

    def __repr__(self) -> str:
        viewer_id = self.viewer.viewer_id if self.viewer else "anonymous"
        return f"<FeedSession {viewer_id} {self.mode.value}>"


# ===========================================================================
# Orchestrator
# ===========================================================================


class FeedOrchestrator:
    def __init__(
        self,
        *,
        manager: SubscriptionManager,
        point_reader: PointReader,
        collection_reader: CollectionReader,
        cache: BoundedCache,
        metrics: MetricsRecorder,
        coalescer: BatchCoalescer,
        posts_collection: str = "posts",
        users_collection: str = "users",
        subscription_limit: int = 50,
        profile_ttl: float = PROFILE_TTL_S,
        page_ttl: float = PAGE_TTL_S,
        metrics_sample_rate: float = 0.1,
        cleanup_interval: float = 300.0,
        scoring_config: ScoringConfig = DEFAULT_SCORING_CONFIG,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._manager = manager
        self._point_reader = point_reader
        self._collection_reader = collection_reader
        self._cache = cache
        self._metrics = metrics
        self._coalescer = coalescer
        self._posts_collection = posts_collection
        self._users_collection = users_collection
        self._subscription_limit = subscription_limit
        self._profile_ttl = profile_ttl
        self._page_ttl = page_ttl
        self._metrics_sample_rate = metrics_sample_rate
        self._cleanup_interval = cleanup_interval
        self._scoring_config = scoring_config
        self._rng = rng or random.Random()
        self._clock = clock
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._tick_task: asyncio.Task[None] | None = None
        # Shielded profile loads and catch-up deliveries.
        self._background: set[asyncio.Task[Any]] = set()
        self._sessions: set[FeedSession] = set()
        self._live: Subscription | None = None
        self._last_records: list[Record] | None = None
        self._live_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Live ranked feed
    # ------------------------------------------------------------------

    def live_key(self) -> SubscriptionKey:
        return SubscriptionKey(
            self._posts_collection,
            CollectionQuery.build(limit=self._subscription_limit),
        )

    async def get_ranked_feed(
        self,
        viewer: ViewerContext | None,
        mode: OrderingMode | str,
        on_update: OnUpdate,
        on_error: OnFeedError | None = None,
    ) -> FeedSession:
        """Join the live posts feed and push updates ranked for ``viewer``.

        ``on_update`` receives a FeedUpdate for every batch the store delivers.
        ``on_error`` receives the FetchError when the live stream fails. The
        stream is not retried; the next ``get_ranked_feed`` call reopens it
        for every session still open.
        """
        session = FeedSession(self, viewer, OrderingMode(mode), on_update, on_error)
        async with self._live_lock:
            self._sessions.add(session)
            if self._live is None:
                try:
                    self._live = await self._manager.subscribe(
                        self.live_key(), self._on_live_data, self._on_live_error
                    )
                except BaseException:
                    self._sessions.discard(session)
                    raise
            elif self._last_records is not None:
                self._spawn(self._catch_up(session, self._last_records))
        logger.info(
            "Live feed opened for %s (mode=%s, sessions=%d)",
            viewer.viewer_id if viewer else "anonymous",
            session.mode.value,
            len(self._sessions),
        )
        return session

    async def _release(self, session: FeedSession) -> None:
        async with self._live_lock:
            self._sessions.discard(session)
            if self._sessions or self._live is None:
                return
            subscription, self._live = self._live, None
            self._last_records = None
        await subscription.unsubscribe()
        logger.info("Last live feed session closed; subscription released")

    async def _on_live_data(self, records: list[Record]) -> None:
        self._last_records = records
        sessions = [s for s in self._sessions if s.active]
        if not sessions:
            return
        items = parse_records(records)
        authors = await self._resolve_authors(items)
        for session in sessions:
            await self._deliver(session, items, authors)

    async def _on_live_error(self, error: FetchError) -> None:
        subscription, self._live = self._live, None
        self._last_records = None
        for session in [s for s in self._sessions if s.active]:
            if session._on_error is None:
                continue
            try:
                await session._on_error(error)
            except Exception:
                logger.exception("on_error handler for %r raised", session)
        if subscription is not None:
            await subscription.unsubscribe()

    async def _catch_up(self, session: FeedSession, records: list[Record]) -> None:
        items = parse_records(records)
        authors = await self._resolve_authors(items)
        # A newer batch already reached every registered session.
        if self._last_records is records:
            await self._deliver(session, items, authors)

    async def _deliver(
        self,
        session: FeedSession,
        items: list[ContentItem],
        authors: Mapping[str, AuthorProfile | None],
    ) -> None:
        if not session.active:
            return
        update = self.rank(items, authors, session.viewer, session.mode)
        self._sample_metrics(update, session.viewer)
        session.latest = update
        logger.debug("Delivering %d ranked items to %r", len(update.items), session)
        try:
            await session._on_update(update)
        except Exception:
            logger.exception("on_update handler for %r raised", session)

    def rank(
        self,
        items: list[ContentItem],
        authors: Mapping[str, AuthorProfile | None],
        viewer: ViewerContext | None,
        mode: OrderingMode,
    ) -> FeedUpdate:
        now = self._now()
        if mode is OrderingMode.SAME_AFFILIATION:
            items = filter_same_affiliation(items, authors, viewer)
        scores: dict[str, ScoreBreakdown] = {}
        if mode not in RAW_FIELD_MODES:
            scores = {
                item.item_id: score_item(item, viewer, now, self._scoring_config)
                for item in items
            }
        ordered = order_items(items, mode, scores)
        return FeedUpdate(
            items=ordered,
            scores=scores,
            authors={i.author_id: authors.get(i.author_id) for i in ordered},
            mode=mode,
            generated_at=now,
        )

    def _sample_metrics(self, update: FeedUpdate, viewer: ViewerContext | None) -> None:
        if not update.scores or self._rng.random() >= self._metrics_sample_rate:
            return
        viewer_id = viewer.viewer_id if viewer else None
        summary = summarize_scores(update.scores.values())
        self._coalescer.add_record(
            OperationKind.ALGORITHM_PERFORMANCE.value,
            {
                "user_id": viewer_id,
                "mode": update.mode.value,
                "total_posts": len(update.items),
                **summary,
                "timestamp": update.generated_at.isoformat(),
            },
        )
        for item in update.items[:_SAMPLED_POST_LIMIT]:
            self._coalescer.add_record(
                OperationKind.POST_METRICS.value,
                build_post_metrics(item, update.scores[item.item_id], viewer_id, update.generated_at),
            )

    # ------------------------------------------------------------------
    # Author profiles (cache-or-fetch)
    # ------------------------------------------------------------------

    async def fetch_author_profile(
        self, author_id: str, force_refresh: bool = False
    ) -> AuthorProfile | None:
        """Return the author's profile, from cache when fresh.

        A missing user document is cached as None so repeated lookups do not
        hit the store. Raises FetchError when the store call fails. The load
        is shielded: cancelling the caller still lets it fill the cache.
        """
        key = profile_key(author_id)
        if not force_refresh and self._cache.has(key):
            self._metrics.record_cache_hit()
            return self._cache.get(key)
        self._metrics.record_cache_miss()
        return await asyncio.shield(self._spawn(self._load_profile(author_id)))

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._forget_background)
        return task

    def _forget_background(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Background task finished with %r", task.exception())

    async def _load_profile(self, author_id: str) -> AuthorProfile | None:
        started = self._clock()
        try:
            record = await self._point_reader.get(self._users_collection, author_id)
        except FetchError:
            raise
        except Exception as exc:
            raise FetchError(self._users_collection, str(exc), doc_id=author_id) from exc
        self._metrics.record_fetch_time((self._clock() - started) * 1000.0)
        profile = AuthorProfile.from_record(author_id, record) if record is not None else None
        self._cache.set(profile_key(author_id), profile, ttl=self._profile_ttl)
        return profile

    async def _profile_or_none(self, author_id: str) -> AuthorProfile | None:
        try:
            return await self.fetch_author_profile(author_id)
        except FetchError as exc:
            logger.warning("Author profile unavailable: %s", exc)
            return None

    async def _resolve_authors(
        self, items: Iterable[ContentItem]
    ) -> dict[str, AuthorProfile | None]:
        author_ids = sorted({item.author_id for item in items})
        profiles = await asyncio.gather(*(self._profile_or_none(a) for a in author_ids))
        return dict(zip(author_ids, profiles))

    # ------------------------------------------------------------------
    # One-shot pages
    # ------------------------------------------------------------------

    async def fetch_feed_page(
        self,
        viewer: ViewerContext | None,
        mode: OrderingMode | str = OrderingMode.RELEVANCE,
        page: int = 0,
        page_size: int = 20,
        filters: Mapping[str, Any] | None = None,
    ) -> FeedUpdate:
        """Rank one page of posts without opening a live subscription.

        The raw page is cached under its query signature with the short TTL.
        Raises FetchError when the store read fails.
        """
        mode = OrderingMode(mode)
        if page < 0 or page_size < 1:
            raise ValueError("page must be >= 0 and page_size >= 1")
        order_by_field, direction = _PAGE_ORDERING[mode]
        query = CollectionQuery.build(
            order_by_field=order_by_field,
            direction=direction,
            limit=page_size,
            filters=filters,
        )
        key = page_key(self._posts_collection, query, page, page_size)
        if self._cache.has(key):
            self._metrics.record_cache_hit()
            records = self._cache.get(key)
        else:
            self._metrics.record_cache_miss()
            started = self._clock()
            try:
                records = await self._collection_reader.fetch(
                    self._posts_collection, query, offset=page * page_size
                )
            except FetchError:
                raise
            except Exception as exc:
                raise FetchError(self._posts_collection, str(exc)) from exc
            self._metrics.record_fetch_time((self._clock() - started) * 1000.0)
            self._cache.set(key, records, ttl=self._page_ttl)

        items = parse_records(records)
        authors = await self._resolve_authors(items)
        update = self.rank(items, authors, viewer, mode)
        self._sample_metrics(update, viewer)
        return update

    # ------------------------------------------------------------------
    # Diagnostics and housekeeping
    # ------------------------------------------------------------------

    def get_metrics_snapshot(self) -> MetricsSnapshot:
        return self._metrics.snapshot().model_copy(
            update={
                "cache_size": self._cache.size(),
                "active_subscriptions": self._manager.active_count(),
            }
        )

    async def refresh_and_cleanup(self) -> int:
        """Purge expired cache entries, flush analytics, log performance.

        Returns the number of cache entries removed.
        """
        removed = self._cache.cleanup()
        await self._coalescer.flush()
        self._metrics.mark_cleanup()
        self._metrics.log_performance()
        logger.info("Cleanup removed %d expired cache entries", removed)
        return removed

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            try:
                await self.refresh_and_cleanup()
            except Exception:
                logger.exception("Periodic feed cleanup failed")

    def start(self) -> None:
        """Start the periodic cleanup tick. Idempotent."""
        if self._tick_task is None or self._tick_task.done():
            self._tick_task = asyncio.get_running_loop().create_task(
                self._cleanup_loop(), name="feed-cleanup"
            )

    async def aclose(self) -> None:
        if self._tick_task is not None:
            self._tick_task.cancel()
            await asyncio.wait([self._tick_task])
            self._tick_task = None
        async with self._live_lock:
            for session in self._sessions:
                session._closed = True
            self._sessions.clear()
            self._live = None
            self._last_records = None
        await self._manager.cleanup_all()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self._coalescer.aclose()


def build_orchestrator(
    settings: Settings,
    *,
    source: LiveCollectionSource,
    point_reader: PointReader,
    collection_reader: CollectionReader,
    sink: MetricsSink,
    rng: random.Random | None = None,
) -> FeedOrchestrator:
    """Wire a FeedOrchestrator and its collaborators from settings."""
    coalescer = BatchCoalescer(
        sink,
        batch_size=settings.batch_size,
        batch_timeout=settings.batch_timeout_ms / 1000.0,
    )
    return FeedOrchestrator(
        manager=SubscriptionManager(source, coalescer),
        point_reader=point_reader,
        collection_reader=collection_reader,
        cache=BoundedCache(capacity=settings.cache_capacity),
        metrics=MetricsRecorder(sample_size=settings.fetch_sample_size),
        coalescer=coalescer,
        posts_collection=settings.posts_collection,
        users_collection=settings.users_collection,
        subscription_limit=settings.subscription_limit,
        profile_ttl=settings.profile_ttl_s,
        page_ttl=settings.page_ttl_s,
        metrics_sample_rate=settings.metrics_sample_rate,
        cleanup_interval=settings.cleanup_interval_s,
        rng=rng,
    )
