"""Diagnostics and one-shot feed page Pydantic V2 schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from campus_feed.feed.constants import OrderingMode
from campus_feed.feed.hashtags import normalize_tags
from campus_feed.feed.schemas import (
    AuthorProfile,
    ContentItem,
    FeedUpdate,
    MetricsSnapshot,
    ScoreBreakdown,
    ViewerContext,
)


class CleanupResponse(BaseModel):
    removed_entries: int = Field(description="Expired cache entries purged by this run.")
    metrics: MetricsSnapshot


class FeedPageRequest(BaseModel):
    """Viewer context plus paging for a non-live ranked page.

    Omit ``viewer_id`` for an anonymous page (no personalization).
    """

    viewer_id: str | None = None
    following: list[str] = Field(default_factory=list)
    interactions: dict[str, int] = Field(default_factory=dict)
    interests: list[str] = Field(default_factory=list)
    affiliation: str | None = None
    mode: OrderingMode = OrderingMode.RELEVANCE
    page: int = Field(default=0, ge=0)
    page_size: int = Field(default=20, ge=1, le=100)
    filters: dict[str, str | int | bool] = Field(
        default_factory=dict, description="Equality filters on post fields."
    )

    def to_viewer(self) -> ViewerContext | None:
        if self.viewer_id is None:
            return None
        return ViewerContext(
            viewer_id=self.viewer_id,
            following=frozenset(self.following),
            interactions={k: v for k, v in self.interactions.items() if v > 0},
            interests=frozenset(normalize_tags(self.interests)),
            affiliation=self.affiliation,
        )


class RankedItem(BaseModel):
    item: ContentItem
    score: ScoreBreakdown | None = Field(
        default=None, description="Null for raw-field orderings."
    )
    author: AuthorProfile | None = None


class FeedPageResponse(BaseModel):
    items: list[RankedItem]
    mode: OrderingMode
    page: int
    page_size: int
    generated_at: datetime

    @classmethod
    def from_update(cls, update: FeedUpdate, page: int, page_size: int) -> FeedPageResponse:
        return cls(
            items=[
                RankedItem(
                    item=item,
                    score=update.scores.get(item.item_id),
                    author=update.authors.get(item.author_id),
                )
                for item in update.items
            ],
            mode=update.mode,
            page=page,
            page_size=page_size,
            generated_at=update.generated_at,
        )
