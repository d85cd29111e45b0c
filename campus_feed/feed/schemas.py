"""Feed domain Pydantic V2 schemas and the record-parsing boundary.

Backing-store records arrive as loosely-typed dicts (Firestore camelCase
documents). ``ContentItem.from_record``, ``AuthorProfile.from_record`` and
``ViewerContext.from_profile`` are the only places that read them; every
optional field is defaulted explicitly here so the scorer never sees a
missing key.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from campus_feed.exceptions import RecordParseError, ScoringInputError
from campus_feed.feed.constants import ContentType, OrderingMode
from campus_feed.feed.hashtags import extract_hashtags, normalize_tags

# Epoch values above this are milliseconds (year 5138 in seconds).
_EPOCH_MS_THRESHOLD = 1e11


def parse_timestamp(value: Any) -> datetime | None:
    """Convert a backing-store timestamp into an aware UTC datetime.

    Accepts datetimes (Firestore returns a datetime subclass), epoch
    seconds or milliseconds, and ISO-8601 strings. Returns None for an
    absent value and raises ScoringInputError for anything unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise ScoringInputError(f"boolean is not a timestamp: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
        if not math.isfinite(seconds):
            raise ScoringInputError(f"non-finite timestamp: {value!r}")
        if abs(seconds) > _EPOCH_MS_THRESHOLD:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise ScoringInputError(f"timestamp out of range: {value!r}") from exc
    if isinstance(value, str):
        raw = value.strip()
        try:
            return parse_timestamp(float(raw))
        except ValueError:
            pass
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ScoringInputError(f"unparseable timestamp: {value!r}") from exc
        return parse_timestamp(dt)
    to_datetime = getattr(value, "ToDatetime", None)
    if callable(to_datetime):
        return parse_timestamp(to_datetime())
    raise ScoringInputError(f"unsupported timestamp type: {type(value).__name__}")


def _count(record: dict[str, Any], count_key: str, list_key: str) -> int:
    """Counter from an explicit ``xCount`` field, else the length of the array field."""
    value = record.get(count_key)
    if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
        return max(0, int(value))
    listed = record.get(list_key)
    if isinstance(listed, (list, tuple)):
        return len(listed)
    if isinstance(listed, (int, float)) and not isinstance(listed, bool) and math.isfinite(listed):
        return max(0, int(listed))
    return 0


def _optional_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _comment_bodies(value: Any) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    bodies: list[str] = []
    for comment in value:
        if isinstance(comment, str):
            bodies.append(comment)
        elif isinstance(comment, dict) and isinstance(comment.get("text"), str):
            bodies.append(comment["text"])
    return tuple(bodies)


def _infer_content_type(
    declared: Any,
    image_url: str | None,
    video_url: str | None,
    link_url: str | None,
) -> ContentType:
    if isinstance(declared, str):
        try:
            return ContentType(declared.strip().upper())
        except ValueError:
            pass
    if image_url:
        return ContentType.IMAGE
    if video_url:
        return ContentType.VIDEO
    if link_url:
        return ContentType.LINK
    return ContentType.TEXT


class ContentItem(BaseModel):
    """Immutable snapshot of one post as delivered by the backing store."""

    model_config = ConfigDict(frozen=True)

    item_id: str
    author_id: str
    created_at: datetime | None = Field(
        default=None, description="None when the record's timestamp is missing or garbage."
    )
    text: str = ""
    image_url: str | None = None
    video_url: str | None = None
    link_url: str | None = None
    content_type: ContentType = ContentType.TEXT
    like_count: int = 0
    comment_count: int = 0
    share_count: int = 0
    views: int | None = None
    hashtags: tuple[str, ...] = ()
    is_repost: bool = False
    original_item_id: str | None = None
    comments: tuple[str, ...] = Field(
        default=(), description="Comment bodies, when the record embeds them."
    )
    affiliation: str | None = Field(
        default=None, description="School the post was made from (record field 'school')."
    )

    @property
    def has_media(self) -> bool:
        return bool(self.image_url or self.video_url)

    @property
    def total_engagement(self) -> int:
        return self.like_count + self.comment_count + self.share_count

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> ContentItem:
        """Build a ContentItem from a raw posts-collection document.

        Raises RecordParseError when the record has no id or no author.
        An unparseable timestamp does not fail the record: the item keeps
        ``created_at=None`` and scores zero.
        """
        record_id = record.get("id")
        item_id = _optional_str(record_id)
        if item_id is None:
            raise RecordParseError(record_id, "missing document id")
        author_id = _optional_str(record.get("userId")) or _optional_str(record.get("authorId"))
        if author_id is None:
            raise RecordParseError(item_id, "missing author id")

        raw_ts = record.get("createdAt")
        if raw_ts is None:
            raw_ts = record.get("timestamp")
        try:
            created_at = parse_timestamp(raw_ts)
        except ScoringInputError:
            created_at = None

        text = record.get("text")
        text = text if isinstance(text, str) else ""
        image_url = _optional_str(record.get("imageUrl")) or _optional_str(record.get("image"))
        video_url = _optional_str(record.get("videoUrl")) or _optional_str(record.get("video"))
        link_url = _optional_str(record.get("linkUrl")) or _optional_str(record.get("link"))

        raw_hashtags = record.get("hashtags")
        hashtags = (
            normalize_tags(raw_hashtags)
            if isinstance(raw_hashtags, (list, tuple))
            else extract_hashtags(text)
        )

        views = record.get("views")
        if isinstance(views, bool) or not isinstance(views, (int, float)) or not math.isfinite(views):
            views = None
        else:
            views = max(0, int(views))

        return cls(
            item_id=item_id,
            author_id=author_id,
            created_at=created_at,
            text=text,
            image_url=image_url,
            video_url=video_url,
            link_url=link_url,
            content_type=_infer_content_type(
                record.get("contentType"), image_url, video_url, link_url
            ),
            like_count=_count(record, "likeCount", "likes"),
            comment_count=_count(record, "commentCount", "comments"),
            share_count=_count(record, "shareCount", "shares"),
            views=views,
            hashtags=hashtags,
            is_repost=record.get("isRepost") is True,
            original_item_id=_optional_str(record.get("originalPostId")),
            comments=_comment_bodies(record.get("comments")),
            affiliation=_optional_str(record.get("school")),
        )


class AuthorProfile(BaseModel):
    """Subset of a users-collection document needed to render and filter the feed."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    display_name: str = "Anonymous"
    handle: str | None = None
    photo_url: str | None = None
    affiliation: str | None = None

    @classmethod
    def from_record(cls, user_id: str, record: dict[str, Any]) -> AuthorProfile:
        first = _optional_str(record.get("firstName"))
        last = _optional_str(record.get("lastName"))
        username = _optional_str(record.get("username"))
        if first:
            display_name = f"{first} {last}" if last else first
        else:
            display_name = username or "Anonymous"
        return cls(
            user_id=user_id,
            display_name=display_name,
            handle=f"@{username}" if username else None,
            photo_url=_optional_str(record.get("photoURL")),
            affiliation=_optional_str(record.get("university")) or _optional_str(record.get("school")),
        )


class ViewerContext(BaseModel):
    """The scoring subject. Read-only input supplied per ranking request."""

    model_config = ConfigDict(frozen=True)

    viewer_id: str
    following: frozenset[str] = frozenset()
    interactions: dict[str, int] = Field(
        default_factory=dict, description="Prior interaction count keyed by author id."
    )
    interests: frozenset[str] = frozenset()
    affiliation: str | None = None

    def interaction_count(self, author_id: str) -> int:
        return max(0, self.interactions.get(author_id, 0))

    @classmethod
    def from_profile(
        cls,
        viewer_id: str,
        profile: dict[str, Any],
        following: list[str] | None = None,
    ) -> ViewerContext:
        """Build a viewer context from the viewer's own users-collection document."""
        raw_interactions = profile.get("interactions")
        interactions: dict[str, int] = {}
        if isinstance(raw_interactions, dict):
            for author_id, count in raw_interactions.items():
                if isinstance(count, (int, float)) and not isinstance(count, bool) and count > 0:
                    interactions[str(author_id)] = int(count)
        raw_interests = profile.get("interests")
        interests = normalize_tags(raw_interests) if isinstance(raw_interests, (list, tuple)) else ()
        if following is None:
            raw_following = profile.get("following")
            following = (
                [f for f in raw_following if isinstance(f, str)]
                if isinstance(raw_following, (list, tuple))
                else []
            )
        return cls(
            viewer_id=viewer_id,
            following=frozenset(following),
            interactions=interactions,
            interests=frozenset(interests),
            affiliation=_optional_str(profile.get("university")) or _optional_str(profile.get("school")),
        )


class ScoreBreakdown(BaseModel):
    """Six named sub-scores plus the floor-clamped final score."""

    model_config = ConfigDict(frozen=True)

    engagement: float = 0.0
    quality: float = 0.0
    personalization: float = 0.0
    recency: float = 0.0
    viral: float = 0.0
    penalties: float = 0.0
    final_score: float = 0.0

    @classmethod
    def zero(cls) -> ScoreBreakdown:
        return cls()

    def rounded(self, ndigits: int = 2) -> dict[str, float]:
        """Sub-scores rounded for analytics records."""
        return {
            "engagement": round(self.engagement, ndigits),
            "quality": round(self.quality, ndigits),
            "personalization": round(self.personalization, ndigits),
            "recency": round(self.recency, ndigits),
            "viral": round(self.viral, ndigits),
            "penalties": round(self.penalties, ndigits),
        }


class FeedUpdate(BaseModel):
    """One ordered delivery to a ranked-feed caller."""

    items: list[ContentItem]
    scores: dict[str, ScoreBreakdown] = Field(
        default_factory=dict, description="Empty for raw-field orderings."
    )
    authors: dict[str, AuthorProfile | None] = Field(default_factory=dict)
    mode: OrderingMode
    generated_at: datetime


class MetricsSnapshot(BaseModel):
    """Aggregate fetch and cache statistics."""

    average_fetch_time_ms: float
    cache_hit_rate: float
    sample_count: int
    cache_hits: int
    cache_misses: int
    uptime_s: float
    last_cleanup_at: datetime | None = None
    cache_size: int | None = None
    active_subscriptions: int | None = None
