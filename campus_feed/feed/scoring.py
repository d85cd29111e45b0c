"""Pure feed scoring functions — no I/O, no framework imports.

final = max(0, engagement + quality + personalization + recency + viral + penalties)

  engagement     : weighted likes/comments/shares/views plus engagement velocity
  quality        : body length sweet spot, media bonus, substantive comments,
                   times a content-type modifier (image > video > text > link)
  personalization: following bonus + log(1 + prior interactions) + interest hashtags
  recency        : scale / (age_h + 1)^decay, plus a linear fresh-window bonus
  viral          : capped boost when engagement per (estimated) view is unusually high
  penalties      : spam block-list matches and the stale zero-engagement penalty

The ScoringConfig dataclass holds every weight and threshold; callers that omit
config= use DEFAULT_SCORING_CONFIG. Only the relative ordering of weights is a
contract, not the exact values.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from campus_feed.feed.constants import DEFAULT_SPAM_PATTERNS, ContentType
from campus_feed.feed.hashtags import normalize_tag
from campus_feed.feed.schemas import ContentItem, ScoreBreakdown, ViewerContext

_SECONDS_PER_HOUR = 3600.0


@dataclass(frozen=True)
class ScoringConfig:
    """Feed scoring weight configuration."""

    # Engagement: comments and shares signal more intent than a like.
    like_weight: float = 1.0
    comment_weight: float = 5.0
    share_weight: float = 10.0
    view_weight: float = 0.1
    velocity_weight: float = 2.0

    # Quality
    length_sweet_spot_min: int = 50
    length_sweet_spot_max: int = 500
    length_bonus: float = 5.0
    media_bonus: float = 3.0
    substantive_comment_min_length: int = 20
    substantive_comment_bonus: float = 1.0
    content_type_modifiers: dict[ContentType, float] = field(
        default_factory=lambda: {
            ContentType.IMAGE: 1.3,
            ContentType.VIDEO: 1.2,
            ContentType.TEXT: 1.0,
            ContentType.LINK: 0.8,
        }
    )

    # Personalization
    following_bonus: float = 20.0
    interaction_weight: float = 5.0
    hashtag_match_bonus: float = 3.0

    # Recency: 100 / (h + 1)^1.8, plus up to 50 points inside the first 2 h.
    recency_scale: float = 100.0
    decay_exponent: float = 1.8
    fresh_window_hours: float = 2.0
    fresh_bonus: float = 50.0

    # Viral
    viral_threshold: float = 0.1
    viral_base: float = 10.0
    viral_cap: float = 3.0
    viral_min_engagement: int = 5
    views_per_engagement_estimate: float = 20.0

    # Penalties (positive magnitudes; applied as negatives)
    spam_patterns: tuple[str, ...] = DEFAULT_SPAM_PATTERNS
    spam_penalty: float = 15.0
    stale_after_hours: float = 24.0
    stale_penalty: float = 10.0

    def content_type_modifier(self, content_type: ContentType) -> float:
        return self.content_type_modifiers.get(content_type, 1.0)


DEFAULT_SCORING_CONFIG = ScoringConfig()


def age_in_hours(created_at: datetime, now: datetime) -> float:
    """Signed age; negative for items stamped in the future (clock skew)."""
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return (now - created_at).total_seconds() / _SECONDS_PER_HOUR


def score_engagement(
    item: ContentItem,
    age_hours: float,
    config: ScoringConfig = DEFAULT_SCORING_CONFIG,
) -> float:
    """Weighted counters plus interactions-per-hour velocity (0 when age <= 0)."""
    base = (
        config.like_weight * item.like_count
        + config.comment_weight * item.comment_count
        + config.share_weight * item.share_count
        + config.view_weight * (item.views or 0)
    )
    velocity = item.total_engagement / age_hours if age_hours > 0 else 0.0
    return base + config.velocity_weight * velocity


def score_quality(item: ContentItem, config: ScoringConfig = DEFAULT_SCORING_CONFIG) -> float:
    raw = 0.0
    if config.length_sweet_spot_min <= len(item.text.strip()) <= config.length_sweet_spot_max:
        raw += config.length_bonus
    if item.has_media:
        raw += config.media_bonus
    substantive = sum(
        1 for body in item.comments if len(body.strip()) >= config.substantive_comment_min_length
    )
    raw += config.substantive_comment_bonus * substantive
    return raw * config.content_type_modifier(item.content_type)


def score_personalization(
    item: ContentItem,
    viewer: ViewerContext | None,
    config: ScoringConfig = DEFAULT_SCORING_CONFIG,
) -> float:
    """Zero for anonymous ranking."""
    if viewer is None:
        return 0.0
    total = 0.0
    if item.author_id in viewer.following:
        total += config.following_bonus
    total += config.interaction_weight * math.log1p(viewer.interaction_count(item.author_id))
    total += config.hashtag_match_bonus * _hashtag_matches(item.hashtags, viewer.interests)
    return total


def _hashtag_matches(hashtags: Iterable[str], interests: Iterable[str]) -> int:
    """Count of distinct item hashtags found in the viewer's interests (case-insensitive)."""
    interest_set = {normalize_tag(i) for i in interests}
    interest_set.discard("")
    if not interest_set:
        return 0
    return len({normalize_tag(t) for t in hashtags} & interest_set)


def score_recency(age_hours: float, config: ScoringConfig = DEFAULT_SCORING_CONFIG) -> float:
    """Strictly decreasing in age. Future-dated items are treated as brand new."""
    age = max(0.0, age_hours)
    decayed = config.recency_scale / math.pow(age + 1.0, config.decay_exponent)
    if age < config.fresh_window_hours:
        decayed += config.fresh_bonus * (1.0 - age / config.fresh_window_hours)
    return decayed


def score_viral(item: ContentItem, config: ScoringConfig = DEFAULT_SCORING_CONFIG) -> float:
    engagement = item.total_engagement
    if engagement < config.viral_min_engagement:
        return 0.0
    estimated_views = (
        float(item.views) if item.views else engagement * config.views_per_engagement_estimate
    )
    if estimated_views <= 0:
        return 0.0
    ratio = engagement / estimated_views
    if ratio <= config.viral_threshold:
        return 0.0
    return config.viral_base * min(ratio / config.viral_threshold, config.viral_cap)


def count_spam_matches(text: str, patterns: Iterable[str]) -> int:
    """Number of distinct block-list patterns present in text (case-insensitive)."""
    lowered = text.lower()
    return sum(1 for p in {p.lower() for p in patterns if p} if p in lowered)


def score_penalties(
    item: ContentItem,
    age_hours: float,
    config: ScoringConfig = DEFAULT_SCORING_CONFIG,
) -> float:
    """Sum of negative contributions (<= 0)."""
    penalty = -config.spam_penalty * count_spam_matches(item.text, config.spam_patterns)
    if age_hours > config.stale_after_hours and item.total_engagement == 0:
        penalty -= config.stale_penalty
    return penalty


def score_item(
    item: ContentItem,
    viewer: ViewerContext | None = None,
    now: datetime | None = None,
    config: ScoringConfig = DEFAULT_SCORING_CONFIG,
) -> ScoreBreakdown:
    """Full breakdown for one item.

    ``now`` is read once and shared by every time-dependent sub-score, so the
    result is a pure function of (item, viewer, now, config). An item without
    a usable creation instant scores zero.
    """
    if item.created_at is None:
        return ScoreBreakdown.zero()
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    age_hours = age_in_hours(item.created_at, now)

    engagement = score_engagement(item, age_hours, config)
    quality = score_quality(item, config)
    personalization = score_personalization(item, viewer, config)
    recency = score_recency(age_hours, config)
    viral = score_viral(item, config)
    penalties = score_penalties(item, age_hours, config)

    total = engagement + quality + personalization + recency + viral + penalties
    return ScoreBreakdown(
        engagement=engagement,
        quality=quality,
        personalization=personalization,
        recency=recency,
        viral=viral,
        penalties=penalties,
        final_score=max(0.0, total),
    )


# ---------------------------------------------------------------------------
# Analytics summaries
# ---------------------------------------------------------------------------

# Distribution buckets for algorithm-performance records.
HIGH_SCORE_THRESHOLD: float = 50.0
MEDIUM_SCORE_THRESHOLD: float = 10.0


def summarize_scores(breakdowns: Iterable[ScoreBreakdown]) -> dict:
    """Average/max/min final score and a high/medium/low distribution."""
    finals = [b.final_score for b in breakdowns]
    distribution = {"high": 0, "medium": 0, "low": 0}
    for score in finals:
        if score >= HIGH_SCORE_THRESHOLD:
            distribution["high"] += 1
        elif score >= MEDIUM_SCORE_THRESHOLD:
            distribution["medium"] += 1
        else:
            distribution["low"] += 1
    if not finals:
        return {
            "average_score": 0.0,
            "max_score": 0.0,
            "min_score": 0.0,
            "score_distribution": distribution,
        }
    return {
        "average_score": round(sum(finals) / len(finals), 2),
        "max_score": round(max(finals), 2),
        "min_score": round(min(finals), 2),
        "score_distribution": distribution,
    }


def build_post_metrics(
    item: ContentItem,
    breakdown: ScoreBreakdown,
    viewer_id: str | None,
    now: datetime,
) -> dict:
    """Per-post analytics record (scores plus the raw counters they came from)."""
    age = age_in_hours(item.created_at, now) if item.created_at is not None else None
    return {
        "post_id": item.item_id,
        "user_id": viewer_id or item.author_id,
        "content_preview": item.text[:100],
        "scores": breakdown.rounded(),
        "final_score": round(breakdown.final_score, 2),
        "post_metrics": {
            "age_hours": round(age, 1) if age is not None else None,
            "total_engagement": item.total_engagement,
            "likes": item.like_count,
            "comments": item.comment_count,
            "shares": item.share_count,
            "views": item.views or 0,
        },
        "calculated_at": now.isoformat(),
    }
