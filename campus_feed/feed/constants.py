import enum


class ContentType(str, enum.Enum):
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    TEXT = "TEXT"
    LINK = "LINK"


class OrderingMode(str, enum.Enum):
    RELEVANCE = "relevance"
    RECENCY = "recency"
    MOST_LIKED = "most_liked"
    MOST_COMMENTED = "most_commented"
    OLDEST_FIRST = "oldest_first"
    SAME_AFFILIATION = "same_affiliation"  # relevance order, viewer's school only


# Modes that order by a raw record field and never call the scorer.
RAW_FIELD_MODES = frozenset(
    {
        OrderingMode.RECENCY,
        OrderingMode.MOST_LIKED,
        OrderingMode.MOST_COMMENTED,
        OrderingMode.OLDEST_FIRST,
    }
)


class SortDirection(str, enum.Enum):
    ASCENDING = "asc"
    DESCENDING = "desc"


class SubscriptionState(str, enum.Enum):
    INACTIVE = "INACTIVE"
    ACTIVE = "ACTIVE"
    TERMINATED = "TERMINATED"


class OperationKind(str, enum.Enum):
    DATA_UPDATE = "data_update"
    ALGORITHM_PERFORMANCE = "algorithm_performance"
    POST_METRICS = "post_metrics"


# Case-insensitive substrings that mark a post as likely spam.
DEFAULT_SPAM_PATTERNS: tuple[str, ...] = (
    "click here",
    "buy now",
    "free money",
    "limited offer",
    "act now",
    "follow for follow",
    "f4f",
    "dm for promo",
)
