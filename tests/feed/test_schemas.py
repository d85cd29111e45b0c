from datetime import datetime, timezone

import pytest

from campus_feed.exceptions import RecordParseError, ScoringInputError
from campus_feed.feed.constants import ContentType
from campus_feed.feed.schemas import AuthorProfile, ContentItem, ViewerContext, parse_timestamp

EPOCH_2024 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "raw",
    [
        EPOCH_2024,
        EPOCH_2024.replace(tzinfo=None),
        EPOCH_2024.timestamp(),
        int(EPOCH_2024.timestamp() * 1000),
        "2024-03-01T12:00:00Z",
        str(int(EPOCH_2024.timestamp() * 1000)),
    ],
)
def test_parse_timestamp_accepts_store_formats(raw) -> None:
    assert parse_timestamp(raw) == EPOCH_2024


@pytest.mark.parametrize("raw", ["yesterday", True, float("nan"), {"seconds": 1}])
def test_parse_timestamp_rejects_garbage(raw) -> None:
    with pytest.raises(ScoringInputError):
        parse_timestamp(raw)


def test_parse_timestamp_absent() -> None:
    assert parse_timestamp(None) is None
    assert parse_timestamp("") is None


def test_content_item_from_firestore_post() -> None:
    record = {
        "id": "post-1",
        "userId": "u1",
        "timestamp": int(EPOCH_2024.timestamp() * 1000),
        "text": "Finals week survival kit #StudyTips #coffee",
        "likes": ["u2", "u3", "u4"],
        "commentCount": 2,
        "shares": 1,
        "views": 120,
        "imageUrl": "https://cdn.example.com/kit.jpg",
        "isRepost": True,
        "originalPostId": "post-0",
        "school": "State University",
    }

    item = ContentItem.from_record(record)

    assert item.item_id == "post-1"
    assert item.author_id == "u1"
    assert item.created_at == EPOCH_2024
    assert item.like_count == 3
    assert item.comment_count == 2
    assert item.share_count == 1
    assert item.views == 120
    assert item.hashtags == ("studytips", "coffee")
    assert item.content_type is ContentType.IMAGE
    assert item.has_media
    assert item.is_repost and item.original_item_id == "post-0"
    assert item.affiliation == "State University"


def test_content_item_defaults_optional_fields() -> None:
    item = ContentItem.from_record({"id": "p", "authorId": "u"})
    assert item.created_at is None
    assert item.text == ""
    assert item.like_count == item.comment_count == item.share_count == 0
    assert item.views is None
    assert item.hashtags == ()
    assert item.content_type is ContentType.TEXT
    assert item.is_repost is False


def test_explicit_counts_win_over_arrays() -> None:
    item = ContentItem.from_record(
        {"id": "p", "userId": "u", "likeCount": 40, "likes": ["a"], "comments": [{"text": "hi"}]}
    )
    assert item.like_count == 40
    assert item.comment_count == 1
    assert item.comments == ("hi",)


@pytest.mark.parametrize("record", [{"userId": "u"}, {"id": "p"}, {"id": "  ", "userId": "u"}])
def test_content_item_requires_id_and_author(record) -> None:
    with pytest.raises(RecordParseError):
        ContentItem.from_record(record)


def test_author_profile_display_name() -> None:
    full = AuthorProfile.from_record("u1", {"firstName": "Ada", "lastName": "Lovelace", "username": "ada"})
    assert full.display_name == "Ada Lovelace"
    assert full.handle == "@ada"

    handle_only = AuthorProfile.from_record("u2", {"username": "grace", "school": "Navy U"})
    assert handle_only.display_name == "grace"
    assert handle_only.affiliation == "Navy U"

    assert AuthorProfile.from_record("u3", {}).display_name == "Anonymous"


def test_viewer_from_profile() -> None:
    viewer = ViewerContext.from_profile(
        "v1",
        {
            "following": ["a1", "a2", 7],
            "interactions": {"a1": 3, "a2": 0},
            "interests": ["#Chemistry", "music"],
            "university": "State University",
        },
    )
    assert viewer.following == frozenset({"a1", "a2"})
    assert viewer.interaction_count("a1") == 3
    assert viewer.interaction_count("a2") == 0
    assert viewer.interests == frozenset({"chemistry", "music"})
    assert viewer.affiliation == "State University"
