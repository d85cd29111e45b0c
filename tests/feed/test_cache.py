from campus_feed.feed.cache import PROFILE_TTL_S, BoundedCache, page_key, profile_key
from campus_feed.feed.constants import SortDirection
from campus_feed.feed.sources import CollectionQuery


def test_insert_past_capacity_evicts_least_recent(clock) -> None:
    cache = BoundedCache(capacity=3, clock=clock)
    for key in ("a", "b", "c"):
        cache.set(key, key.upper())

    cache.set("d", "D")

    assert cache.size() == 3
    assert not cache.has("a")
    assert [cache.get(k) for k in ("b", "c", "d")] == ["B", "C", "D"]


def test_get_protects_key_from_eviction(clock) -> None:
    cache = BoundedCache(capacity=3, clock=clock)
    for key in ("a", "b", "c"):
        cache.set(key, key)

    assert cache.get("a") == "a"
    cache.set("d", "d")

    assert cache.has("a")
    assert not cache.has("b")


def test_overwrite_does_not_evict(clock) -> None:
    cache = BoundedCache(capacity=2, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("a", 3)
    assert cache.size() == 2
    assert cache.get("a") == 3
    assert cache.get("b") == 2


def test_ttl_boundary(clock) -> None:
    cache = BoundedCache(capacity=10, clock=clock)
    cache.set("k", "v", ttl=60.0)

    clock.advance(59.999)
    assert cache.has("k")

    clock.advance(0.002)
    assert not cache.has("k")
    assert cache.size() == 0


def test_expired_entry_removed_lazily_on_get(clock) -> None:
    cache = BoundedCache(capacity=10, default_ttl=5.0, clock=clock)
    cache.set("k", "v")
    clock.advance(5.0)
    assert cache.size() == 1
    assert cache.get("k") is None
    assert cache.size() == 0


def test_cleanup_purges_only_expired(clock) -> None:
    cache = BoundedCache(capacity=10, clock=clock)
    cache.set("short", 1, ttl=10.0)
    cache.set("long", 2, ttl=PROFILE_TTL_S)
    clock.advance(11.0)

    assert cache.cleanup() == 1
    assert cache.size() == 1
    assert cache.has("long")


def test_cached_none_is_visible_through_has(clock) -> None:
    cache = BoundedCache(capacity=10, clock=clock)
    cache.set(profile_key("ghost"), None)
    assert cache.has("profile:ghost")
    assert cache.get("profile:ghost") is None


def test_delete_and_clear(clock) -> None:
    cache = BoundedCache(capacity=10, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.delete("a") is True
    assert cache.delete("a") is False
    cache.clear()
    assert len(cache) == 0


def test_page_key_ignores_filter_order() -> None:
    q1 = CollectionQuery.build(limit=20, filters={"school": "MIT", "isRepost": False})
    q2 = CollectionQuery.build(limit=20, filters={"isRepost": False, "school": "MIT"})
    assert page_key("posts", q1, 0, 20) == page_key("posts", q2, 0, 20)

    oldest = CollectionQuery.build(direction=SortDirection.ASCENDING, limit=20)
    assert page_key("posts", q1, 0, 20) != page_key("posts", oldest, 0, 20)
    assert page_key("posts", q1, 0, 20) != page_key("posts", q1, 1, 20)
