import asyncio
import threading

import pytest

from campus_feed.exceptions import FetchError
from campus_feed.feed.constants import SortDirection
from campus_feed.feed.firestore import (
    FirestoreCollectionReader,
    FirestoreCollectionSource,
    FirestorePointReader,
)
from campus_feed.feed.sources import CollectionQuery


class FakeSnapshot:
    def __init__(self, doc_id, data) -> None:
        self.id = doc_id
        self._data = data
        self.exists = data is not None

    def to_dict(self):
        return self._data


class FakeWatch:
    def __init__(self) -> None:
        self.unsubscribed = False
        self.is_active = True

    def unsubscribe(self) -> None:
        self.unsubscribed = True


class FakeQuery:
    """Records the query chain; stands in for both collection and query refs."""

    def __init__(self, docs=()) -> None:
        self.docs = list(docs)
        self.chain: list[tuple] = []
        self.callback = None
        self.watch = FakeWatch()

    def where(self, filter=None):
        self.chain.append(("where", filter.field_path, filter.op_string, filter.value))
        return self

    def order_by(self, field_path, direction=None):
        self.chain.append(("order_by", field_path, direction))
        return self

    def limit(self, count):
        self.chain.append(("limit", count))
        return self

    def offset(self, count):
        self.chain.append(("offset", count))
        return self

    def on_snapshot(self, callback):
        self.callback = callback
        return self.watch

    async def stream(self):
        for doc in self.docs:
            yield doc


class FakeDocumentRef:
    def __init__(self, snapshot, error=None) -> None:
        self._snapshot = snapshot
        self._error = error

    async def get(self):
        if self._error is not None:
            raise self._error
        return self._snapshot


class FakeCollectionRef(FakeQuery):
    def __init__(self, docs=(), snapshot=None, error=None) -> None:
        super().__init__(docs)
        self._snapshot = snapshot
        self._error = error

    def document(self, doc_id):
        return FakeDocumentRef(self._snapshot, self._error)


class FakeDb:
    def __init__(self, ref) -> None:
        self.ref = ref
        self.collections: list[str] = []

    def collection(self, path):
        self.collections.append(path)
        return self.ref


@pytest.mark.asyncio
async def test_snapshot_from_watch_thread_reaches_stream() -> None:
    ref = FakeCollectionRef()
    source = FirestoreCollectionSource(FakeDb(ref))
    query = CollectionQuery.build(limit=25, filters={"school": "MIT"})

    stream = source.open_subscription("posts", query)
    worker = threading.Thread(
        target=ref.callback, args=([FakeSnapshot("p1", {"text": "hi"})], [], None)
    )
    worker.start()
    worker.join()

    batch = await asyncio.wait_for(stream.__anext__(), timeout=1.0)

    assert batch == [{"id": "p1", "text": "hi"}]
    assert ref.chain == [
        ("where", "school", "==", "MIT"),
        ("order_by", "createdAt", "DESCENDING"),
        ("limit", 25),
    ]
    await source.close_subscription(stream)
    assert ref.watch.unsubscribed
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()


@pytest.mark.asyncio
async def test_stopped_watch_surfaces_as_fetch_error() -> None:
    ref = FakeCollectionRef()
    source = FirestoreCollectionSource(FakeDb(ref), watch_poll_interval=0.01)

    stream = source.open_subscription("posts", CollectionQuery.build(limit=5))
    ref.watch.is_active = False

    with pytest.raises(FetchError, match="live watch terminated"):
        await asyncio.wait_for(stream.__anext__(), timeout=1.0)
    await source.close_subscription(stream)
    assert ref.watch.unsubscribed


@pytest.mark.asyncio
async def test_point_reader() -> None:
    found = FirestorePointReader(FakeDb(FakeCollectionRef(snapshot=FakeSnapshot("u1", {"username": "ada"}))))
    missing = FirestorePointReader(FakeDb(FakeCollectionRef(snapshot=FakeSnapshot("u2", None))))
    broken = FirestorePointReader(FakeDb(FakeCollectionRef(error=RuntimeError("deadline exceeded"))))

    assert await found.get("users", "u1") == {"id": "u1", "username": "ada"}
    assert await missing.get("users", "u2") is None
    with pytest.raises(FetchError):
        await broken.get("users", "u3")


@pytest.mark.asyncio
async def test_collection_reader_applies_offset_and_direction() -> None:
    ref = FakeCollectionRef(docs=[FakeSnapshot("p1", {"likeCount": 3})])
    reader = FirestoreCollectionReader(FakeDb(ref))
    query = CollectionQuery.build(order_by_field="createdAt", direction=SortDirection.ASCENDING, limit=10)

    records = await reader.fetch("posts", query, offset=20)

    assert records == [{"id": "p1", "likeCount": 3}]
    assert ref.chain[-3:] == [("order_by", "createdAt", "ASCENDING"), ("limit", 10), ("offset", 20)]
