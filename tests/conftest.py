import asyncio
import random
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

import pytest

from campus_feed.feed.batching import BatchCoalescer
from campus_feed.feed.cache import BoundedCache
from campus_feed.feed.metrics import MetricsRecorder
from campus_feed.feed.service import FeedOrchestrator
from campus_feed.feed.subscriptions import SubscriptionManager

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

_END = object()


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeStream:
    def __init__(self, collection_path, query) -> None:
        self.collection_path = collection_path
        self.query = query
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.queue.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class InMemoryLiveSource:
    def __init__(self) -> None:
        self.streams: list[FakeStream] = []

    @property
    def open_count(self) -> int:
        return len(self.streams)

    @property
    def open_streams(self) -> list[FakeStream]:
        return [s for s in self.streams if not s.closed]

    def open_subscription(self, collection_path, query) -> FakeStream:
        stream = FakeStream(collection_path, query)
        self.streams.append(stream)
        return stream

    async def close_subscription(self, stream: FakeStream) -> None:
        stream.closed = True

    def emit(self, records, index: int = -1) -> None:
        self.streams[index].queue.put_nowait(list(records))

    def fail(self, exc: Exception, index: int = -1) -> None:
        self.streams[index].queue.put_nowait(exc)

    def end(self, index: int = -1) -> None:
        self.streams[index].queue.put_nowait(_END)


class FakePointReader:
    def __init__(self, documents: dict | None = None) -> None:
        self.documents: dict[tuple[str, str], dict] = documents or {}
        self.calls: list[tuple[str, str]] = []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def get(self, collection_path, doc_id):
        self.calls.append((collection_path, doc_id))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        record = self.documents.get((collection_path, doc_id))
        return {"id": doc_id, **record} if record is not None else None


class FakeCollectionReader:
    def __init__(self, records: list[dict] | None = None) -> None:
        self.records = records or []
        self.calls: list[tuple[str, object, int]] = []
        self.error: Exception | None = None

    async def fetch(self, collection_path, query, offset=0):
        self.calls.append((collection_path, query, offset))
        if self.error is not None:
            raise self.error
        return [dict(r) for r in self.records[offset:offset + query.limit]]


class RecordingSink:
    def __init__(self) -> None:
        self.batches: list[tuple[str, list[dict]]] = []

    async def write_batch(self, kind, records) -> None:
        self.batches.append((kind, list(records)))

    def records(self, kind: str) -> list[dict]:
        return [r for k, batch in self.batches if k == kind for r in batch]


class FailingSink:
    def __init__(self) -> None:
        self.attempts = 0

    async def write_batch(self, kind, records) -> None:
        self.attempts += 1
        raise ConnectionError("analytics store unreachable")


class FakePipeline:
    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._ops: list[tuple] = []

    def rpush(self, key, *values):
        self._ops.append(("rpush", key, values))
        return self

    def ltrim(self, key, start, end):
        self._ops.append(("ltrim", key, start, end))
        return self

    async def execute(self):
        results = []
        for op in self._ops:
            if op[0] == "rpush":
                lst = self._redis.lists.setdefault(op[1], [])
                lst.extend(op[2])
                results.append(len(lst))
            else:
                _, key, start, end = op
                lst = self._redis.lists.get(key, [])
                self._redis.lists[key] = lst[start:] if end == -1 else lst[start:end + 1]
                results.append(True)
        self._ops.clear()
        return results


class FakeRedis:
    def __init__(self) -> None:
        self.lists: dict[str, list[str]] = {}

    def pipeline(self) -> FakePipeline:
        return FakePipeline(self)


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------


def make_post(
    post_id: str,
    author: str = "author-1",
    age: timedelta = timedelta(hours=1),
    **fields,
) -> dict:
    record = {
        "id": post_id,
        "userId": author,
        "createdAt": NOW - age,
        "text": "",
        "likes": [],
        "commentCount": 0,
    }
    record.update(fields)
    return record


@pytest.fixture
def post_factory() -> Callable[..., dict]:
    return make_post


@pytest.fixture
def settle() -> Callable[..., Awaitable[None]]:
    """Let queued callbacks run until ``predicate`` holds (or a few loop turns)."""

    async def _settle(predicate: Callable[[], bool] | None = None, timeout: float = 1.0) -> None:
        if predicate is None:
            for _ in range(20):
                await asyncio.sleep(0)
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached before timeout")
            await asyncio.sleep(0.001)

    return _settle


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def live_source() -> InMemoryLiveSource:
    return InMemoryLiveSource()


@pytest.fixture
def point_reader() -> FakePointReader:
    return FakePointReader()


@pytest.fixture
def collection_reader() -> FakeCollectionReader:
    return FakeCollectionReader()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def failing_sink() -> FailingSink:
    return FailingSink()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def orchestrator_factory(live_source, point_reader, collection_reader, sink, clock):
    """Build an orchestrator over the fakes. ``sample_rate`` defaults to never sampling."""

    def _build(sample_rate: float = 0.0, seed: int = 7, **overrides) -> FeedOrchestrator:
        coalescer = BatchCoalescer(sink, batch_size=100, batch_timeout=60.0)
        kwargs = dict(
            manager=SubscriptionManager(live_source, coalescer),
            point_reader=point_reader,
            collection_reader=collection_reader,
            cache=BoundedCache(capacity=100, clock=clock),
            metrics=MetricsRecorder(clock=clock),
            coalescer=coalescer,
            metrics_sample_rate=sample_rate,
            rng=random.Random(seed),
            clock=clock,
            now=lambda: NOW,
        )
        kwargs.update(overrides)
        return FeedOrchestrator(**kwargs)

    return _build
