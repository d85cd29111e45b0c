"""
Firestore adapters for the feed collaborators.

posts/{post_id}                       live source + one-shot pages
users/{user_id}                       point reads for author profiles
{analytics}/{kind}/records/{auto_id}  coalesced analytics writes

Live subscriptions use the synchronous firebase-admin client because only it
exposes ``on_snapshot``. Watch callbacks fire on a background thread and are
handed to the event loop with ``call_soon_threadsafe``. A watch whose RPC dies
shuts itself down without calling back, so each stream polls ``is_active``
and surfaces a stopped watch as a FetchError. Everything else goes through
``google.cloud.firestore.AsyncClient``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import firebase_admin
from firebase_admin import credentials, firestore
from google.cloud.firestore import SERVER_TIMESTAMP, AsyncClient
from google.cloud.firestore_v1.base_query import FieldFilter
from google.cloud.firestore_v1.query import Query
from google.oauth2 import service_account

from campus_feed.exceptions import FetchError
from campus_feed.feed.constants import SortDirection
from campus_feed.feed.sources import CollectionQuery, Record

logger = logging.getLogger(__name__)

# Firestore rejects write batches larger than this.
_MAX_BATCH_WRITES = 500

# How often a live stream checks that its watch is still running.
_WATCH_POLL_S = 5.0

_CLOSED = object()


def _project_id_from_credentials_file(credentials_path: Path | str) -> str | None:
    path = Path(credentials_path)
    if not path.is_file():
        return None
    with open(path) as f:
        data = json.load(f)
    return data.get("project_id") or data.get("projectId")


def init_firestore(
    project_id: str | None = None,
    credentials_path: str | None = None,
) -> tuple[Any, AsyncClient]:
    """Return (sync client, async client), initialising the Firebase app once per process."""
    if not firebase_admin._apps:
        opts = {"projectId": project_id} if project_id else None
        if credentials_path:
            cred = credentials.Certificate(str(Path(credentials_path).resolve()))
            firebase_admin.initialize_app(cred, opts)
        else:
            firebase_admin.initialize_app(options=opts)
    db = firestore.client()

    if credentials_path:
        resolved = str(Path(credentials_path).resolve())
        creds = service_account.Credentials.from_service_account_file(resolved)
        project = project_id or _project_id_from_credentials_file(resolved)
        async_db = AsyncClient(project=project, credentials=creds)
    else:
        async_db = AsyncClient(project=project_id or None)
    return db, async_db


def _apply_query(ref: Any, query: CollectionQuery) -> Any:
    for field_path, value in query.filters:
        ref = ref.where(filter=FieldFilter(field_path, "==", value))
    direction = (
        Query.DESCENDING if query.direction is SortDirection.DESCENDING else Query.ASCENDING
    )
    return ref.order_by(query.order_by_field, direction=direction).limit(query.limit)


def _to_record(snapshot: Any) -> Record:
    return {"id": snapshot.id, **(snapshot.to_dict() or {})}


# ===========================================================================
# Live source
# ===========================================================================


class SnapshotStream:
    """Async iterator over the record lists pushed by one Firestore watch."""

    def __init__(self, collection_path: str, loop: asyncio.AbstractEventLoop) -> None:
        self.collection_path = collection_path
        self._loop = loop
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._watch: Any = None
        self._monitor: asyncio.Task[None] | None = None
        self._closed = False

    def attach(self, watch: Any, poll_interval: float = _WATCH_POLL_S) -> None:
        self._watch = watch
        self._monitor = self._loop.create_task(self._watch_health(poll_interval))

    async def _watch_health(self, poll_interval: float) -> None:
        while not self._closed:
            await asyncio.sleep(poll_interval)
            watch = self._watch
            if self._closed or watch is None:
                return
            if not watch.is_active:
                logger.warning("Firestore watch on %s stopped", self.collection_path)
                self._queue.put_nowait(
                    FetchError(self.collection_path, "live watch terminated by the backend")
                )
                return

    def _on_snapshot(self, docs: list[Any], changes: Any, read_time: Any) -> None:
        # Runs on the Firestore watch thread.
        try:
            records = [_to_record(doc) for doc in docs]
        except Exception as exc:
            records = FetchError(self.collection_path, f"bad snapshot: {exc}")
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, records)
        except RuntimeError:
            logger.debug("Dropping snapshot for %s: event loop closed", self.collection_path)

    def __aiter__(self) -> SnapshotStream:
        return self

    async def __anext__(self) -> list[Record]:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._monitor is not None:
            self._monitor.cancel()
            self._monitor = None
        if self._watch is not None:
            self._watch.unsubscribe()
            self._watch = None
        self._queue.put_nowait(_CLOSED)


class FirestoreCollectionSource:
    def __init__(self, db: Any, watch_poll_interval: float = _WATCH_POLL_S) -> None:
        self._db = db
        self._watch_poll_interval = watch_poll_interval

    def open_subscription(self, collection_path: str, query: CollectionQuery) -> SnapshotStream:
        stream = SnapshotStream(collection_path, asyncio.get_running_loop())
        try:
            ref = _apply_query(self._db.collection(collection_path), query)
            stream.attach(ref.on_snapshot(stream._on_snapshot), self._watch_poll_interval)
        except Exception as exc:
            stream._queue.put_nowait(FetchError(collection_path, str(exc)))
        return stream

    async def close_subscription(self, stream: SnapshotStream) -> None:
        stream.close()


# ===========================================================================
# One-shot readers
# ===========================================================================


class FirestorePointReader:
    def __init__(self, async_db: AsyncClient) -> None:
        self._db = async_db

    async def get(self, collection_path: str, doc_id: str) -> Record | None:
        try:
            snapshot = await self._db.collection(collection_path).document(doc_id).get()
        except Exception as exc:
            raise FetchError(collection_path, str(exc), doc_id=doc_id) from exc
        if not snapshot.exists:
            return None
        return _to_record(snapshot)


class FirestoreCollectionReader:
    def __init__(self, async_db: AsyncClient) -> None:
        self._db = async_db

    async def fetch(
        self, collection_path: str, query: CollectionQuery, offset: int = 0
    ) -> list[Record]:
        ref = _apply_query(self._db.collection(collection_path), query)
        if offset:
            ref = ref.offset(offset)
        try:
            return [_to_record(doc) async for doc in ref.stream()]
        except Exception as exc:
            raise FetchError(collection_path, str(exc)) from exc


# ===========================================================================
# Analytics sink
# ===========================================================================


class FirestoreMetricsSink:
    def __init__(self, async_db: AsyncClient, collection: str = "analytics") -> None:
        self._db = async_db
        self._collection = collection

    async def write_batch(self, kind: str, records: list[Record]) -> None:
        target = self._db.collection(self._collection).document(kind).collection("records")
        for start in range(0, len(records), _MAX_BATCH_WRITES):
            batch = self._db.batch()
            for record in records[start:start + _MAX_BATCH_WRITES]:
                batch.set(target.document(), {**record, "createdAt": SERVER_TIMESTAMP})
            await batch.commit()
