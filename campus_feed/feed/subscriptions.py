"""Live subscription management — multiplexing and de-duplication only.

Lifecycle of a Subscription: INACTIVE → ACTIVE → TERMINATED.

- At most one ACTIVE subscription exists per SubscriptionKey; subscribing an
  active key terminates the previous one before the new stream is opened.
- ``await subscription.unsubscribe()`` returns only after the consumer task
  has stopped, so no on_data / on_error call happens after it returns.
- A stream error is wrapped in FetchError and handed to on_error. The state
  stays ACTIVE and nothing is retried; the caller re-subscribes.
- Every delivered batch is also recorded as a ``data_update`` operation on the
  batch coalescer, when one is wired in.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable

from campus_feed.exceptions import FetchError
from campus_feed.feed.batching import BatchCoalescer
from campus_feed.feed.constants import OperationKind, SubscriptionState
from campus_feed.feed.sources import LiveCollectionSource, Record, SubscriptionKey

logger = logging.getLogger(__name__)

OnData = Callable[[list[Record]], Awaitable[None]]
OnError = Callable[[FetchError], Awaitable[None]]


class Subscription:
    def __init__(
        self,
        key: SubscriptionKey,
        on_data: OnData,
        on_error: OnError | None,
        manager: SubscriptionManager,
    ) -> None:
        self.key = key
        self.state = SubscriptionState.INACTIVE
        self._on_data = on_data
        self._on_error = on_error
        self._manager = manager
        self._task: asyncio.Task[None] | None = None
        self._source: LiveCollectionSource | None = None
        self._stream: AsyncIterator[list[Record]] | None = None

    @property
    def is_active(self) -> bool:
        return self.state is SubscriptionState.ACTIVE

    def _start(
        self,
        source: LiveCollectionSource,
        stream: AsyncIterator[list[Record]],
        coalescer: BatchCoalescer | None,
    ) -> None:
        self.state = SubscriptionState.ACTIVE
        self._source = source
        self._stream = stream
        self._task = asyncio.get_running_loop().create_task(
            self._consume(stream, coalescer),
            name=f"subscription:{self.key}",
        )

    async def _consume(
        self,
        stream: AsyncIterator[list[Record]],
        coalescer: BatchCoalescer | None,
    ) -> None:
        try:
            async for records in stream:
                if not self.is_active:
                    break
                if coalescer is not None:
                    coalescer.add_record(
                        OperationKind.DATA_UPDATE.value,
                        {
                            "collection": self.key.collection_path,
                            "count": len(records),
                            "timestamp": time.time(),
                        },
                    )
                try:
                    await self._on_data(records)
                except Exception:
                    logger.exception("on_data handler for %s raised", self.key)
                if not self.is_active:
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self.is_active:
                error = exc if isinstance(exc, FetchError) else FetchError(
                    self.key.collection_path, str(exc) or type(exc).__name__
                )
                logger.warning("Live subscription %s failed: %s", self.key, error)
                if self._on_error is not None:
                    try:
                        await self._on_error(error)
                    except Exception:
                        logger.exception("on_error handler for %s raised", self.key)
        finally:
            await self._close_stream()

    async def _close_stream(self) -> None:
        if self._stream is None or self._source is None:
            return
        stream, self._stream = self._stream, None
        await self._source.close_subscription(stream)

    async def _terminate(self) -> None:
        if self.state is SubscriptionState.TERMINATED:
            return
        self.state = SubscriptionState.TERMINATED
        task = self._task
        if task is not None and task is asyncio.current_task():
            # Called from inside our own handler: the loop exits once it returns.
            await self._close_stream()
            return
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait([task])
        # A task cancelled before its first step never reaches its finally block.
        await self._close_stream()

    async def unsubscribe(self) -> None:
        await self._manager.unsubscribe(self)

    def __repr__(self) -> str:
        return f"<Subscription {self.key} {self.state.value}>"


class SubscriptionManager:
    """Owns every live subscription to the backing store."""

    def __init__(
        self,
        source: LiveCollectionSource,
        coalescer: BatchCoalescer | None = None,
    ) -> None:
        self._source = source
        self._coalescer = coalescer
        self._active: dict[SubscriptionKey, Subscription] = {}
        self._lock = asyncio.Lock()

    async def subscribe(
        self,
        key: SubscriptionKey,
        on_data: OnData,
        on_error: OnError | None = None,
    ) -> Subscription:
        async with self._lock:
            previous = self._active.pop(key, None)
            if previous is not None:
                logger.info("Replacing live subscription %s", key)
                await previous._terminate()
            stream = self._source.open_subscription(key.collection_path, key.query)
            subscription = Subscription(key, on_data, on_error, self)
            subscription._start(self._source, stream, self._coalescer)
            self._active[key] = subscription
            logger.debug("Opened live subscription %s", key)
            return subscription

    async def unsubscribe(self, target: Subscription | SubscriptionKey) -> bool:
        """Terminate a subscription. Returns False when it was not active."""
        async with self._lock:
            if isinstance(target, Subscription):
                subscription = target
                if self._active.get(target.key) is target:
                    del self._active[target.key]
            else:
                subscription = self._active.pop(target, None)
                if subscription is None:
                    return False
        was_active = subscription.is_active
        await subscription._terminate()
        return was_active

    async def cleanup_all(self) -> int:
        """Tear down every active subscription (sign-out, shutdown)."""
        async with self._lock:
            subscriptions = list(self._active.values())
            self._active.clear()
        if subscriptions:
            await asyncio.gather(*(s._terminate() for s in subscriptions))
            logger.info("Closed %d live subscriptions", len(subscriptions))
        return len(subscriptions)

    def active_count(self) -> int:
        return len(self._active)
