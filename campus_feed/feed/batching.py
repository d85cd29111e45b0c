"""Batch coalescer: groups small analytics writes into one sink call per kind.

Each operation kind has its own FIFO queue. A queue is flushed when it
reaches ``batch_size`` or when its oldest operation has waited
``batch_timeout`` seconds, whichever happens first. The queue is detached
synchronously before the sink is awaited, so a size-triggered flush and a
timer-triggered flush can never deliver the same operations twice.

Sink failures are logged and dropped: analytics are best-effort and must
never block or crash the ranking path.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from campus_feed.exceptions import FlushSinkError
from campus_feed.feed.sources import MetricsSink, Record

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchOperation:
    kind: str
    record: Record = field(default_factory=dict)


class BatchCoalescer:
    def __init__(
        self,
        sink: MetricsSink,
        batch_size: int = 10,
        batch_timeout: float = 0.1,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._sink = sink
        self._batch_size = batch_size
        self._batch_timeout = batch_timeout
        self._queues: dict[str, list[BatchOperation]] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._deliveries: set[asyncio.Task[None]] = set()
        self.flush_count = 0

    def pending(self, kind: str | None = None) -> int:
        if kind is not None:
            return len(self._queues.get(kind, ()))
        return sum(len(q) for q in self._queues.values())

    def add(self, operation: BatchOperation) -> None:
        """Enqueue one operation. Must be called from the event loop thread."""
        queue = self._queues.setdefault(operation.kind, [])
        queue.append(operation)
        if len(queue) >= self._batch_size:
            self._schedule_delivery(operation.kind)
        elif operation.kind not in self._timers:
            loop = asyncio.get_running_loop()
            self._timers[operation.kind] = loop.call_later(
                self._batch_timeout, self._on_timeout, operation.kind
            )

    def add_record(self, kind: str, record: dict[str, Any]) -> None:
        self.add(BatchOperation(kind=kind, record=record))

    def _on_timeout(self, kind: str) -> None:
        self._timers.pop(kind, None)
        self._schedule_delivery(kind)

    def _take(self, kind: str) -> list[BatchOperation]:
        """Detach a kind's queue and cancel its timer. Must not await."""
        timer = self._timers.pop(kind, None)
        if timer is not None:
            timer.cancel()
        return self._queues.pop(kind, [])

    def _schedule_delivery(self, kind: str) -> None:
        operations = self._take(kind)
        if not operations:
            return
        task = asyncio.get_running_loop().create_task(self._deliver(kind, operations))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def _deliver(self, kind: str, operations: list[BatchOperation]) -> None:
        records = [op.record for op in operations]
        self.flush_count += 1
        try:
            await self._sink.write_batch(kind, records)
        except Exception as exc:
            err = FlushSinkError(kind, len(records), str(exc))
            logger.warning("Dropping analytics batch: %s", err)
        else:
            logger.debug("Flushed %d %s operations", len(records), kind)

    async def flush(self) -> None:
        """Deliver every pending queue now and wait for in-flight deliveries.

        No-op when nothing is pending.
        """
        for kind in list(self._queues):
            self._schedule_delivery(kind)
        if self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    async def aclose(self) -> None:
        await self.flush()
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
