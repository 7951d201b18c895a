"""Bounded, partitioned work queue between webhook acknowledgement and apply.

Events are partitioned by token id so every invoice has exactly one consumer
and is applied in delivery order; different invoices proceed in parallel.
Each apply runs in a worker thread (the store is blocking I/O) under a
timeout. A thread cannot be cancelled, so an apply that overruns keeps its
partition blocked until it returns, and nothing else for that partition
starts before then. Transient failures are retried with exponential backoff. An
event that still fails, or that cannot be enqueued because its partition
stays full, is logged with its replay identifiers and left for
reconciliation.
"""

from __future__ import annotations

import asyncio
import logging
import zlib
from collections import Counter
from typing import Callable, Iterable

from invoice_sync.config import Settings
from invoice_sync.exceptions import TRANSIENT_ERRORS
from invoice_sync.lifecycle.models import ApplyResult
from invoice_sync.retry import compute_delay
from invoice_sync.webhooks.models import CanonicalEvent

logger = logging.getLogger(__name__)

_RETRYABLE = (*TRANSIENT_ERRORS, asyncio.TimeoutError)


class PartitionedEventQueue:
    """N bounded asyncio queues, one consumer task per queue."""

    def __init__(self, process: Callable[[CanonicalEvent], ApplyResult], settings: Settings) -> None:
        self._process = process
        self._partitions = settings.queue_partitions
        self._maxsize = settings.queue_maxsize
        self._enqueue_timeout = settings.enqueue_timeout_s
        self._timeout = settings.processing_timeout_s
        self._max_retries = settings.processing_max_retries
        self._base_delay = settings.processing_retry_base_delay_s
        self._queues: list[asyncio.Queue] = []
        self._workers: list[asyncio.Task] = []
        self._inflight: dict[int, asyncio.Future] = {}
        self.stats: Counter[str] = Counter()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def partition_for(self, event: CanonicalEvent) -> int:
        token_id = event.token_id
        if token_id is not None:
            return token_id % self._partitions
        # No token (unknown events): spread by transaction hash.
        return zlib.crc32(event.transaction_hash.encode("utf-8")) % self._partitions

    def depth(self) -> int:
        return sum(q.qsize() for q in self._queues)

    async def start(self) -> None:
        """Create the queues and consumer tasks on the running loop."""
        if self._workers:
            return
        self._queues = [asyncio.Queue(maxsize=self._maxsize) for _ in range(self._partitions)]
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"invoice-sync-partition-{i}")
            for i in range(self._partitions)
        ]
        logger.info("Event queue started: %d partitions, maxsize=%d", self._partitions, self._maxsize)

    async def join(self) -> None:
        """Wait until every queued event has been processed."""
        for queue in self._queues:
            await queue.join()

    async def stop(self, drain_timeout: float = 5.0) -> None:
        if not self._workers:
            await self._settle_all()
            return
        try:
            await asyncio.wait_for(self.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning("Event queue stopped with %d events undrained", self.depth())
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        await self._settle_all()
        self._workers = []
        self._queues = []
        logger.info("Event queue stopped")

    async def enqueue(self, events: Iterable[CanonicalEvent]) -> int:
        """Queue *events*; returns how many were accepted."""
        if not self._workers:
            raise RuntimeError("Event queue is not running")
        accepted = 0
        for event in events:
            queue = self._queues[self.partition_for(event)]
            try:
                await asyncio.wait_for(queue.put(event), timeout=self._enqueue_timeout)
            except asyncio.TimeoutError:
                self.stats["dropped"] += 1
                logger.error(
                    "Queue full, event left for reconciliation: provider=%s event=%s tx=%s log=%d",
                    event.provider.value,
                    event.event_name.value,
                    event.transaction_hash,
                    event.log_index,
                )
                continue
            accepted += 1
        return accepted

    async def process_now(self, event: CanonicalEvent) -> ApplyResult:
        """Apply one event with timeout and retries, bypassing the queues.

        Any overrunning apply still in flight on the event's partition,
        including this event's own timed-out attempt, finishes first.
        """
        partition = self.partition_for(event)
        for attempt in range(self._max_retries + 1):
            await self._settle(partition)
            future = asyncio.ensure_future(asyncio.to_thread(self._process, event))
            self._inflight[partition] = future
            try:
                result = await asyncio.wait_for(asyncio.shield(future), timeout=self._timeout)
                self.stats["processed"] += 1
                return result
            except _RETRYABLE as exc:
                if attempt == self._max_retries:
                    self.stats["failed"] += 1
                    logger.error(
                        "Giving up on event after %d attempts, left for reconciliation: "
                        "provider=%s event=%s tx=%s log=%d (%s)",
                        attempt + 1,
                        event.provider.value,
                        event.event_name.value,
                        event.transaction_hash,
                        event.log_index,
                        type(exc).__name__,
                    )
                    raise
                delay = compute_delay(attempt, self._base_delay, 30.0, 0.3)
                self.stats["retried"] += 1
                logger.warning(
                    "Retry %d/%d for %s (%s), waiting %.1fs",
                    attempt + 1,
                    self._max_retries,
                    event.describe(),
                    type(exc).__name__,
                    delay,
                )
                await asyncio.sleep(delay)
            finally:
                if future.done() and self._inflight.get(partition) is future:
                    del self._inflight[partition]
        raise AssertionError("unreachable")  # pragma: no cover

    async def _settle(self, partition: int) -> None:
        """Block until the overrunning apply on *partition*, if any, returns."""
        pending = self._inflight.pop(partition, None)
        if pending is None:
            return
        if not pending.done():
            logger.warning("Partition %d waiting for an overrunning apply to finish", partition)
        (outcome,) = await asyncio.gather(pending, return_exceptions=True)
        if isinstance(outcome, BaseException):
            logger.warning(
                "Overrunning apply on partition %d ended with %s",
                partition,
                type(outcome).__name__,
            )

    async def _settle_all(self) -> None:
        for partition in list(self._inflight):
            await self._settle(partition)

    async def _worker(self, index: int) -> None:
        queue = self._queues[index]
        while True:
            event = await queue.get()
            try:
                await self.process_now(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Partition %d failed to apply %s", index, event.describe())
            finally:
                queue.task_done()
