"""Tests for the partitioned ingress work queue."""

from __future__ import annotations

import asyncio
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from helpers import funded, make_event, make_settings, minted
from invoice_sync.exceptions import StoreUnavailableError
from invoice_sync.lifecycle.models import AppliedOutcome, ApplyResult
from invoice_sync.webhooks.models import EventName
from invoice_sync.webhooks.queue import PartitionedEventQueue


def _ok(event) -> ApplyResult:
    return ApplyResult(event.key, outcome=AppliedOutcome.APPLIED)


class TestPartitioning:
    def test_partition_by_token(self):
        queue = PartitionedEventQueue(_ok, make_settings(queue_partitions=4))
        assert queue.partition_for(funded(9, block=1, cents=1)) == 1
        assert queue.partition_for(funded(12, block=1, cents=1)) == 0

    def test_same_token_same_partition(self):
        queue = PartitionedEventQueue(_ok, make_settings(queue_partitions=8))
        partitions = {queue.partition_for(funded(7, block=b, cents=1)) for b in range(20)}
        assert partitions == {7}

    def test_tokenless_events_spread_by_tx_hash(self):
        queue = PartitionedEventQueue(_ok, make_settings(queue_partitions=8))
        event = make_event(EventName.UNKNOWN, None, block=5)
        assert queue.partition_for(event) == queue.partition_for(event)
        assert 0 <= queue.partition_for(event) < 8


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_enqueue_requires_start(self):
        queue = PartitionedEventQueue(_ok, make_settings())
        with pytest.raises(RuntimeError):
            await queue.enqueue([minted(7, block=100)])

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        queue = PartitionedEventQueue(_ok, make_settings(queue_partitions=3))
        await queue.start()
        assert queue.running
        assert queue.depth() == 0
        await queue.stop()
        assert not queue.running

    @pytest.mark.asyncio
    async def test_per_token_order_preserved(self):
        seen: list = []
        lock = threading.Lock()

        def process(event):
            with lock:
                seen.append((event.token_id, event.block_number))
            return _ok(event)

        queue = PartitionedEventQueue(process, make_settings(queue_partitions=2))
        await queue.start()
        events = [funded(token, block=b, cents=1) for b in range(10) for token in (1, 2, 3)]

        accepted = await queue.enqueue(events)
        await queue.join()
        await queue.stop()

        assert accepted == 30
        assert queue.stats["processed"] == 30
        for token in (1, 2, 3):
            assert [b for t, b in seen if t == token] == list(range(10))

    @pytest.mark.asyncio
    async def test_worker_survives_failing_event(self):
        calls: list = []

        def process(event):
            calls.append(event.block_number)
            if event.block_number == 1:
                raise ValueError("bad event")
            return _ok(event)

        queue = PartitionedEventQueue(process, make_settings(queue_partitions=1))
        await queue.start()
        await queue.enqueue([funded(7, block=b, cents=1) for b in range(3)])
        await queue.join()
        await queue.stop()

        assert calls == [0, 1, 2]
        assert queue.stats["processed"] == 2

    @pytest.mark.asyncio
    async def test_full_partition_drops_to_reconciliation(self):
        gate = threading.Event()

        def process(event):
            gate.wait(5)
            return _ok(event)

        settings = make_settings(queue_partitions=1, queue_maxsize=1, enqueue_timeout_s=0.2)
        queue = PartitionedEventQueue(process, settings)
        await queue.start()

        accepted = await queue.enqueue([funded(7, block=b, cents=1) for b in range(3)])
        gate.set()
        await queue.stop()

        assert accepted == 2
        assert queue.stats["dropped"] == 1


class TestProcessNow:
    @pytest.mark.asyncio
    @patch("invoice_sync.webhooks.queue.compute_delay", return_value=0)
    async def test_transient_error_retried(self, mock_delay):
        process = MagicMock(side_effect=[StoreUnavailableError("down"), "ok"])
        queue = PartitionedEventQueue(process, make_settings(processing_max_retries=2))

        result = await queue.process_now(minted(7, block=100))

        assert result == "ok"
        assert process.call_count == 2
        assert queue.stats["retried"] == 1
        assert queue.stats["processed"] == 1

    @pytest.mark.asyncio
    @patch("invoice_sync.webhooks.queue.compute_delay", return_value=0)
    async def test_gives_up_after_max_retries(self, mock_delay):
        process = MagicMock(side_effect=StoreUnavailableError("down"))
        queue = PartitionedEventQueue(process, make_settings(processing_max_retries=2))

        with pytest.raises(StoreUnavailableError):
            await queue.process_now(minted(7, block=100))

        assert process.call_count == 3
        assert queue.stats["failed"] == 1

    @pytest.mark.asyncio
    async def test_non_transient_error_not_retried(self):
        process = MagicMock(side_effect=ValueError("bad"))
        queue = PartitionedEventQueue(process, make_settings(processing_max_retries=3))

        with pytest.raises(ValueError):
            await queue.process_now(minted(7, block=100))

        assert process.call_count == 1
        assert queue.stats["retried"] == 0

    @pytest.mark.asyncio
    async def test_timeout(self):
        def slow(event):
            time.sleep(0.3)
            return _ok(event)

        settings = make_settings(processing_timeout_s=0.05, processing_max_retries=0)
        queue = PartitionedEventQueue(slow, settings)

        with pytest.raises(asyncio.TimeoutError):
            await queue.process_now(minted(7, block=100))
        assert queue.stats["failed"] == 1
        await queue.stop()

    @pytest.mark.asyncio
    async def test_overrunning_apply_blocks_its_partition(self):
        finished: list = []
        lock = threading.Lock()

        def process(event):
            if event.block_number == 100:
                time.sleep(0.4)
            with lock:
                finished.append(event.block_number)
            return _ok(event)

        settings = make_settings(
            queue_partitions=1, processing_timeout_s=0.05, processing_max_retries=0
        )
        queue = PartitionedEventQueue(process, settings)
        await queue.start()

        await queue.enqueue([funded(7, block=100, cents=1), funded(7, block=101, cents=1)])
        await queue.join()
        await queue.stop()

        assert finished == [100, 101]
        assert queue.stats["failed"] == 1
        assert queue.stats["processed"] == 1

    @pytest.mark.asyncio
    @patch("invoice_sync.webhooks.queue.compute_delay", return_value=0)
    async def test_retry_waits_for_timed_out_attempt(self, mock_delay):
        running = 0
        overlapped = False
        lock = threading.Lock()

        def process(event):
            nonlocal running, overlapped
            with lock:
                running += 1
                overlapped = overlapped or running > 1
            time.sleep(0.2)
            with lock:
                running -= 1
            return _ok(event)

        settings = make_settings(processing_timeout_s=0.05, processing_max_retries=1)
        queue = PartitionedEventQueue(process, settings)

        with pytest.raises(asyncio.TimeoutError):
            await queue.process_now(minted(7, block=100))
        await queue.stop()

        assert not overlapped
        assert queue.stats["retried"] == 1

    @pytest.mark.asyncio
    async def test_inline_event_waits_for_overrun_on_same_token(self):
        finished: list = []

        def process(event):
            if event.block_number == 100:
                time.sleep(0.3)
            finished.append(event.block_number)
            return _ok(event)

        settings = make_settings(processing_timeout_s=0.05, processing_max_retries=0)
        queue = PartitionedEventQueue(process, settings)

        with pytest.raises(asyncio.TimeoutError):
            await queue.process_now(funded(7, block=100, cents=1))
        result = await queue.process_now(funded(7, block=101, cents=1))

        assert result.outcome is AppliedOutcome.APPLIED
        assert finished == [100, 101]
