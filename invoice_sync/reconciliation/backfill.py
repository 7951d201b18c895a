"""Reconciliation: replay protocol logs from chain through the normal apply path.

Webhook delivery is best effort; this runner heals the gaps. Logs are read in
small block chunks (free-tier RPC providers cap ``eth_getLogs`` ranges), fed
through the RPC normalizer and the event router, and deduplicated by the
applied-event ledger, so replaying a range any number of times is safe.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass

from invoice_sync.config import Settings
from invoice_sync.exceptions import (
    TRANSIENT_ERRORS,
    BlockRangeTooLargeError,
    InvoiceNotFoundError,
    MalformedPayloadError,
)
from invoice_sync.lifecycle.models import AppliedOutcome, ApplyResult
from invoice_sync.lifecycle.store import LifecycleStore
from invoice_sync.reconciliation.chain_reader import ChainReader, RawLog
from invoice_sync.retry import retry_with_backoff
from invoice_sync.webhooks.normalizer import RpcLogNormalizer
from invoice_sync.webhooks.router import EventRouter

logger = logging.getLogger(__name__)


@dataclass
class BackfillReport:
    """Counters for one reconciliation run."""

    from_block: int
    to_block: int
    chunks: int = 0
    logs: int = 0
    applied: int = 0
    duplicates: int = 0
    rejected: int = 0
    ignored: int = 0
    errors: int = 0
    cancelled: bool = False
    last_block: int | None = None

    def record(self, result: ApplyResult) -> None:
        if result.duplicate:
            self.duplicates += 1
        elif result.outcome is AppliedOutcome.APPLIED:
            self.applied += 1
        elif result.outcome is AppliedOutcome.REJECTED:
            self.rejected += 1
        elif result.outcome is AppliedOutcome.IGNORED:
            self.ignored += 1

    def to_dict(self) -> dict:
        return asdict(self)


class BackfillRunner:
    """Chunked chain replay, incremental polling, and single-invoice resync."""

    def __init__(
        self,
        reader: ChainReader,
        router: EventRouter,
        settings: Settings,
        store: LifecycleStore,
    ) -> None:
        self._reader = reader
        self._store = store
        self._normalizer = RpcLogNormalizer(settings)
        self._addresses = settings.contract_addresses
        self._max_range = settings.backfill_max_block_range
        self._chunk_delay = settings.backfill_chunk_delay_s
        self._initial_lookback = settings.poll_initial_lookback_blocks
        self._invoice_lookback = settings.sync_invoice_lookback_blocks
        self._route = retry_with_backoff(
            max_retries=settings.processing_max_retries,
            base_delay=settings.processing_retry_base_delay_s,
            max_delay=30.0,
            retry_on=TRANSIENT_ERRORS,
        )(router.route)
        self._cancel = threading.Event()
        self._poll_lock = threading.Lock()
        self._cursor: int | None = None

    @property
    def cursor(self) -> int | None:
        """Last block the poller has synced through."""
        return self._cursor

    def cancel(self) -> None:
        """Stop in-flight and future runs at the next chunk boundary."""
        self._cancel.set()

    # ── Range replay ─────────────────────────────────────────────────────

    def backfill(self, from_block: int, to_block: int | None = None) -> BackfillReport:
        """Replay every protocol log in ``[from_block, to_block]``.

        *to_block* defaults to the chain head.
        """
        return self._run(from_block, to_block, token_id=None)

    def _run(self, from_block: int, to_block: int | None, token_id: int | None) -> BackfillReport:
        if to_block is None:
            to_block = self._reader.get_block_number()
        if from_block < 0 or from_block > to_block:
            raise ValueError(f"Invalid block range {from_block}-{to_block}")

        report = BackfillReport(from_block=from_block, to_block=to_block)
        chunk = self._max_range
        logger.info(
            "Backfill %d-%d (%d blocks, chunks of %d)",
            from_block,
            to_block,
            to_block - from_block + 1,
            chunk,
        )

        start = from_block
        while start <= to_block:
            if self._cancel.is_set():
                report.cancelled = True
                logger.warning("Backfill cancelled at block %d", start)
                break
            end = min(start + chunk - 1, to_block)
            try:
                logs = self._reader.get_logs(start, end, self._addresses)
            except BlockRangeTooLargeError:
                if chunk == 1:
                    raise
                chunk = max(1, chunk // 2)
                logger.warning("Block range %d-%d refused, retrying with %d blocks", start, end, chunk)
                continue

            report.chunks += 1
            errors_before = report.errors
            self._apply_logs(logs, report, token_id)
            if report.errors > errors_before:
                # last_block stays before this chunk.
                logger.error(
                    "Backfill stopped at blocks %d-%d after %d failed logs",
                    start,
                    end,
                    report.errors - errors_before,
                )
                break
            report.last_block = end
            start = end + 1
            if start <= to_block and self._chunk_delay > 0:
                self._cancel.wait(self._chunk_delay)

        logger.info(
            "Backfill done %d-%d: chunks=%d logs=%d applied=%d duplicates=%d "
            "rejected=%d ignored=%d errors=%d",
            report.from_block,
            report.last_block if report.last_block is not None else report.from_block,
            report.chunks,
            report.logs,
            report.applied,
            report.duplicates,
            report.rejected,
            report.ignored,
            report.errors,
        )
        return report

    def _apply_logs(self, logs: list[RawLog], report: BackfillReport, token_id: int | None) -> None:
        report.logs += len(logs)
        try:
            events = self._normalizer.normalize(logs)
        except MalformedPayloadError:
            report.errors += len(logs)
            logger.error("Malformed logs from RPC, skipping %d logs", len(logs), exc_info=True)
            return

        for event in sorted(events, key=lambda e: e.position):
            if token_id is not None and event.token_id != token_id:
                continue
            try:
                report.record(self._route(event))
            except Exception:
                report.errors += 1
                logger.error(
                    "Backfill failed to apply event provider=%s event=%s tx=%s log=%d",
                    event.provider.value,
                    event.event_name.value,
                    event.transaction_hash,
                    event.log_index,
                    exc_info=True,
                )

    # ── Polling + targeted resync ────────────────────────────────────────

    def poll_once(self) -> BackfillReport | None:
        """Sync from the in-memory cursor to the chain head.

        Returns ``None`` when a poll is already running or there are no new
        blocks.
        """
        if not self._poll_lock.acquire(blocking=False):
            logger.warning("Polling already in progress, skipping this run")
            return None
        try:
            head = self._reader.get_block_number()
            if self._cursor is None:
                self._cursor = max(0, head - self._initial_lookback)
            if head <= self._cursor:
                return None
            logger.info("Polling blocks %d to %d", self._cursor + 1, head)
            report = self.backfill(self._cursor + 1, head)
            if report.last_block is not None:
                self._cursor = report.last_block
            return report
        finally:
            self._poll_lock.release()

    def sync_invoice(self, invoice_id: str) -> BackfillReport | None:
        """Replay recent history for one invoice's token.

        Returns ``None`` when the invoice has no token yet (nothing on chain).

        Raises:
            InvoiceNotFoundError: no lifecycle record for *invoice_id*.
        """
        record = self._store.get_lifecycle_record(invoice_id)
        if record is None:
            raise InvoiceNotFoundError(f"No lifecycle record for invoice {invoice_id}")
        if record.token_id is None:
            logger.warning("Invoice %s has no token yet, nothing to sync", invoice_id)
            return None
        head = self._reader.get_block_number()
        from_block = max(0, head - self._invoice_lookback)
        logger.info("Syncing invoice %s (token %d) from block %d", invoice_id, record.token_id, from_block)
        return self._run(from_block, head, token_id=record.token_id)
