"""Lifecycle synchronizer: applies canonical events to invoice lifecycle records.

Every event is applied inside one store transaction:

1. Insert the ledger row for ``(transaction_hash, log_index)`` if absent.
   A duplicate key means the event was already handled; nothing else runs.
2. Load and lock the target record.
3. Reject (ledger ``rejected-invalid-transition``, record untouched) when the
   record is terminal, the event is not legal from the current status, or the
   event is not newer than the last one applied for its mutation class.
4. Mutate, write collaborator rows, upsert with the prior position as the
   optimistic guard.

Store errors propagate so the caller can retry; the rolled-back transaction
also rolls back the ledger insert, so a retry is never mistaken for a
duplicate.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from invoice_sync.config import Settings
from invoice_sync.exceptions import InvalidTransitionError, InvoiceNotFoundError
from invoice_sync.lifecycle.models import (
    MUTATION_CLASS,
    AppliedOutcome,
    ApplyResult,
    ChainTransaction,
    InvoiceLifecycleRecord,
    LedgerEntry,
    LifecycleStatusView,
    MutationClass,
)
from invoice_sync.lifecycle.state import (
    OFF_CHAIN_EDGES,
    LifecycleStatus,
    accepts_event,
    assert_transition,
)
from invoice_sync.lifecycle.store import LifecycleStore, StoreTransaction
from invoice_sync.webhooks.models import CanonicalEvent, EventName

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86_400
APR_SCALE = 1_000_000  # apr is emitted scaled by 1e6

_OWNERSHIP_EVENTS = frozenset({EventName.MINTED, EventName.TRANSFERRED})


class _Rejected(Exception):
    """Internal signal: the event must be recorded as rejected."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def to_cents(base_units: int | None, decimals: int) -> int:
    """Stablecoin base units to cents (truncating)."""
    if base_units is None:
        return 0
    if decimals >= 2:
        return int(base_units) // 10 ** (decimals - 2)
    return int(base_units) * 10 ** (2 - decimals)


def expected_repayment(
    principal_cents: int, apr_micros: int | None, due_at: int | None, funded_at: int | None
) -> int:
    """principal * (1 + apr * days / 365); the principal alone when terms are unknown."""
    if apr_micros is None or due_at is None or funded_at is None:
        return principal_cents
    days = max(0, (due_at - funded_at) // SECONDS_PER_DAY)
    return principal_cents + (principal_cents * apr_micros * days) // (APR_SCALE * 365)


Mutation = Callable[[InvoiceLifecycleRecord, CanonicalEvent], list[ChainTransaction]]


class LifecycleSynchronizer:
    """Owns every lifecycle mutation driven by chain events."""

    def __init__(self, store: LifecycleStore, settings: Settings) -> None:
        self._store = store
        self._decimals = settings.token_decimals

    # ── Dispatch ─────────────────────────────────────────────────────────

    def handlers(self) -> dict[EventName, Callable[[CanonicalEvent], ApplyResult]]:
        """Per-event entry points, one per routable event name."""
        return {
            EventName.MINTED: self.handle_minted,
            EventName.FUNDED: self.handle_funded,
            EventName.REPAYMENT_DEPOSITED: self.handle_repayment_deposited,
            EventName.SETTLED: self.handle_settled,
            EventName.DEFAULTED: self.handle_defaulted,
            EventName.TRANSFERRED: self.handle_transferred,
        }

    def apply(self, event: CanonicalEvent) -> ApplyResult:
        """Apply one canonical event exactly once."""
        handler = self.handlers().get(event.event_name)
        if handler is None:
            return self.record_ignored(event)
        return handler(event)

    def handle_minted(self, event: CanonicalEvent) -> ApplyResult:
        return self._apply(event, self._locate_mint_target, self._mutate_minted)

    def handle_funded(self, event: CanonicalEvent) -> ApplyResult:
        return self._apply(event, self._locate_by_token, self._mutate_funded)

    def handle_repayment_deposited(self, event: CanonicalEvent) -> ApplyResult:
        return self._apply(event, self._locate_by_token, self._mutate_repayment)

    def handle_settled(self, event: CanonicalEvent) -> ApplyResult:
        return self._apply(event, self._locate_by_token, self._mutate_settled)

    def handle_defaulted(self, event: CanonicalEvent) -> ApplyResult:
        return self._apply(event, self._locate_by_token, self._mutate_defaulted)

    def handle_transferred(self, event: CanonicalEvent) -> ApplyResult:
        return self._apply(event, self._locate_by_token, self._mutate_transferred)

    def record_ignored(self, event: CanonicalEvent) -> ApplyResult:
        """Ledger an event nobody handles so reconciliation can tell it was seen."""
        entry = LedgerEntry.from_event(event)
        entry.outcome = AppliedOutcome.IGNORED
        fields = event.decoded_fields
        entry.detail = str(fields.get("topic0") or fields.get("eventName") or "")
        with self._store.transaction() as tx:
            inserted = tx.insert_applied_event_if_absent(entry)
        if not inserted:
            return ApplyResult(event.key, duplicate=True)
        logger.warning(
            "Ignoring unknown event %s (%s)", event.describe(), entry.detail or "no signature"
        )
        return ApplyResult(event.key, outcome=AppliedOutcome.IGNORED, reason="unknown-event")

    # ── Core algorithm ───────────────────────────────────────────────────

    def _apply(
        self,
        event: CanonicalEvent,
        locate: Callable[[StoreTransaction, CanonicalEvent], InvoiceLifecycleRecord | None],
        mutate: Mutation,
    ) -> ApplyResult:
        with self._store.transaction() as tx:
            if not tx.insert_applied_event_if_absent(LedgerEntry.from_event(event)):
                logger.info("Duplicate event %s, skipping", event.describe())
                return ApplyResult(event.key, duplicate=True)

            record = locate(tx, event)
            if record is None:
                if event.event_name is EventName.MINTED and event.token_id is not None:
                    return self._hold_mint_transfer(tx, event)
                return self._reject(tx, event, None, "unknown-token")

            prior_event = record.last_applied_event
            previous_status = record.lifecycle_status
            if record.is_terminal:
                return self._reject(tx, event, record, f"terminal-state:{previous_status.value}")

            try:
                effects = mutate(record, event)
            except _Rejected as rejected:
                return self._reject(tx, event, record, rejected.reason)

            if record.lifecycle_status != previous_status:
                assert_transition(previous_status, record.lifecycle_status)
                record.status_changed_at = float(event.block_timestamp or time.time())
            self._advance_positions(record, event)

            tx.upsert_lifecycle_record(record, expected_prior_event=prior_event)
            for effect in effects:
                tx.record_transaction(effect)
            recipient = event.decoded_fields.get("to")
            if event.event_name in _OWNERSHIP_EVENTS and recipient:
                tx.record_ownership(record.token_id, recipient, event.position)
            tx.set_applied_event_outcome(event.key, AppliedOutcome.APPLIED, record.invoice_id)

        logger.info(
            "Applied %s to invoice %s: %s -> %s",
            event.describe(),
            record.invoice_id,
            previous_status.value,
            record.lifecycle_status.value,
        )
        return ApplyResult(
            event.key,
            outcome=AppliedOutcome.APPLIED,
            invoice_id=record.invoice_id,
            previous_status=previous_status,
            new_status=record.lifecycle_status,
        )

    def _hold_mint_transfer(self, tx: StoreTransaction, event: CanonicalEvent) -> ApplyResult:
        """Ledger a bare ERC-721 mint seen before its InvoiceMinted.

        The transfer names no issuer, so it cannot pick the draft invoice. Its
        recipient is kept as the token owner; the InvoiceMinted log of the same
        transaction binds the token to the issuer's draft and reads it back.
        """
        recipient = event.decoded_fields.get("to")
        if recipient:
            tx.record_ownership(event.token_id, recipient, event.position)
        tx.set_applied_event_outcome(
            event.key, AppliedOutcome.APPLIED, None, "awaiting-invoice-minted"
        )
        logger.info("Holding %s until its InvoiceMinted arrives", event.describe())
        return ApplyResult(
            event.key, outcome=AppliedOutcome.APPLIED, reason="awaiting-invoice-minted"
        )

    def _reject(
        self,
        tx: StoreTransaction,
        event: CanonicalEvent,
        record: InvoiceLifecycleRecord | None,
        reason: str,
    ) -> ApplyResult:
        invoice_id = record.invoice_id if record else None
        tx.set_applied_event_outcome(event.key, AppliedOutcome.REJECTED, invoice_id, reason)
        logger.warning(
            "Rejected %s for invoice %s: %s (status=%s)",
            event.describe(),
            invoice_id,
            reason,
            record.lifecycle_status.value if record else None,
        )
        return ApplyResult(
            event.key,
            outcome=AppliedOutcome.REJECTED,
            invoice_id=invoice_id,
            previous_status=record.lifecycle_status if record else None,
            new_status=record.lifecycle_status if record else None,
            reason=reason,
        )

    @staticmethod
    def _advance_positions(record: InvoiceLifecycleRecord, event: CanonicalEvent) -> None:
        klass = MUTATION_CLASS[event.event_name]
        position = event.position
        last = record.last_applied_by_class.get(klass)
        if last is None or position > last:
            record.last_applied_by_class[klass] = position
        if record.last_applied_event is None or position > record.last_applied_event:
            record.last_applied_event = position

    @staticmethod
    def _require_edge(record: InvoiceLifecycleRecord, event: CanonicalEvent) -> None:
        if not accepts_event(record.lifecycle_status, event.event_name):
            raise _Rejected(
                f"invalid-transition:{event.event_name.value}@{record.lifecycle_status.value}"
            )
        last = record.last_applied_by_class.get(MUTATION_CLASS[event.event_name])
        if last is not None and event.position <= last:
            raise _Rejected(f"stale-position:{list(event.position)}<={list(last)}")

    # ── Record lookup ────────────────────────────────────────────────────

    @staticmethod
    def _locate_by_token(
        tx: StoreTransaction, event: CanonicalEvent
    ) -> InvoiceLifecycleRecord | None:
        if event.token_id is None:
            return None
        return tx.get_lifecycle_record(token_id=event.token_id)

    @staticmethod
    def _locate_mint_target(
        tx: StoreTransaction, event: CanonicalEvent
    ) -> InvoiceLifecycleRecord | None:
        token_id = event.token_id
        if token_id is None:
            return None
        issuer = event.decoded_fields.get("issuer")
        record = tx.find_mint_target(
            token_id=token_id,
            mint_tx_hash=event.transaction_hash,
            issuer_address=issuer,
        )
        if record is None:
            if not issuer:
                return None
            # No draft registered by the CRUD layer; track the token on its own.
            record = InvoiceLifecycleRecord(invoice_id=f"token-{token_id}", issuer_address=issuer)
        if record.token_id is None and record.owner_address is None:
            # Owner left by an earlier Transfer-from-zero of this token.
            record.owner_address = tx.get_owner(token_id)
        return record

    # ── Mutations ────────────────────────────────────────────────────────

    def _tx(
        self,
        record: InvoiceLifecycleRecord,
        event: CanonicalEvent,
        kind: MutationClass,
        amount_cents: int | None,
        counterparty: str | None,
    ) -> ChainTransaction:
        return ChainTransaction(
            transaction_hash=event.transaction_hash,
            log_index=event.log_index,
            invoice_id=record.invoice_id,
            token_id=record.token_id,
            kind=kind,
            amount_cents=amount_cents,
            counterparty=counterparty,
            block_number=event.block_number,
            block_timestamp=event.block_timestamp,
        )

    def _apply_mint_terms(self, record: InvoiceLifecycleRecord, event: CanonicalEvent) -> None:
        fields = event.decoded_fields
        if record.issuer_address is None and fields.get("issuer"):
            record.issuer_address = fields["issuer"]
        if record.funding_target_cents is None and fields.get("amount") is not None:
            record.funding_target_cents = to_cents(fields["amount"], self._decimals)
        if record.apr_micros is None and fields.get("apr") is not None:
            record.apr_micros = int(fields["apr"])
        if record.due_at is None and fields.get("dueAt") is not None:
            record.due_at = int(fields["dueAt"])
        if fields.get("to"):
            record.owner_address = fields["to"]
        elif record.owner_address is None:
            # The protocol contract holds a freshly minted token.
            record.owner_address = event.contract_address or None

    def _mutate_minted(
        self, record: InvoiceLifecycleRecord, event: CanonicalEvent
    ) -> list[ChainTransaction]:
        # Transfer-from-zero and InvoiceMinted share one mint transaction.
        if (
            record.lifecycle_status is LifecycleStatus.LISTED
            and record.mint_tx_hash == event.transaction_hash
            and record.token_id == event.token_id
        ):
            self._apply_mint_terms(record, event)
            return []

        self._require_edge(record, event)
        record.lifecycle_status = LifecycleStatus.LISTED
        record.token_id = event.token_id
        record.mint_tx_hash = event.transaction_hash
        record.minted_at = event.block_timestamp
        self._apply_mint_terms(record, event)
        return [
            self._tx(
                record, event, MutationClass.MINT, record.funding_target_cents, record.issuer_address
            )
        ]

    def _mutate_funded(
        self, record: InvoiceLifecycleRecord, event: CanonicalEvent
    ) -> list[ChainTransaction]:
        self._require_edge(record, event)
        fields = event.decoded_fields
        amount = to_cents(fields.get("amount"), self._decimals)
        total = record.funded_amount_cents + amount
        target = record.funding_target_cents

        if target is None or total >= target:
            record.lifecycle_status = LifecycleStatus.FULLY_FUNDED
            record.funded_amount_cents = target if target is not None else total
            record.funding_target_cents = record.funded_amount_cents
            record.funded_at = int(fields.get("fundedAt") or event.block_timestamp or 0) or None
            record.expected_repayment_cents = expected_repayment(
                record.funded_amount_cents, record.apr_micros, record.due_at, record.funded_at
            )
        else:
            record.lifecycle_status = LifecycleStatus.PARTIALLY_FUNDED
            record.funded_amount_cents = total
        return [self._tx(record, event, MutationClass.FUNDING, amount, fields.get("investor"))]

    def _mutate_repayment(
        self, record: InvoiceLifecycleRecord, event: CanonicalEvent
    ) -> list[ChainTransaction]:
        self._require_edge(record, event)
        fields = event.decoded_fields
        amount = to_cents(fields.get("amount"), self._decimals)
        record.repaid_amount_cents += amount
        expected = record.expected_repayment_cents
        if expected is None:
            expected = record.funded_amount_cents
        if record.repaid_amount_cents >= expected:
            record.lifecycle_status = LifecycleStatus.FULLY_REPAID
        else:
            record.lifecycle_status = LifecycleStatus.PARTIALLY_REPAID
        return [self._tx(record, event, MutationClass.REPAYMENT, amount, fields.get("depositedBy"))]

    def _mutate_settled(
        self, record: InvoiceLifecycleRecord, event: CanonicalEvent
    ) -> list[ChainTransaction]:
        self._require_edge(record, event)
        fields = event.decoded_fields
        record.lifecycle_status = LifecycleStatus.SETTLED
        record.settled_at = int(fields.get("settledAt") or event.block_timestamp or 0) or None
        record.yield_distributed_cents = to_cents(fields.get("yield"), self._decimals)
        total = to_cents(fields.get("totalAmount"), self._decimals)
        return [self._tx(record, event, MutationClass.SETTLEMENT, total, fields.get("investor"))]

    def _mutate_defaulted(
        self, record: InvoiceLifecycleRecord, event: CanonicalEvent
    ) -> list[ChainTransaction]:
        self._require_edge(record, event)
        fields = event.decoded_fields
        record.lifecycle_status = LifecycleStatus.DEFAULTED
        record.defaulted_at = int(fields.get("defaultedAt") or event.block_timestamp or 0) or None
        principal = to_cents(fields.get("principal"), self._decimals)
        return [self._tx(record, event, MutationClass.DEFAULT, principal, fields.get("investor"))]

    def _mutate_transferred(
        self, record: InvoiceLifecycleRecord, event: CanonicalEvent
    ) -> list[ChainTransaction]:
        self._require_edge(record, event)
        new_owner = event.decoded_fields.get("to")
        if not new_owner:
            raise _Rejected("transfer-without-recipient")
        record.owner_address = new_owner
        return []

    # ── Operator transitions and queries ─────────────────────────────────

    def transition(
        self, invoice_id: str, new_status: LifecycleStatus, reason: str = ""
    ) -> LifecycleStatusView:
        """Move a record along an off-chain edge (disbursement, overdue, collection).

        Raises:
            InvoiceNotFoundError: no record for *invoice_id*.
            InvalidTransitionError: edge is not an off-chain edge from the current status.
        """
        with self._store.transaction() as tx:
            record = tx.get_lifecycle_record(invoice_id=invoice_id)
            if record is None:
                raise InvoiceNotFoundError(f"No lifecycle record for invoice {invoice_id}")
            current = record.lifecycle_status
            if (current, new_status) not in OFF_CHAIN_EDGES:
                raise InvalidTransitionError(current.value, new_status.value)
            assert_transition(current, new_status)
            record.lifecycle_status = new_status
            record.status_changed_at = time.time()
            tx.upsert_lifecycle_record(record, expected_prior_event=record.last_applied_event)
        logger.info(
            "Invoice %s moved %s -> %s (%s)",
            invoice_id,
            current.value,
            new_status.value,
            reason or "operator",
        )
        return LifecycleStatusView.from_record(record)

    def get_lifecycle_status(self, invoice_id: str) -> LifecycleStatusView | None:
        record = self._store.get_lifecycle_record(invoice_id)
        return LifecycleStatusView.from_record(record) if record else None
