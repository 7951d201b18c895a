"""Lifecycle records, applied-event ledger rows, and apply outcomes."""

from __future__ import annotations

import copy
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from invoice_sync.lifecycle.state import LifecycleStatus
from invoice_sync.webhooks.models import CanonicalEvent, EventKey, EventName, EventPosition


class MutationClass(str, Enum):
    """Independent ordering streams on one record; staleness is per class."""
    MINT = "mint"
    FUNDING = "funding"
    REPAYMENT = "repayment"
    SETTLEMENT = "settlement"
    DEFAULT = "default"
    OWNERSHIP = "ownership"


MUTATION_CLASS: dict[EventName, MutationClass] = {
    EventName.MINTED: MutationClass.MINT,
    EventName.FUNDED: MutationClass.FUNDING,
    EventName.REPAYMENT_DEPOSITED: MutationClass.REPAYMENT,
    EventName.SETTLED: MutationClass.SETTLEMENT,
    EventName.DEFAULTED: MutationClass.DEFAULT,
    EventName.TRANSFERRED: MutationClass.OWNERSHIP,
}


class AppliedOutcome(str, Enum):
    APPLIED = "applied"
    REJECTED = "rejected-invalid-transition"
    IGNORED = "ignored-unknown"


# ---------------------------------------------------------------------------
# InvoiceLifecycleRecord
# ---------------------------------------------------------------------------


@dataclass
class InvoiceLifecycleRecord:
    """Lifecycle slice of one invoice, owned by the synchronizer."""

    invoice_id: str
    token_id: int | None = None
    lifecycle_status: LifecycleStatus = LifecycleStatus.DRAFT
    owner_address: str | None = None
    minted_at: int | None = None
    funded_amount_cents: int = 0
    expected_repayment_cents: int | None = None
    settled_at: int | None = None
    defaulted_at: int | None = None
    last_applied_event: EventPosition | None = None

    # Terms and running totals
    issuer_address: str | None = None
    mint_tx_hash: str | None = None
    funding_target_cents: int | None = None
    apr_micros: int | None = None
    due_at: int | None = None
    funded_at: int | None = None
    repaid_amount_cents: int = 0
    yield_distributed_cents: int = 0
    status_changed_at: float | None = None
    last_applied_by_class: dict[MutationClass, EventPosition] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.lifecycle_status in (LifecycleStatus.SETTLED, LifecycleStatus.DEFAULTED)

    def copy(self) -> InvoiceLifecycleRecord:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["lifecycle_status"] = self.lifecycle_status.value
        data["last_applied_event"] = (
            self.last_applied_event.to_list() if self.last_applied_event else None
        )
        data["last_applied_by_class"] = {
            k.value: v.to_list() for k, v in self.last_applied_by_class.items()
        }
        return data

    @staticmethod
    def from_dict(d: dict[str, Any]) -> InvoiceLifecycleRecord:
        known = {k: v for k, v in d.items() if k in InvoiceLifecycleRecord.__dataclass_fields__}
        known["lifecycle_status"] = LifecycleStatus(known.get("lifecycle_status", "DRAFT"))
        known["last_applied_event"] = EventPosition.from_value(known.get("last_applied_event"))
        known["last_applied_by_class"] = {
            MutationClass(k): EventPosition.from_value(v)
            for k, v in (known.get("last_applied_by_class") or {}).items()
        }
        if known.get("token_id") is not None:
            known["token_id"] = int(known["token_id"])
        return InvoiceLifecycleRecord(**known)


# ---------------------------------------------------------------------------
# Ledger + collaborator rows
# ---------------------------------------------------------------------------


@dataclass
class LedgerEntry:
    """One row of the append-only applied-event ledger."""

    transaction_hash: str
    log_index: int
    provider: str
    event_name: str
    block_number: int
    outcome: AppliedOutcome = AppliedOutcome.APPLIED
    invoice_id: str | None = None
    detail: str = ""
    recorded_at: float = field(default_factory=time.time)

    @property
    def key(self) -> EventKey:
        return EventKey(self.transaction_hash, self.log_index)

    @classmethod
    def from_event(cls, event: CanonicalEvent) -> LedgerEntry:
        return cls(
            transaction_hash=event.transaction_hash,
            log_index=event.log_index,
            provider=event.provider.value,
            event_name=event.event_name.value,
            block_number=event.block_number,
        )


@dataclass(frozen=True)
class ChainTransaction:
    """Financial side effect of an applied event, kept for reporting."""

    transaction_hash: str
    log_index: int
    invoice_id: str
    token_id: int | None
    kind: MutationClass
    amount_cents: int | None = None
    counterparty: str | None = None
    block_number: int = 0
    block_timestamp: int | None = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ApplyResult:
    """What ``LifecycleSynchronizer.apply`` did with one event."""

    event_key: EventKey
    outcome: AppliedOutcome | None = None
    duplicate: bool = False
    invoice_id: str | None = None
    previous_status: LifecycleStatus | None = None
    new_status: LifecycleStatus | None = None
    reason: str = ""

    @property
    def applied(self) -> bool:
        return self.outcome is AppliedOutcome.APPLIED and not self.duplicate


@dataclass(frozen=True)
class LifecycleStatusView:
    """Read-only projection served to the invoice CRUD layer."""

    invoice_id: str
    lifecycle_status: LifecycleStatus
    last_applied_event: EventPosition | None
    token_id: int | None = None
    funded_amount_cents: int = 0
    expected_repayment_cents: int | None = None
    repaid_amount_cents: int = 0
    status_changed_at: float | None = None

    @classmethod
    def from_record(cls, record: InvoiceLifecycleRecord) -> LifecycleStatusView:
        return cls(
            invoice_id=record.invoice_id,
            lifecycle_status=record.lifecycle_status,
            last_applied_event=record.last_applied_event,
            token_id=record.token_id,
            funded_amount_cents=record.funded_amount_cents,
            expected_repayment_cents=record.expected_repayment_cents,
            repaid_amount_cents=record.repaid_amount_cents,
            status_changed_at=record.status_changed_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "invoice_id": self.invoice_id,
            "lifecycle_status": self.lifecycle_status.value,
            "last_applied_event": (
                self.last_applied_event.to_list() if self.last_applied_event else None
            ),
            "token_id": self.token_id,
            "funded_amount_cents": self.funded_amount_cents,
            "expected_repayment_cents": self.expected_repayment_cents,
            "repaid_amount_cents": self.repaid_amount_cents,
            "status_changed_at": self.status_changed_at,
        }
