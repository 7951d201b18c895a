"""Persistent store interface for lifecycle records and the applied-event ledger.

Every mutation happens inside ``LifecycleStore.transaction()``; the yielded
``StoreTransaction`` is the narrow collaborator interface the synchronizer
writes through. Either every write in the block commits or none does.

``InMemoryLifecycleStore`` serializes transactions with one lock and rolls
back by restoring a snapshot. It backs tests and single-process runs;
``invoice_sync.lifecycle.postgres`` is the durable implementation.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Protocol, runtime_checkable

from invoice_sync.exceptions import ConcurrentModificationError
from invoice_sync.lifecycle.models import (
    AppliedOutcome,
    ChainTransaction,
    InvoiceLifecycleRecord,
    LedgerEntry,
)
from invoice_sync.lifecycle.state import LifecycleStatus
from invoice_sync.webhooks.models import EventKey, EventPosition

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class StoreTransaction(Protocol):
    """Operations available inside one atomic store transaction."""

    def insert_applied_event_if_absent(self, entry: LedgerEntry) -> bool:
        """Insert a ledger row unless its key exists.

        Returns:
            ``True`` if the row was inserted (first delivery).
            ``False`` if the key was already present (duplicate).
        """
        ...

    def set_applied_event_outcome(
        self, key: EventKey, outcome: AppliedOutcome, invoice_id: str | None, detail: str = ""
    ) -> None:
        ...

    def get_lifecycle_record(
        self, *, invoice_id: str | None = None, token_id: int | None = None
    ) -> InvoiceLifecycleRecord | None:
        """Load and lock a record by invoice id or token id."""
        ...

    def find_mint_target(
        self, *, token_id: int, mint_tx_hash: str, issuer_address: str | None
    ) -> InvoiceLifecycleRecord | None:
        """Locate the record a mint applies to: by token, by mint tx, then newest issuer draft."""
        ...

    def upsert_lifecycle_record(
        self, record: InvoiceLifecycleRecord, expected_prior_event: EventPosition | None
    ) -> None:
        """Write *record*; raise ``ConcurrentModificationError`` if the stored
        ``last_applied_event`` no longer equals *expected_prior_event*."""
        ...

    def record_transaction(self, tx: ChainTransaction) -> None:
        ...

    def record_ownership(self, token_id: int, owner: str, position: EventPosition) -> None:
        ...

    def get_owner(self, token_id: int) -> str | None:
        """Latest recorded owner of *token_id*, if any."""
        ...


@runtime_checkable
class LifecycleStore(Protocol):
    """Store factory: opens transactions and serves read-only queries."""

    def init_tables(self) -> None:
        ...

    def transaction(self):
        """Context manager yielding a ``StoreTransaction``."""
        ...

    def get_lifecycle_record(self, invoice_id: str) -> InvoiceLifecycleRecord | None:
        ...

    def get_record_by_token(self, token_id: int) -> InvoiceLifecycleRecord | None:
        ...

    def get_applied_event(self, key: EventKey) -> LedgerEntry | None:
        ...


# ---------------------------------------------------------------------------
# InMemoryLifecycleStore
# ---------------------------------------------------------------------------


class _InMemoryTransaction:
    """Writes straight into the owning store while its lock is held."""

    def __init__(self, store: InMemoryLifecycleStore) -> None:
        self._store = store

    def insert_applied_event_if_absent(self, entry: LedgerEntry) -> bool:
        if entry.key in self._store._ledger:
            return False
        self._store._ledger[entry.key] = copy.copy(entry)
        return True

    def set_applied_event_outcome(
        self, key: EventKey, outcome: AppliedOutcome, invoice_id: str | None, detail: str = ""
    ) -> None:
        entry = self._store._ledger[key]
        entry.outcome = outcome
        entry.invoice_id = invoice_id
        entry.detail = detail

    def get_lifecycle_record(
        self, *, invoice_id: str | None = None, token_id: int | None = None
    ) -> InvoiceLifecycleRecord | None:
        if invoice_id is not None:
            record = self._store._records.get(invoice_id)
            return record.copy() if record else None
        if token_id is not None:
            for record in self._store._records.values():
                if record.token_id == token_id:
                    return record.copy()
        return None

    def find_mint_target(
        self, *, token_id: int, mint_tx_hash: str, issuer_address: str | None
    ) -> InvoiceLifecycleRecord | None:
        records = list(self._store._records.values())
        for record in records:
            if record.token_id == token_id:
                return record.copy()
        for record in records:
            if record.mint_tx_hash and record.mint_tx_hash == mint_tx_hash:
                return record.copy()
        if issuer_address:
            # Newest issuer draft without a token wins.
            for record in reversed(records):
                if (
                    record.token_id is None
                    and record.lifecycle_status is LifecycleStatus.DRAFT
                    and (record.issuer_address or "").lower() == issuer_address
                ):
                    return record.copy()
        return None

    def upsert_lifecycle_record(
        self, record: InvoiceLifecycleRecord, expected_prior_event: EventPosition | None
    ) -> None:
        current = self._store._records.get(record.invoice_id)
        stored = current.last_applied_event if current else None
        if stored != expected_prior_event:
            raise ConcurrentModificationError(
                f"Record {record.invoice_id} moved from {expected_prior_event} to {stored}"
            )
        self._store._records[record.invoice_id] = record.copy()

    def record_transaction(self, tx: ChainTransaction) -> None:
        self._store._transactions.append(tx)

    def record_ownership(self, token_id: int, owner: str, position: EventPosition) -> None:
        current = self._store._ownership.get(token_id)
        if current is None or current[1] < position:
            self._store._ownership[token_id] = (owner, position)

    def get_owner(self, token_id: int) -> str | None:
        current = self._store._ownership.get(token_id)
        return current[0] if current else None


class InMemoryLifecycleStore:
    """Thread-safe in-memory store with snapshot rollback."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: dict[str, InvoiceLifecycleRecord] = {}
        self._ledger: dict[EventKey, LedgerEntry] = {}
        self._transactions: list[ChainTransaction] = []
        self._ownership: dict[int, tuple[str, EventPosition]] = {}

    def init_tables(self) -> None:
        logger.debug("In-memory store needs no tables")

    @contextmanager
    def transaction(self) -> Iterator[_InMemoryTransaction]:
        with self._lock:
            snapshot = (
                copy.deepcopy(self._records),
                copy.deepcopy(self._ledger),
                list(self._transactions),
                dict(self._ownership),
            )
            try:
                yield _InMemoryTransaction(self)
            except BaseException:
                self._records, self._ledger, self._transactions, self._ownership = snapshot
                raise

    # -- Seeding (invoice CRUD layer stand-in) -------------------------------

    def add_record(self, record: InvoiceLifecycleRecord) -> None:
        with self._lock:
            self._records[record.invoice_id] = record.copy()

    # -- Read-only queries ---------------------------------------------------

    def get_lifecycle_record(self, invoice_id: str) -> InvoiceLifecycleRecord | None:
        with self._lock:
            record = self._records.get(invoice_id)
            return record.copy() if record else None

    def get_record_by_token(self, token_id: int) -> InvoiceLifecycleRecord | None:
        with self._lock:
            for record in self._records.values():
                if record.token_id == token_id:
                    return record.copy()
        return None

    def get_applied_event(self, key: EventKey) -> LedgerEntry | None:
        with self._lock:
            entry = self._ledger.get(key)
            return copy.copy(entry) if entry else None

    def ledger_entries(self) -> list[LedgerEntry]:
        with self._lock:
            return [copy.copy(e) for e in self._ledger.values()]

    def records(self) -> list[InvoiceLifecycleRecord]:
        with self._lock:
            return [r.copy() for r in self._records.values()]

    def transactions(self) -> list[ChainTransaction]:
        with self._lock:
            return list(self._transactions)

    def owner_of(self, token_id: int) -> str | None:
        with self._lock:
            entry = self._ownership.get(token_id)
            return entry[0] if entry else None
