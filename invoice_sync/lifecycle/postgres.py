"""PostgreSQL lifecycle store.

Tables:
    invoice_lifecycle       one row per invoice (lifecycle slice only)
    applied_event_ledger    append-only, PRIMARY KEY (transaction_hash, log_index)
    chain_transaction       financial side effects of applied events
    token_ownership         latest owner per token, guarded by event position

The ledger primary key plus ``SELECT ... FOR UPDATE`` on the record row
serialize concurrent deliveries of the same invoice across processes.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Any, Iterator

import psycopg
from psycopg.rows import dict_row

from invoice_sync.config import Settings
from invoice_sync.exceptions import ConcurrentModificationError, StoreUnavailableError
from invoice_sync.lifecycle.models import (
    AppliedOutcome,
    ChainTransaction,
    InvoiceLifecycleRecord,
    LedgerEntry,
)
from invoice_sync.webhooks.models import EventKey, EventPosition

logger = logging.getLogger(__name__)

_RECORD_COLUMNS = (
    "invoice_id",
    "token_id",
    "lifecycle_status",
    "owner_address",
    "minted_at",
    "funded_amount_cents",
    "expected_repayment_cents",
    "settled_at",
    "defaulted_at",
    "last_applied_event",
    "issuer_address",
    "mint_tx_hash",
    "funding_target_cents",
    "apr_micros",
    "due_at",
    "funded_at",
    "repaid_amount_cents",
    "yield_distributed_cents",
    "status_changed_at",
    "last_applied_by_class",
)

_JSON_COLUMNS = {"last_applied_event", "last_applied_by_class"}

_DDL = (
    """
    CREATE TABLE IF NOT EXISTS invoice_lifecycle (
        invoice_id               TEXT PRIMARY KEY,
        token_id                 NUMERIC(78, 0) UNIQUE,
        lifecycle_status         TEXT NOT NULL DEFAULT 'DRAFT',
        owner_address            TEXT,
        minted_at                BIGINT,
        funded_amount_cents      BIGINT NOT NULL DEFAULT 0,
        expected_repayment_cents BIGINT,
        settled_at               BIGINT,
        defaulted_at             BIGINT,
        last_applied_event       JSONB,
        issuer_address           TEXT,
        mint_tx_hash             TEXT,
        funding_target_cents     BIGINT,
        apr_micros               BIGINT,
        due_at                   BIGINT,
        funded_at                BIGINT,
        repaid_amount_cents      BIGINT NOT NULL DEFAULT 0,
        yield_distributed_cents  BIGINT NOT NULL DEFAULT 0,
        status_changed_at        DOUBLE PRECISION,
        last_applied_by_class    JSONB NOT NULL DEFAULT '{}',
        created_at               TIMESTAMPTZ DEFAULT now(),
        updated_at               TIMESTAMPTZ DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_invoice_lifecycle_issuer_draft
        ON invoice_lifecycle (lower(issuer_address), created_at)
        WHERE token_id IS NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS applied_event_ledger (
        transaction_hash TEXT NOT NULL,
        log_index        INT NOT NULL,
        provider         TEXT NOT NULL,
        event_name       TEXT NOT NULL,
        block_number     BIGINT NOT NULL,
        outcome          TEXT NOT NULL,
        invoice_id       TEXT,
        detail           TEXT NOT NULL DEFAULT '',
        recorded_at      TIMESTAMPTZ DEFAULT now(),
        PRIMARY KEY (transaction_hash, log_index)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chain_transaction (
        transaction_hash TEXT NOT NULL,
        log_index        INT NOT NULL,
        invoice_id       TEXT NOT NULL,
        token_id         NUMERIC(78, 0),
        kind             TEXT NOT NULL,
        amount_cents     BIGINT,
        counterparty     TEXT,
        block_number     BIGINT NOT NULL,
        block_timestamp  BIGINT,
        created_at       TIMESTAMPTZ DEFAULT now(),
        PRIMARY KEY (transaction_hash, log_index)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS token_ownership (
        token_id          NUMERIC(78, 0) PRIMARY KEY,
        owner_address     TEXT NOT NULL,
        block_number      BIGINT NOT NULL,
        transaction_index INT NOT NULL,
        log_index         INT NOT NULL,
        updated_at        TIMESTAMPTZ DEFAULT now()
    )
    """,
)


def _row_to_record(row: dict[str, Any]) -> InvoiceLifecycleRecord:
    data = dict(row)
    for col in _JSON_COLUMNS:
        if isinstance(data.get(col), str):
            data[col] = json.loads(data[col])
    return InvoiceLifecycleRecord.from_dict(data)


def _record_params(record: InvoiceLifecycleRecord) -> list[Any]:
    data = record.to_dict()
    params: list[Any] = []
    for col in _RECORD_COLUMNS:
        value = data[col]
        if col in _JSON_COLUMNS:
            value = json.dumps(value) if value is not None else None
        params.append(value)
    return params


def _row_to_ledger(row: dict[str, Any]) -> LedgerEntry:
    recorded_at = row.get("recorded_at")
    return LedgerEntry(
        transaction_hash=row["transaction_hash"],
        log_index=row["log_index"],
        provider=row["provider"],
        event_name=row["event_name"],
        block_number=row["block_number"],
        outcome=AppliedOutcome(row["outcome"]),
        invoice_id=row.get("invoice_id"),
        detail=row.get("detail") or "",
        recorded_at=recorded_at.timestamp() if hasattr(recorded_at, "timestamp") else 0.0,
    )


class _PostgresTransaction:
    """Statements issued on one open, non-autocommit connection."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def insert_applied_event_if_absent(self, entry: LedgerEntry) -> bool:
        row = self._conn.execute(
            """INSERT INTO applied_event_ledger
               (transaction_hash, log_index, provider, event_name, block_number,
                outcome, invoice_id, detail)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
               ON CONFLICT (transaction_hash, log_index) DO NOTHING
               RETURNING transaction_hash""",
            (
                entry.transaction_hash,
                entry.log_index,
                entry.provider,
                entry.event_name,
                entry.block_number,
                entry.outcome.value,
                entry.invoice_id,
                entry.detail,
            ),
        ).fetchone()
        return row is not None

    def set_applied_event_outcome(
        self, key: EventKey, outcome: AppliedOutcome, invoice_id: str | None, detail: str = ""
    ) -> None:
        self._conn.execute(
            """UPDATE applied_event_ledger
               SET outcome = %s, invoice_id = %s, detail = %s
               WHERE transaction_hash = %s AND log_index = %s""",
            (outcome.value, invoice_id, detail, key.transaction_hash, key.log_index),
        )

    def _select_one(self, where: str, params: tuple) -> InvoiceLifecycleRecord | None:
        row = self._conn.execute(
            f"SELECT * FROM invoice_lifecycle WHERE {where} FOR UPDATE",
            params,
        ).fetchone()
        return _row_to_record(row) if row else None

    def get_lifecycle_record(
        self, *, invoice_id: str | None = None, token_id: int | None = None
    ) -> InvoiceLifecycleRecord | None:
        if invoice_id is not None:
            return self._select_one("invoice_id = %s", (invoice_id,))
        if token_id is not None:
            return self._select_one("token_id = %s", (token_id,))
        return None

    def find_mint_target(
        self, *, token_id: int, mint_tx_hash: str, issuer_address: str | None
    ) -> InvoiceLifecycleRecord | None:
        record = self._select_one("token_id = %s", (token_id,))
        if record is None:
            record = self._select_one("mint_tx_hash = %s", (mint_tx_hash,))
        if record is None and issuer_address:
            record = self._select_one(
                """invoice_id = (
                       SELECT invoice_id FROM invoice_lifecycle
                       WHERE token_id IS NULL
                         AND lifecycle_status = 'DRAFT'
                         AND lower(issuer_address) = %s
                       ORDER BY created_at DESC
                       LIMIT 1
                   )""",
                (issuer_address.lower(),),
            )
        return record

    def upsert_lifecycle_record(
        self, record: InvoiceLifecycleRecord, expected_prior_event: EventPosition | None
    ) -> None:
        columns = ", ".join(_RECORD_COLUMNS)
        placeholders = ", ".join("%s" for _ in _RECORD_COLUMNS)
        updates = ", ".join(
            f"{col} = EXCLUDED.{col}" for col in _RECORD_COLUMNS if col != "invoice_id"
        )
        expected = json.dumps(expected_prior_event.to_list()) if expected_prior_event else None
        row = self._conn.execute(
            f"""INSERT INTO invoice_lifecycle ({columns})
                VALUES ({placeholders})
                ON CONFLICT (invoice_id) DO UPDATE
                SET {updates}, updated_at = now()
                WHERE invoice_lifecycle.last_applied_event IS NOT DISTINCT FROM %s::jsonb
                RETURNING invoice_id""",
            (*_record_params(record), expected),
        ).fetchone()
        if row is None:
            raise ConcurrentModificationError(
                f"Record {record.invoice_id} changed since {expected_prior_event}"
            )

    def record_transaction(self, tx: ChainTransaction) -> None:
        self._conn.execute(
            """INSERT INTO chain_transaction
               (transaction_hash, log_index, invoice_id, token_id, kind,
                amount_cents, counterparty, block_number, block_timestamp)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
               ON CONFLICT (transaction_hash, log_index) DO NOTHING""",
            (
                tx.transaction_hash,
                tx.log_index,
                tx.invoice_id,
                tx.token_id,
                tx.kind.value,
                tx.amount_cents,
                tx.counterparty,
                tx.block_number,
                tx.block_timestamp,
            ),
        )

    def record_ownership(self, token_id: int, owner: str, position: EventPosition) -> None:
        self._conn.execute(
            """INSERT INTO token_ownership
               (token_id, owner_address, block_number, transaction_index, log_index)
               VALUES (%s, %s, %s, %s, %s)
               ON CONFLICT (token_id) DO UPDATE
               SET owner_address = EXCLUDED.owner_address,
                   block_number = EXCLUDED.block_number,
                   transaction_index = EXCLUDED.transaction_index,
                   log_index = EXCLUDED.log_index,
                   updated_at = now()
               WHERE (token_ownership.block_number, token_ownership.transaction_index,
                      token_ownership.log_index)
                   < (EXCLUDED.block_number, EXCLUDED.transaction_index, EXCLUDED.log_index)""",
            (token_id, owner, *position),
        )

    def get_owner(self, token_id: int) -> str | None:
        row = self._conn.execute(
            "SELECT owner_address FROM token_ownership WHERE token_id = %s", (token_id,)
        ).fetchone()
        return row["owner_address"] if row else None


class PostgresLifecycleStore:
    """psycopg 3 implementation of ``LifecycleStore``."""

    def __init__(self, settings: Settings) -> None:
        self._dsn = settings.database_url
        self._connect_timeout = settings.db_connect_timeout_s
        self._statement_timeout_ms = settings.db_statement_timeout_ms

    def _get_conn(self, autocommit: bool = False) -> psycopg.Connection:
        try:
            return psycopg.connect(
                self._dsn,
                autocommit=autocommit,
                row_factory=dict_row,
                connect_timeout=self._connect_timeout,
            )
        except psycopg.OperationalError as exc:
            raise StoreUnavailableError(f"Cannot connect to lifecycle database: {exc}") from exc

    def init_tables(self) -> None:
        """Create lifecycle tables if they don't exist.  Idempotent."""
        with self._get_conn(autocommit=True) as conn:
            for statement in _DDL:
                conn.execute(statement)
        logger.info("Invoice lifecycle tables initialized")

    @contextmanager
    def transaction(self) -> Iterator[_PostgresTransaction]:
        conn = self._get_conn()
        try:
            with conn:
                conn.execute(
                    "SELECT set_config('statement_timeout', %s, true)",
                    (str(self._statement_timeout_ms),),
                )
                yield _PostgresTransaction(conn)
        except psycopg.OperationalError as exc:
            # Includes QueryCanceled raised by statement_timeout
            raise StoreUnavailableError(f"Lifecycle database unavailable: {exc}") from exc

    # -- Read-only queries ---------------------------------------------------

    def _fetch_one(self, sql: str, params: tuple) -> dict[str, Any] | None:
        try:
            with self._get_conn(autocommit=True) as conn:
                return conn.execute(sql, params).fetchone()
        except psycopg.OperationalError as exc:
            raise StoreUnavailableError(f"Lifecycle database unavailable: {exc}") from exc

    def get_lifecycle_record(self, invoice_id: str) -> InvoiceLifecycleRecord | None:
        row = self._fetch_one(
            "SELECT * FROM invoice_lifecycle WHERE invoice_id = %s", (invoice_id,)
        )
        return _row_to_record(row) if row else None

    def get_record_by_token(self, token_id: int) -> InvoiceLifecycleRecord | None:
        row = self._fetch_one("SELECT * FROM invoice_lifecycle WHERE token_id = %s", (token_id,))
        return _row_to_record(row) if row else None

    def get_applied_event(self, key: EventKey) -> LedgerEntry | None:
        row = self._fetch_one(
            """SELECT * FROM applied_event_ledger
               WHERE transaction_hash = %s AND log_index = %s""",
            (key.transaction_hash, key.log_index),
        )
        return _row_to_ledger(row) if row else None
