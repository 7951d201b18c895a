"""Builders for settings, raw logs, provider payloads, and canonical events."""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

from eth_abi import encode as abi_encode

from invoice_sync.config import Settings
from invoice_sync.webhooks.abi import EVENTS_BY_NAME
from invoice_sync.webhooks.models import ZERO_ADDRESS, CanonicalEvent, EventName, Provider

ALCHEMY_SECRET = "alchemy-test-secret"
CDP_SECRET = "cdp-test-secret"

INVOICE_CONTRACT = "0x" + "ab" * 20
POOL_CONTRACT = "0x" + "cd" * 20
ISSUER = "0x" + "11" * 20
INVESTOR = "0x" + "22" * 20
BUYER = "0x" + "33" * 20

BASE_TS = 1_700_000_000
DAY = 86_400
DUE_AT = BASE_TS + 90 * DAY
APR_12_PERCENT = 120_000


def usdc(cents: int) -> int:
    """Cents to 6-decimal stablecoin base units."""
    return cents * 10**4


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "store_backend": "memory",
        "alchemy_signing_key": ALCHEMY_SECRET,
        "cdp_signing_key": CDP_SECRET,
        "invoice_contract_address": INVOICE_CONTRACT,
        "funding_pool_contract_address": POOL_CONTRACT,
        "process_inline": True,
        "processing_retry_base_delay_s": 0.01,
        "backfill_chunk_delay_s": 0.0,
        "polling_enabled": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def tx_hash(n: int) -> str:
    return "0x" + format(n, "064x")


# ── Canonical events ─────────────────────────────────────────────────────


def make_event(
    event_name: EventName,
    token_id: int | None,
    *,
    block: int,
    tx_index: int = 0,
    log_index: int = 0,
    tx: str | None = None,
    provider: Provider = Provider.ALCHEMY,
    contract: str = INVOICE_CONTRACT,
    **fields: Any,
) -> CanonicalEvent:
    decoded = dict(fields)
    if token_id is not None:
        decoded["tokenId"] = token_id
    return CanonicalEvent(
        provider=provider,
        event_name=event_name,
        network="base-sepolia",
        block_number=block,
        block_hash="0x" + format(block, "064x"),
        block_timestamp=BASE_TS + block * 2,
        transaction_hash=tx or tx_hash(block * 1_000 + tx_index),
        transaction_index=tx_index,
        log_index=log_index,
        contract_address=contract,
        decoded_fields=decoded,
        received_at=0.0,
    )


def minted(token_id: int, block: int, *, target_cents: int = 1_000_000, **kw: Any) -> CanonicalEvent:
    return make_event(
        EventName.MINTED,
        token_id,
        block=block,
        issuer=ISSUER,
        amount=usdc(target_cents),
        dueAt=DUE_AT,
        apr=APR_12_PERCENT,
        **kw,
    )


def funded(token_id: int, block: int, cents: int, **kw: Any) -> CanonicalEvent:
    return make_event(
        EventName.FUNDED,
        token_id,
        block=block,
        contract=POOL_CONTRACT,
        investor=INVESTOR,
        amount=usdc(cents),
        fundedAt=BASE_TS,
        **kw,
    )


def repaid(token_id: int, block: int, cents: int, **kw: Any) -> CanonicalEvent:
    return make_event(
        EventName.REPAYMENT_DEPOSITED,
        token_id,
        block=block,
        contract=POOL_CONTRACT,
        amount=usdc(cents),
        depositedBy=ISSUER,
        depositedAt=BASE_TS + 60 * DAY,
        **kw,
    )


def settled(token_id: int, block: int, principal: int, yield_cents: int, **kw: Any) -> CanonicalEvent:
    return make_event(
        EventName.SETTLED,
        token_id,
        block=block,
        contract=POOL_CONTRACT,
        investor=INVESTOR,
        principal=usdc(principal),
        totalAmount=usdc(principal + yield_cents),
        settledAt=BASE_TS + 61 * DAY,
        **{"yield": usdc(yield_cents)},
        **kw,
    )


def defaulted(token_id: int, block: int, principal: int, **kw: Any) -> CanonicalEvent:
    return make_event(
        EventName.DEFAULTED,
        token_id,
        block=block,
        contract=POOL_CONTRACT,
        investor=INVESTOR,
        principal=usdc(principal),
        defaultedAt=BASE_TS + 120 * DAY,
        **kw,
    )


def transferred(token_id: int, block: int, sender: str, recipient: str, **kw: Any) -> CanonicalEvent:
    return make_event(EventName.TRANSFERRED, token_id, block=block, to=recipient, **{"from": sender}, **kw)


# ── Raw logs (eth_getLogs shape) ─────────────────────────────────────────


def _topic_for(value: Any, abi_type: str) -> str:
    if abi_type == "address":
        return "0x" + "0" * 24 + value[2:].lower()
    return "0x" + format(int(value), "064x")


def raw_log(
    solidity_name: str,
    *,
    block: int,
    tx_index: int = 0,
    log_index: int = 0,
    tx: str | None = None,
    address: str = INVOICE_CONTRACT,
    **values: Any,
) -> dict[str, Any]:
    """Encode a protocol event the way a node returns it from eth_getLogs."""
    abi = EVENTS_BY_NAME[solidity_name]
    topics = [abi.topic] + [_topic_for(values[i.name], i.type) for i in abi.indexed_inputs]
    data_inputs = abi.data_inputs
    data = abi_encode([i.type for i in data_inputs], [values[i.name] for i in data_inputs])
    return {
        "address": address,
        "topics": topics,
        "data": "0x" + data.hex(),
        "blockNumber": hex(block),
        "blockHash": "0x" + format(block, "064x"),
        "blockTimestamp": hex(BASE_TS + block * 2),
        "transactionHash": tx or tx_hash(block * 1_000 + tx_index),
        "transactionIndex": hex(tx_index),
        "logIndex": hex(log_index),
        "removed": False,
    }


def minted_log(token_id: int, block: int, target_cents: int = 1_000_000, **kw: Any) -> dict[str, Any]:
    return raw_log(
        "InvoiceMinted",
        block=block,
        tokenId=token_id,
        issuer=ISSUER,
        amount=usdc(target_cents),
        dueAt=DUE_AT,
        apr=APR_12_PERCENT,
        **kw,
    )


def funded_log(token_id: int, block: int, cents: int, **kw: Any) -> dict[str, Any]:
    return raw_log(
        "InvoiceFunded",
        block=block,
        address=POOL_CONTRACT,
        tokenId=token_id,
        investor=INVESTOR,
        amount=usdc(cents),
        fundedAt=BASE_TS,
        **kw,
    )


def mint_transfer_log(token_id: int, block: int, recipient: str = ISSUER, **kw: Any) -> dict[str, Any]:
    return raw_log("Transfer", block=block, tokenId=token_id, to=recipient, **{"from": ZERO_ADDRESS}, **kw)


# ── Provider envelopes ───────────────────────────────────────────────────


def alchemy_graphql_payload(logs: list[dict[str, Any]], block: int = 100) -> dict[str, Any]:
    """Alchemy custom-webhook (GRAPHQL) delivery carrying *logs* from one block."""
    return {
        "webhookId": "wh_octjglnywaupz6th",
        "id": "whevt_ogrc5v64myey69ux",
        "createdAt": "2026-01-15T12:00:00.000Z",
        "type": "GRAPHQL",
        "event": {
            "data": {
                "block": {
                    "number": block,
                    "hash": "0x" + format(block, "064x"),
                    "timestamp": BASE_TS + block * 2,
                    "logs": [
                        {
                            "data": log["data"],
                            "topics": log["topics"],
                            "index": int(log["logIndex"], 16),
                            "account": {"address": log["address"]},
                            "transaction": {
                                "hash": log["transactionHash"],
                                "index": int(log["transactionIndex"], 16),
                            },
                        }
                        for log in logs
                    ],
                }
            },
            "sequenceNumber": "10000000000578619000",
            "network": "BASE_SEPOLIA",
        },
    }


def cdp_payload(
    event_name: str,
    event_data: dict[str, Any],
    *,
    block: int = 100,
    log_index: int = 0,
    tx: str | None = None,
) -> dict[str, Any]:
    """Coinbase CDP smart-contract event delivery."""
    return {
        "id": "evt_" + format(block * 100 + log_index, "x"),
        "type": "smart_contract_event",
        "data": {
            "network_id": "base-sepolia",
            "block_height": block,
            "block_hash": "0x" + format(block, "064x"),
            "block_timestamp": "2023-11-14T22:13:20Z",
            "transaction_hash": tx or tx_hash(block * 1_000),
            "transaction_index": 0,
            "log_index": log_index,
            "contract_address": POOL_CONTRACT,
            "event_name": event_name,
            "event_data": event_data,
        },
    }


def body_of(payload: Any) -> bytes:
    return json.dumps(payload).encode()
