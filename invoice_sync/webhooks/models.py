"""Canonical event model shared by every provider strategy.

A ``CanonicalEvent`` is one on-chain log after provider-specific decoding.
``(transaction_hash, log_index)`` identifies it globally and is the only
deduplication key; ``(block_number, transaction_index, log_index)`` orders it.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, NamedTuple

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class Provider(str, Enum):
    """Sources of canonical events."""
    ALCHEMY = "alchemy"
    CDP = "cdp"
    RPC = "rpc"  # reconciliation reads straight from a node


class EventName(str, Enum):
    """Protocol events the lifecycle synchronizer understands."""
    MINTED = "Minted"
    FUNDED = "Funded"
    REPAYMENT_DEPOSITED = "RepaymentDeposited"
    SETTLED = "Settled"
    DEFAULTED = "Defaulted"
    TRANSFERRED = "Transferred"
    UNKNOWN = "Unknown"


class EventKey(NamedTuple):
    transaction_hash: str
    log_index: int


class EventPosition(NamedTuple):
    """Total order of logs on one chain."""
    block_number: int
    transaction_index: int
    log_index: int

    def to_list(self) -> list[int]:
        return [self.block_number, self.transaction_index, self.log_index]

    @classmethod
    def from_value(cls, value: Any) -> EventPosition | None:
        if value is None:
            return None
        return cls(*(int(v) for v in value))


@dataclass(frozen=True)
class CanonicalEvent:
    """Provider-agnostic representation of one relevant on-chain log."""

    provider: Provider
    event_name: EventName
    network: str
    block_number: int
    block_hash: str
    block_timestamp: int | None
    transaction_hash: str
    transaction_index: int
    log_index: int
    contract_address: str
    decoded_fields: dict[str, Any] = field(default_factory=dict)
    received_at: float = field(default_factory=time.time)

    @property
    def key(self) -> EventKey:
        return EventKey(self.transaction_hash, self.log_index)

    @property
    def position(self) -> EventPosition:
        return EventPosition(self.block_number, self.transaction_index, self.log_index)

    @property
    def token_id(self) -> int | None:
        value = self.decoded_fields.get("tokenId")
        return int(value) if value is not None else None

    def describe(self) -> str:
        """Short identifier used in log lines and replay reports."""
        return (
            f"{self.provider.value}/{self.event_name.value} "
            f"tx={self.transaction_hash} log={self.log_index}"
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON shape used for logging and reconciliation input."""
        return {
            "provider": self.provider.value,
            "eventName": self.event_name.value,
            "network": self.network,
            "blockNumber": self.block_number,
            "blockHash": self.block_hash,
            "blockTimestamp": self.block_timestamp,
            "transactionHash": self.transaction_hash,
            "transactionIndex": self.transaction_index,
            "logIndex": self.log_index,
            "contractAddress": self.contract_address,
            "decodedFields": dict(self.decoded_fields),
            "receivedAt": self.received_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CanonicalEvent:
        return cls(
            provider=Provider(data["provider"]),
            event_name=EventName(data["eventName"]),
            network=data.get("network", ""),
            block_number=int(data["blockNumber"]),
            block_hash=data.get("blockHash", ""),
            block_timestamp=data.get("blockTimestamp"),
            transaction_hash=str(data["transactionHash"]).lower(),
            transaction_index=int(data.get("transactionIndex", 0)),
            log_index=int(data["logIndex"]),
            contract_address=str(data.get("contractAddress", "")).lower(),
            decoded_fields=dict(data.get("decodedFields") or {}),
            received_at=float(data.get("receivedAt") or time.time()),
        )
