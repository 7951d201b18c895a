"""Protocol event ABI: topic signatures and log decoding.

Topic hashes are derived from the ABI signatures at import time, so the
lookup table can never drift from the declared inputs. ``tokenId`` is the
first indexed input of every protocol event; the remaining inputs live in
the data blob.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak

from invoice_sync.exceptions import MalformedPayloadError
from invoice_sync.webhooks.models import ZERO_ADDRESS, EventName

logger = logging.getLogger(__name__)


class LogDecodingError(MalformedPayloadError):
    """A log matched a known signature but its topics/data did not decode."""


@dataclass(frozen=True)
class EventInput:
    name: str
    type: str
    indexed: bool = False


@dataclass(frozen=True)
class EventAbi:
    """One Solidity event and the canonical name it maps to."""

    name: str
    event_name: EventName
    inputs: tuple[EventInput, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(i.type for i in self.inputs)})"

    @property
    def topic(self) -> str:
        return "0x" + keccak(text=self.signature).hex()

    @property
    def indexed_inputs(self) -> tuple[EventInput, ...]:
        return tuple(i for i in self.inputs if i.indexed)

    @property
    def data_inputs(self) -> tuple[EventInput, ...]:
        return tuple(i for i in self.inputs if not i.indexed)


_TOKEN_ID = EventInput("tokenId", "uint256", indexed=True)

PROTOCOL_EVENTS: tuple[EventAbi, ...] = (
    EventAbi(
        "Transfer",
        EventName.TRANSFERRED,
        (
            EventInput("from", "address", indexed=True),
            EventInput("to", "address", indexed=True),
            _TOKEN_ID,
        ),
    ),
    EventAbi(
        "InvoiceMinted",
        EventName.MINTED,
        (
            _TOKEN_ID,
            EventInput("issuer", "address"),
            EventInput("amount", "uint256"),
            EventInput("dueAt", "uint256"),
            EventInput("apr", "uint256"),
        ),
    ),
    EventAbi(
        "InvoiceFunded",
        EventName.FUNDED,
        (
            _TOKEN_ID,
            EventInput("investor", "address"),
            EventInput("amount", "uint256"),
            EventInput("fundedAt", "uint256"),
        ),
    ),
    EventAbi(
        "RepaymentDeposited",
        EventName.REPAYMENT_DEPOSITED,
        (
            _TOKEN_ID,
            EventInput("amount", "uint256"),
            EventInput("depositedBy", "address"),
            EventInput("depositedAt", "uint256"),
        ),
    ),
    EventAbi(
        "InvoiceSettled",
        EventName.SETTLED,
        (
            _TOKEN_ID,
            EventInput("investor", "address"),
            EventInput("principal", "uint256"),
            EventInput("yield", "uint256"),
            EventInput("totalAmount", "uint256"),
            EventInput("settledAt", "uint256"),
        ),
    ),
    EventAbi(
        "InvoiceDefaulted",
        EventName.DEFAULTED,
        (
            _TOKEN_ID,
            EventInput("investor", "address"),
            EventInput("principal", "uint256"),
            EventInput("defaultedAt", "uint256"),
        ),
    ),
)

# topic0 -> event ABI
EVENT_SIGNATURES: dict[str, EventAbi] = {abi.topic: abi for abi in PROTOCOL_EVENTS}

# Solidity name -> event ABI (providers that ship pre-decoded events by name)
EVENTS_BY_NAME: dict[str, EventAbi] = {abi.name: abi for abi in PROTOCOL_EVENTS}
EVENTS_BY_NAME["InvoiceRepaid"] = EVENTS_BY_NAME["InvoiceSettled"]
EVENTS_BY_NAME["erc721_transfer"] = EVENTS_BY_NAME["Transfer"]


# ── Primitive decoding ───────────────────────────────────────────────────


def strip_0x(value: str) -> str:
    return value[2:] if value[:2].lower() == "0x" else value


def parse_int(value: Any) -> int:
    """Parse a hex ("0x1a") or decimal integer field.

    Raises:
        ValueError: value is not an integer in either encoding.
    """
    if isinstance(value, bool):
        raise ValueError(f"Expected integer, got bool {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text[:2].lower() == "0x":
            return int(text, 16)
        return int(text, 10)
    raise ValueError(f"Expected integer, got {type(value).__name__}")


def unpad_address(topic: str) -> str:
    """Convert a 32-byte padded topic into a 20-byte lower-case address."""
    raw = strip_0x(topic).lower()
    if len(raw) != 64:
        raise ValueError(f"Topic is not 32 bytes: {topic!r}")
    padding, address = raw[:24], raw[24:]
    if padding.strip("0"):
        raise ValueError(f"Topic has non-zero address padding: {topic!r}")
    return "0x" + address


def _decode_topic(topic: str, abi_type: str) -> Any:
    if abi_type == "address":
        return unpad_address(topic)
    if abi_type.startswith("uint"):
        return int(strip_0x(topic) or "0", 16)
    raise ValueError(f"Unsupported indexed type: {abi_type}")


def _normalize_value(value: Any, abi_type: str) -> Any:
    if abi_type == "address":
        return str(value).lower() if value is not None else None
    if abi_type.startswith("uint"):
        return parse_int(value) if value is not None else None
    return value


# ── Log decoding ─────────────────────────────────────────────────────────


def resolve_event(topics: list[str]) -> EventAbi | None:
    """Look up the event ABI for a log by its first topic."""
    if not topics:
        return None
    return EVENT_SIGNATURES.get(str(topics[0]).lower())


def decode_log(topics: list[str], data: str) -> tuple[EventName, dict[str, Any]]:
    """Decode a raw log into (canonical event name, decoded fields).

    Unknown signatures, and ERC-20 transfers that share the ERC-721
    ``Transfer`` signature but carry fewer indexed topics, decode to
    ``EventName.UNKNOWN`` with the raw topic kept for diagnostics.

    Raises:
        LogDecodingError: signature is known but topics/data are malformed.
    """
    abi = resolve_event(topics)
    if abi is None:
        return EventName.UNKNOWN, {"topic0": topics[0] if topics else None}

    indexed = abi.indexed_inputs
    if len(topics) - 1 != len(indexed):
        return EventName.UNKNOWN, {"topic0": topics[0], "topicCount": len(topics)}

    fields: dict[str, Any] = {}
    try:
        for inp, topic in zip(indexed, topics[1:]):
            fields[inp.name] = _decode_topic(topic, inp.type)
        data_inputs = abi.data_inputs
        if data_inputs:
            values = abi_decode([i.type for i in data_inputs], bytes.fromhex(strip_0x(data or "")))
            for inp, value in zip(data_inputs, values):
                fields[inp.name] = _normalize_value(value, inp.type)
    except (ValueError, DecodingError) as exc:
        raise LogDecodingError(f"Cannot decode {abi.name} log: {exc}") from exc

    return retag_mint(abi.event_name, fields), fields


def decode_named_fields(
    name: str, fields: dict[str, Any]
) -> tuple[EventName, dict[str, Any]]:
    """Normalize a provider's pre-decoded event fields by Solidity name."""
    abi = EVENTS_BY_NAME.get(name)
    if abi is None:
        return EventName.UNKNOWN, {"eventName": name}
    decoded: dict[str, Any] = {}
    try:
        for inp in abi.inputs:
            if inp.name in fields:
                decoded[inp.name] = _normalize_value(fields[inp.name], inp.type)
    except ValueError as exc:
        raise LogDecodingError(f"Cannot decode {name} fields: {exc}") from exc
    if decoded.get("tokenId") is None:
        raise LogDecodingError(f"{name} event has no tokenId")
    return retag_mint(abi.event_name, decoded), decoded


def retag_mint(event_name: EventName, fields: dict[str, Any]) -> EventName:
    """A transfer out of the zero address is a mint."""
    if event_name is EventName.TRANSFERRED and fields.get("from") == ZERO_ADDRESS:
        return EventName.MINTED
    return event_name
