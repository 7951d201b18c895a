"""Provider payload normalization: native envelopes to ``CanonicalEvent``.

Each provider gets a strategy object implementing ``Normalizer``. The
strategies never assume one event per delivery: an Alchemy block carries a
``logs`` array, an Alchemy activity payload carries an ``activity`` array
(each entry optionally embedding one log), and a node's ``eth_getLogs``
result is a plain list. A structurally valid payload with no relevant logs
normalizes to an empty list.

Contract:
- Structural problems with the envelope raise ``MalformedPayloadError``
- A single undecodable log is logged and skipped; its siblings still emit
- Unknown signatures emit ``EventName.UNKNOWN`` events (routing ignores them)
- Logs flagged ``removed`` (chain reorg) are dropped
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from invoice_sync.config import Settings
from invoice_sync.exceptions import MalformedPayloadError, UnknownProviderError
from invoice_sync.webhooks.abi import (
    LogDecodingError,
    decode_log,
    decode_named_fields,
    parse_int,
)
from invoice_sync.webhooks.models import CanonicalEvent, EventName, Provider

logger = logging.getLogger(__name__)


@runtime_checkable
class Normalizer(Protocol):
    """Strategy turning one provider's payload into canonical events."""

    provider: Provider

    def normalize(self, payload: Any) -> list[CanonicalEvent]:
        """Return every canonical event carried by *payload*."""
        ...


def _network_name(raw: Any, default: str) -> str:
    """BASE_SEPOLIA -> base-sepolia."""
    if not raw:
        return default
    return str(raw).strip().lower().replace("_", "-")


def _parse_timestamp(value: Any) -> int | None:
    """Epoch seconds from an int, hex/decimal string, or ISO-8601 string."""
    if value in (None, ""):
        return None
    try:
        return parse_int(value)
    except ValueError:
        pass
    try:
        return int(datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp())
    except ValueError:
        logger.debug("Unparseable block timestamp %r", value)
        return None


def _require(mapping: Any, key: str, kind: type | tuple[type, ...], where: str) -> Any:
    if not isinstance(mapping, dict):
        raise MalformedPayloadError(f"{where} is not an object")
    value = mapping.get(key)
    if not isinstance(value, kind):
        raise MalformedPayloadError(f"{where}.{key} missing or invalid")
    return value


class _LogNormalizerBase:
    """Shared raw-log to canonical-event conversion."""

    provider: Provider

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._contracts = set(settings.contract_addresses)

    def _is_watched(self, address: str) -> bool:
        return not self._contracts or address in self._contracts

    def _event_from_log(
        self,
        log: dict[str, Any],
        *,
        network: str,
        block_number: Any,
        block_hash: Any,
        block_timestamp: int | None,
        transaction_hash: Any,
        transaction_index: Any,
        received_at: float,
    ) -> CanonicalEvent | None:
        if log.get("removed"):
            logger.warning(
                "Dropping removed (reorged) log tx=%s log=%s",
                transaction_hash,
                log.get("logIndex", log.get("index")),
            )
            return None

        address = log.get("address")
        if address is None and isinstance(log.get("account"), dict):
            address = log["account"].get("address")
        topics = log.get("topics")
        if not isinstance(address, str) or not isinstance(topics, list):
            raise MalformedPayloadError("log entry missing address or topics")
        address = address.lower()
        if not self._is_watched(address):
            logger.debug("Skipping log from unwatched contract %s", address)
            return None

        log_index = log.get("logIndex", log.get("index"))
        try:
            tx_hash = str(transaction_hash).lower()
            position = (
                parse_int(block_number),
                parse_int(transaction_index),
                parse_int(log_index),
            )
        except (TypeError, ValueError) as exc:
            raise MalformedPayloadError(f"log entry has invalid position fields: {exc}") from exc
        if not transaction_hash:
            raise MalformedPayloadError("log entry missing transaction hash")

        try:
            event_name, fields = decode_log([str(t) for t in topics], log.get("data") or "0x")
        except LogDecodingError:
            logger.error(
                "Undecodable log skipped: provider=%s tx=%s log=%s",
                self.provider.value,
                tx_hash,
                position[2],
                exc_info=True,
            )
            return None

        return CanonicalEvent(
            provider=self.provider,
            event_name=event_name,
            network=network,
            block_number=position[0],
            block_hash=str(block_hash or ""),
            block_timestamp=block_timestamp,
            transaction_hash=tx_hash,
            transaction_index=position[1],
            log_index=position[2],
            contract_address=address,
            decoded_fields=fields,
            received_at=received_at,
        )


class AlchemyNormalizer(_LogNormalizerBase):
    """Alchemy Notify payloads: GRAPHQL block logs and address/NFT activity."""

    provider = Provider.ALCHEMY

    _ACTIVITY_TYPES = {"ADDRESS_ACTIVITY", "NFT_ACTIVITY"}

    def normalize(self, payload: Any) -> list[CanonicalEvent]:
        _require(payload, "webhookId", str, "payload")
        _require(payload, "id", str, "payload")
        payload_type = _require(payload, "type", str, "payload")
        event = _require(payload, "event", dict, "payload")
        network = _network_name(event.get("network"), self._settings.network)
        received_at = time.time()

        if payload_type == "GRAPHQL":
            return self._normalize_block(event, network, received_at)
        if payload_type in self._ACTIVITY_TYPES:
            return self._normalize_activity(event, network, received_at)

        logger.info("Ignoring Alchemy payload type %s", payload_type)
        return []

    def _normalize_block(
        self, event: dict[str, Any], network: str, received_at: float
    ) -> list[CanonicalEvent]:
        data = _require(event, "data", dict, "event")
        block = _require(data, "block", dict, "event.data")
        logs = _require(block, "logs", list, "event.data.block")
        timestamp = _parse_timestamp(block.get("timestamp"))

        events: list[CanonicalEvent] = []
        for log in logs:
            if not isinstance(log, dict):
                raise MalformedPayloadError("event.data.block.logs entry is not an object")
            tx = log.get("transaction") if isinstance(log.get("transaction"), dict) else {}
            canonical = self._event_from_log(
                log,
                network=network,
                block_number=block.get("number"),
                block_hash=block.get("hash"),
                block_timestamp=timestamp,
                transaction_hash=log.get("transactionHash") or tx.get("hash"),
                transaction_index=log.get("transactionIndex", tx.get("index")),
                received_at=received_at,
            )
            if canonical is not None:
                events.append(canonical)
        return events

    def _normalize_activity(
        self, event: dict[str, Any], network: str, received_at: float
    ) -> list[CanonicalEvent]:
        activities = _require(event, "activity", list, "event")

        events: list[CanonicalEvent] = []
        for activity in activities:
            if not isinstance(activity, dict):
                raise MalformedPayloadError("event.activity entry is not an object")
            log = activity.get("log")
            if not isinstance(log, dict):
                # Plain value transfers carry no log; nothing to sync.
                continue
            canonical = self._event_from_log(
                log,
                network=network,
                block_number=activity.get("blockNum", log.get("blockNumber")),
                block_hash=log.get("blockHash"),
                block_timestamp=_parse_timestamp(activity.get("blockTimestamp")),
                transaction_hash=activity.get("hash") or log.get("transactionHash"),
                transaction_index=log.get("transactionIndex"),
                received_at=received_at,
            )
            if canonical is not None:
                events.append(canonical)
        return events


class CdpNormalizer:
    """Coinbase CDP envelopes: one pre-decoded contract event per delivery."""

    provider = Provider.CDP

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def normalize(self, payload: Any) -> list[CanonicalEvent]:
        _require(payload, "id", str, "payload")
        payload_type = _require(payload, "type", str, "payload")
        data = _require(payload, "data", dict, "payload")
        tx_hash = _require(data, "transaction_hash", str, "data")

        name = data.get("event_name") or payload_type
        event_data = data.get("event_data") or {}
        if not isinstance(event_data, dict):
            raise MalformedPayloadError("CDP data.event_data must be an object")
        fields = dict(event_data)
        # ERC-721 transfer notifications put the parties at the top level.
        fields.setdefault("from", data.get("from_address"))
        fields.setdefault("to", data.get("to_address"))
        fields.setdefault("tokenId", data.get("token_id"))

        try:
            event_name, decoded = decode_named_fields(name, fields)
        except LogDecodingError:
            logger.error("Undecodable CDP event %s tx=%s", name, tx_hash, exc_info=True)
            return []

        try:
            event = CanonicalEvent(
                provider=self.provider,
                event_name=event_name,
                network=_network_name(data.get("network_id"), self._settings.network),
                block_number=parse_int(data.get("block_height")),
                block_hash=str(data.get("block_hash") or ""),
                block_timestamp=_parse_timestamp(data.get("block_timestamp")),
                transaction_hash=tx_hash.lower(),
                transaction_index=parse_int(data.get("transaction_index", 0)),
                log_index=parse_int(data.get("log_index")),
                contract_address=str(data.get("contract_address") or "").lower(),
                decoded_fields=decoded,
            )
        except ValueError as exc:
            raise MalformedPayloadError(f"CDP data has invalid position fields: {exc}") from exc
        return [event]


class RpcLogNormalizer(_LogNormalizerBase):
    """Raw ``eth_getLogs`` entries read during reconciliation."""

    provider = Provider.RPC

    def normalize(self, payload: Any) -> list[CanonicalEvent]:
        if not isinstance(payload, list):
            raise MalformedPayloadError("RPC payload must be a list of logs")
        received_at = time.time()
        events: list[CanonicalEvent] = []
        for log in payload:
            if not isinstance(log, dict):
                raise MalformedPayloadError("RPC log entry is not an object")
            canonical = self._event_from_log(
                log,
                network=self._settings.network,
                block_number=log.get("blockNumber"),
                block_hash=log.get("blockHash"),
                block_timestamp=_parse_timestamp(log.get("blockTimestamp")),
                transaction_hash=log.get("transactionHash"),
                transaction_index=log.get("transactionIndex"),
                received_at=received_at,
            )
            if canonical is not None:
                events.append(canonical)
        return events


_NORMALIZERS: dict[Provider, type] = {
    Provider.ALCHEMY: AlchemyNormalizer,
    Provider.CDP: CdpNormalizer,
    Provider.RPC: RpcLogNormalizer,
}

_missing = set(Provider) - set(_NORMALIZERS)
if _missing:  # pragma: no cover - guards enum additions
    raise RuntimeError(f"No normalizer for providers: {sorted(p.value for p in _missing)}")


def get_normalizer(provider: Provider | str, settings: Settings) -> Normalizer:
    """Build the normalizer strategy for *provider*."""
    try:
        key = Provider(provider)
    except ValueError as exc:
        raise UnknownProviderError(f"Unknown provider: {provider}") from exc
    return _NORMALIZERS[key](settings)


def normalize(
    provider: Provider | str, raw_payload: bytes | str | Any, settings: Settings
) -> list[CanonicalEvent]:
    """Parse (if needed) and normalize a provider payload.

    Raises:
        UnknownProviderError: *provider* has no strategy.
        MalformedPayloadError: body is not JSON or fails structural checks.
    """
    normalizer = get_normalizer(provider, settings)
    payload = raw_payload
    if isinstance(raw_payload, (bytes, bytearray, str)):
        try:
            payload = json.loads(raw_payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise MalformedPayloadError(f"Body is not valid JSON: {exc}") from exc
    events = normalizer.normalize(payload)
    relevant = sum(1 for e in events if e.event_name is not EventName.UNKNOWN)
    logger.debug(
        "Normalized %s payload: %d events (%d relevant)",
        normalizer.provider.value,
        len(events),
        relevant,
    )
    return events
