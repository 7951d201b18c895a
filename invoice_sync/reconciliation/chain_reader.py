"""Chain reader: raw protocol logs straight from an Ethereum JSON-RPC node.

Used only by reconciliation. Logs come back in the ``eth_getLogs`` shape,
enriched with ``blockTimestamp`` (one ``eth_getBlockByNumber`` per distinct
block, cached) so the RPC normalizer produces the same canonical events a
webhook would have.
"""

from __future__ import annotations

import itertools
import logging
from collections import OrderedDict
from typing import Any, Protocol, runtime_checkable

import httpx

from invoice_sync.config import Settings
from invoice_sync.exceptions import BlockRangeTooLargeError, ChainReaderError
from invoice_sync.retry import retry_with_backoff
from invoice_sync.webhooks.abi import parse_int

logger = logging.getLogger(__name__)

# One raw eth_getLogs entry (hex-encoded numbers, lower/mixed-case hex strings)
RawLog = dict[str, Any]

_BLOCK_CACHE_SIZE = 2_048

# Provider error messages that mean "ask for fewer blocks"
_RANGE_ERROR_MARKERS = (
    "block range",
    "range is too large",
    "exceed maximum block range",
    "query returned more than",
)


@runtime_checkable
class ChainReader(Protocol):
    """Read-only access to protocol logs on chain."""

    def get_logs(self, from_block: int, to_block: int, addresses: list[str]) -> list[RawLog]:
        """Return logs emitted by *addresses* in ``[from_block, to_block]``.

        Raises:
            BlockRangeTooLargeError: provider refused the range.
            ChainReaderError: any other RPC failure.
        """
        ...

    def get_block_number(self) -> int:
        ...


def _is_range_error(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _RANGE_ERROR_MARKERS)


class JsonRpcChainReader:
    """``ChainReader`` over plain JSON-RPC with httpx."""

    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        self._url = settings.rpc_url
        self._client = client or httpx.Client(timeout=settings.rpc_timeout_s)
        self._ids = itertools.count(1)
        self._block_timestamps: OrderedDict[int, int] = OrderedDict()

    def close(self) -> None:
        self._client.close()

    @retry_with_backoff(max_retries=3, base_delay=0.5, max_delay=10.0)
    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        response = self._client.post(self._url, json=payload)
        response.raise_for_status()
        return response.json()

    def _call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            body = self._post(payload)
        except httpx.HTTPError as exc:
            raise ChainReaderError(f"{method} failed: {exc}") from exc
        except ValueError as exc:
            raise ChainReaderError(f"{method} returned invalid JSON: {exc}") from exc

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            message = str(error.get("message", error)) if isinstance(error, dict) else str(error)
            if _is_range_error(message):
                raise BlockRangeTooLargeError(message)
            raise ChainReaderError(f"{method} error: {message}")
        if not isinstance(body, dict) or "result" not in body:
            raise ChainReaderError(f"{method} returned no result")
        return body["result"]

    def get_block_number(self) -> int:
        return parse_int(self._call("eth_blockNumber", []))

    def get_block_timestamp(self, block_number: int) -> int | None:
        if block_number in self._block_timestamps:
            self._block_timestamps.move_to_end(block_number)
            return self._block_timestamps[block_number]
        block = self._call("eth_getBlockByNumber", [hex(block_number), False])
        if not block:
            return None
        timestamp = parse_int(block["timestamp"])
        self._block_timestamps[block_number] = timestamp
        if len(self._block_timestamps) > _BLOCK_CACHE_SIZE:
            self._block_timestamps.popitem(last=False)
        return timestamp

    def get_logs(self, from_block: int, to_block: int, addresses: list[str]) -> list[RawLog]:
        params: dict[str, Any] = {"fromBlock": hex(from_block), "toBlock": hex(to_block)}
        if addresses:
            params["address"] = addresses
        logs = self._call("eth_getLogs", [params]) or []
        for log in logs:
            block_number = log.get("blockNumber")
            if block_number is not None and "blockTimestamp" not in log:
                log["blockTimestamp"] = self.get_block_timestamp(parse_int(block_number))
        logger.debug("eth_getLogs %d-%d returned %d logs", from_block, to_block, len(logs))
        return logs
