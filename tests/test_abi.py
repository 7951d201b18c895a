"""Tests for protocol event ABI decoding."""

from __future__ import annotations

import pytest

from helpers import (
    APR_12_PERCENT,
    DUE_AT,
    INVESTOR,
    ISSUER,
    funded_log,
    mint_transfer_log,
    minted_log,
    usdc,
)
from invoice_sync.exceptions import MalformedPayloadError
from invoice_sync.webhooks.abi import (
    EVENT_SIGNATURES,
    EVENTS_BY_NAME,
    LogDecodingError,
    decode_log,
    decode_named_fields,
    parse_int,
    unpad_address,
)
from invoice_sync.webhooks.models import ZERO_ADDRESS, EventName

ERC721_TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


class TestSignatures:
    def test_transfer_topic_matches_erc721(self):
        assert EVENTS_BY_NAME["Transfer"].topic == ERC721_TRANSFER_TOPIC

    def test_every_event_has_unique_topic(self):
        assert len(EVENT_SIGNATURES) == 6

    def test_signature_text(self):
        assert EVENTS_BY_NAME["InvoiceFunded"].signature == (
            "InvoiceFunded(uint256,address,uint256,uint256)"
        )

    def test_aliases(self):
        assert EVENTS_BY_NAME["InvoiceRepaid"].event_name is EventName.SETTLED
        assert EVENTS_BY_NAME["erc721_transfer"].event_name is EventName.TRANSFERRED


class TestPrimitives:
    @pytest.mark.parametrize(
        "value, expected",
        [(26, 26), ("0x1a", 26), ("0X1A", 26), ("26", 26), (" 7 ", 7)],
    )
    def test_parse_int(self, value, expected):
        assert parse_int(value) == expected

    @pytest.mark.parametrize("value", [None, True, "abc", 1.5, "0xzz"])
    def test_parse_int_rejects(self, value):
        with pytest.raises(ValueError):
            parse_int(value)

    def test_unpad_address(self):
        topic = "0x" + "0" * 24 + ISSUER[2:].upper()
        assert unpad_address(topic) == ISSUER

    def test_unpad_address_rejects_dirty_padding(self):
        with pytest.raises(ValueError):
            unpad_address("0x" + "1" * 24 + ISSUER[2:])


class TestDecodeLog:
    def test_invoice_minted(self):
        log = minted_log(7, block=100)
        name, fields = decode_log(log["topics"], log["data"])
        assert name is EventName.MINTED
        assert fields == {
            "tokenId": 7,
            "issuer": ISSUER,
            "amount": usdc(1_000_000),
            "dueAt": DUE_AT,
            "apr": APR_12_PERCENT,
        }

    def test_invoice_funded_address_is_lowercased(self):
        log = funded_log(7, block=101, cents=600_000)
        name, fields = decode_log(log["topics"], log["data"])
        assert name is EventName.FUNDED
        assert fields["investor"] == INVESTOR
        assert fields["amount"] == usdc(600_000)

    def test_transfer_from_zero_is_mint(self):
        log = mint_transfer_log(7, block=100)
        name, fields = decode_log(log["topics"], log["data"])
        assert name is EventName.MINTED
        assert fields == {"from": ZERO_ADDRESS, "to": ISSUER, "tokenId": 7}

    def test_plain_transfer(self):
        log = mint_transfer_log(7, block=100)
        log["topics"][1] = "0x" + "0" * 24 + INVESTOR[2:]
        name, fields = decode_log(log["topics"], log["data"])
        assert name is EventName.TRANSFERRED
        assert fields["from"] == INVESTOR

    def test_erc20_transfer_is_unknown(self):
        """ERC-20 Transfer shares topic0 but carries the value in data."""
        topics = [ERC721_TRANSFER_TOPIC, "0x" + "0" * 24 + ISSUER[2:], "0x" + "0" * 24 + INVESTOR[2:]]
        name, fields = decode_log(topics, "0x" + format(5, "064x"))
        assert name is EventName.UNKNOWN
        assert fields["topicCount"] == 3

    def test_unknown_signature(self):
        name, fields = decode_log(["0x" + "ee" * 32], "0x")
        assert name is EventName.UNKNOWN
        assert fields == {"topic0": "0x" + "ee" * 32}

    def test_no_topics(self):
        name, _ = decode_log([], "0x")
        assert name is EventName.UNKNOWN

    def test_truncated_data_raises(self):
        log = minted_log(7, block=100)
        with pytest.raises(LogDecodingError):
            decode_log(log["topics"], log["data"][:40])

    def test_decoding_error_is_malformed_payload(self):
        assert issubclass(LogDecodingError, MalformedPayloadError)


class TestDecodeNamedFields:
    def test_string_numbers_are_parsed(self):
        name, fields = decode_named_fields(
            "InvoiceFunded",
            {"tokenId": "7", "investor": INVESTOR.upper().replace("0X", "0x"), "amount": "0x10"},
        )
        assert name is EventName.FUNDED
        assert fields == {"tokenId": 7, "investor": INVESTOR, "amount": 16}

    def test_alias_name(self):
        name, _ = decode_named_fields("InvoiceRepaid", {"tokenId": 1})
        assert name is EventName.SETTLED

    def test_unknown_name(self):
        assert decode_named_fields("Approval", {"tokenId": 1}) == (
            EventName.UNKNOWN,
            {"eventName": "Approval"},
        )

    def test_missing_token_id(self):
        with pytest.raises(LogDecodingError):
            decode_named_fields("InvoiceFunded", {"amount": 1})

    def test_bad_number(self):
        with pytest.raises(LogDecodingError):
            decode_named_fields("InvoiceFunded", {"tokenId": "seven"})
