"""
Tests for the cross-chain message wire codec.
"""
import struct
from dataclasses import replace

import pytest

from crossify.codec import (
    MSG_TYPE_PRICE_UPDATE,
    LiquidityUpdateMessage,
    PriceUpdateMessage,
    TokenCreationMessage,
    decode,
    encode,
    message_id,
    message_kind,
    peek_type,
    stamp,
)
from crossify.errors import InvalidParameter, MalformedMessage, UnknownMessageType


@pytest.fixture
def creation():
    return TokenCreationMessage(
        token_id=(1 << 48) | 3,
        name="Crossify Token",
        symbol="CRX",
        decimals=9,
        metadata_uri="ipfs://bafy/metadata.json",
        initial_supply=1_000_000,
        curve_type=0,
        base_price=100,
        slope=2,
        reserve_ratio=0,
        timestamp=1_700_000_000,
        sequence=1,
        source_chain=1,
    )


def test_price_update_round_trip():
    message = PriceUpdateMessage(token_id=7, current_price=600, current_supply=15, timestamp=1000)
    payload = encode(message)
    assert decode(payload) == message


def test_price_update_layout():
    message = stamp(PriceUpdateMessage(7, 600, 15, 1000, version=12), sequence=9, source_chain=4)
    payload = encode(message)

    assert len(payload) == 1 + 8 * 5 + 8 + 2
    assert payload[0] == MSG_TYPE_PRICE_UPDATE
    assert struct.unpack_from('<QQQq', payload, 1) == (7, 600, 15, 1000)
    assert struct.unpack_from('<QQH', payload, 33) == (12, 9, 4)
    assert decode(payload) == message


def test_token_creation_round_trip(creation):
    assert decode(encode(creation)) == creation


def test_liquidity_update_round_trip():
    message = LiquidityUpdateMessage(
        token_id=11, liquidity_added=500, liquidity_removed=20,
        current_liquidity=480, timestamp=-5, sequence=3, source_chain=2,
    )
    assert decode(encode(message)) == message


def test_unicode_strings(creation):
    message = replace(creation, name="Jeton \u00e9 \u2603")
    assert decode(encode(message)).name == "Jeton \u00e9 \u2603"


def test_empty_payload():
    with pytest.raises(MalformedMessage):
        decode(b'')


def test_truncated_payload():
    payload = encode(PriceUpdateMessage(7, 600, 15, 1000))
    for cut in (1, 10, len(payload) - 1):
        with pytest.raises(MalformedMessage):
            decode(payload[:cut])


def test_trailing_bytes():
    payload = encode(PriceUpdateMessage(7, 600, 15, 1000))
    with pytest.raises(MalformedMessage):
        decode(payload + b'\x00')


def test_unknown_type():
    payload = encode(PriceUpdateMessage(7, 600, 15, 1000))
    with pytest.raises(UnknownMessageType):
        decode(b'\x09' + payload[1:])


def test_oversized_string_length(creation):
    payload = bytearray(encode(creation))
    # name length prefix sits right after the type byte and token id
    struct.pack_into('<I', payload, 9, 10_000_000)
    with pytest.raises(MalformedMessage):
        decode(bytes(payload))


def test_invalid_utf8(creation):
    payload = bytearray(encode(creation))
    payload[13] = 0xff
    with pytest.raises(MalformedMessage) as exc:
        decode(bytes(payload))
    assert exc.value.field == 'name'


@pytest.mark.parametrize("field, value", [
    ('current_price', -1),
    ('current_price', 2 ** 64),
    ('timestamp', 2 ** 63),
    ('source_chain', 2 ** 16),
    ('token_id', "7"),
])
def test_encode_rejects_out_of_range(field, value):
    base = {'token_id': 7, 'current_price': 600, 'current_supply': 15, 'timestamp': 1000}
    message = PriceUpdateMessage(**{**base, field: value})
    with pytest.raises(InvalidParameter) as exc:
        encode(message)
    assert exc.value.field == field


def test_encode_rejects_wide_decimals(creation):
    message = replace(creation, decimals=256)
    with pytest.raises(InvalidParameter):
        encode(message)


def test_stamp_returns_copy():
    message = PriceUpdateMessage(7, 600, 15, 1000)
    stamped = stamp(message, 5, 2)
    assert (stamped.sequence, stamped.source_chain) == (5, 2)
    assert (message.sequence, message.source_chain) == (0, 0)


def test_message_helpers():
    payload = encode(PriceUpdateMessage(7, 600, 15, 1000))
    assert peek_type(payload) == MSG_TYPE_PRICE_UPDATE
    assert message_kind(decode(payload)) == 'price_update'
    assert len(message_id(payload)) == 32
    assert message_id(payload) != message_id(encode(PriceUpdateMessage(7, 601, 15, 1000)))
