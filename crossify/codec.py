"""
Wire codec for cross-chain messages.

Layout: [1-byte type][type fields][sequence u64][source_chain u16].
Numbers are little-endian and fixed width; strings are UTF-8 with a u32
length prefix. The type fields keep the byte layout the token programs
already emit; fields this package adds (the creation timestamp, the price
write version) follow them, and the envelope fields come last.

The format is append-only: new optional fields go at the end, existing
fields never change order or width.
"""
import struct
from dataclasses import dataclass, fields, replace
from typing import Union

from crossify.crypto import generate_hash
from crossify.errors import InvalidParameter, MalformedMessage, UnknownMessageType

MSG_TYPE_TOKEN_CREATION = 1
MSG_TYPE_PRICE_UPDATE = 2
MSG_TYPE_LIQUIDITY_UPDATE = 3

# Upper bound on a single string field
MAX_STRING_LENGTH = 1024

_FIXED = {
    'u8': struct.Struct('<B'),
    'u16': struct.Struct('<H'),
    'u32': struct.Struct('<I'),
    'u64': struct.Struct('<Q'),
    'i64': struct.Struct('<q'),
}

_ENVELOPE = (
    ('sequence', 'u64'),
    ('source_chain', 'u16'),
)


@dataclass(frozen=True)
class TokenCreationMessage:
    token_id: int
    name: str
    symbol: str
    decimals: int
    metadata_uri: str
    initial_supply: int
    curve_type: int
    base_price: int
    slope: int
    reserve_ratio: int
    timestamp: int = 0
    sequence: int = 0
    source_chain: int = 0

    message_type = MSG_TYPE_TOKEN_CREATION
    layout = (
        ('token_id', 'u64'),
        ('name', 'str'),
        ('symbol', 'str'),
        ('decimals', 'u8'),
        ('metadata_uri', 'str'),
        ('initial_supply', 'u64'),
        ('curve_type', 'u8'),
        ('base_price', 'u64'),
        ('slope', 'u64'),
        ('reserve_ratio', 'u16'),
        ('timestamp', 'i64'),
    )


@dataclass(frozen=True)
class PriceUpdateMessage:
    token_id: int
    current_price: int
    current_supply: int
    timestamp: int
    # Write version for conflict resolution; 0 lets the sequence stand in
    version: int = 0
    sequence: int = 0
    source_chain: int = 0

    message_type = MSG_TYPE_PRICE_UPDATE
    layout = (
        ('token_id', 'u64'),
        ('current_price', 'u64'),
        ('current_supply', 'u64'),
        ('timestamp', 'i64'),
        ('version', 'u64'),
    )


@dataclass(frozen=True)
class LiquidityUpdateMessage:
    token_id: int
    liquidity_added: int
    liquidity_removed: int
    current_liquidity: int
    timestamp: int
    sequence: int = 0
    source_chain: int = 0

    message_type = MSG_TYPE_LIQUIDITY_UPDATE
    layout = (
        ('token_id', 'u64'),
        ('liquidity_added', 'u64'),
        ('liquidity_removed', 'u64'),
        ('current_liquidity', 'u64'),
        ('timestamp', 'i64'),
    )


CrossChainMessage = Union[TokenCreationMessage, PriceUpdateMessage, LiquidityUpdateMessage]

MESSAGE_CLASSES = {
    MSG_TYPE_TOKEN_CREATION: TokenCreationMessage,
    MSG_TYPE_PRICE_UPDATE: PriceUpdateMessage,
    MSG_TYPE_LIQUIDITY_UPDATE: LiquidityUpdateMessage,
}


def message_kind(message: CrossChainMessage) -> str:
    """Short name used in logs and metrics."""
    return {
        MSG_TYPE_TOKEN_CREATION: 'token_creation',
        MSG_TYPE_PRICE_UPDATE: 'price_update',
        MSG_TYPE_LIQUIDITY_UPDATE: 'liquidity_update',
    }[message.message_type]


def stamp(message: CrossChainMessage, sequence: int, source_chain: int) -> CrossChainMessage:
    """Return a copy of `message` carrying the given envelope fields."""
    return replace(message, sequence=sequence, source_chain=source_chain)


def to_dict(message: CrossChainMessage) -> dict:
    data = {f.name: getattr(message, f.name) for f in fields(message)}
    data['type'] = message.message_type
    return data


def encode(message: CrossChainMessage) -> bytes:
    """Serialize a message to its wire bytes."""
    if type(message) not in MESSAGE_CLASSES.values():
        raise InvalidParameter(f"Not a cross-chain message: {type(message).__name__}", field='type')

    out = bytearray([message.message_type])
    for name, kind in message.layout + _ENVELOPE:
        value = getattr(message, name)
        if kind == 'str':
            if not isinstance(value, str):
                raise InvalidParameter(f"{name} must be a string", field=name)
            raw = value.encode('utf-8')
            if len(raw) > MAX_STRING_LENGTH:
                raise InvalidParameter(f"{name} too long: {len(raw)} bytes", field=name)
            out += _FIXED['u32'].pack(len(raw))
            out += raw
        else:
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidParameter(f"{name} must be an integer", field=name)
            try:
                out += _FIXED[kind].pack(value)
            except struct.error:
                raise InvalidParameter(f"{name} out of range for {kind}: {value}", field=name)
    return bytes(out)


class _Reader:
    def __init__(self, data: bytes):
        self.data = data
        self.offset = 0

    def fixed(self, kind: str, name: str) -> int:
        fmt = _FIXED[kind]
        end = self.offset + fmt.size
        if end > len(self.data):
            raise MalformedMessage(f"Truncated message while reading {name}", field=name)
        (value,) = fmt.unpack_from(self.data, self.offset)
        self.offset = end
        return value

    def string(self, name: str) -> str:
        length = self.fixed('u32', name)
        if length > MAX_STRING_LENGTH:
            raise MalformedMessage(f"{name} length {length} exceeds limit", field=name)
        end = self.offset + length
        if end > len(self.data):
            raise MalformedMessage(f"Truncated message while reading {name}", field=name)
        raw = self.data[self.offset:end]
        self.offset = end
        try:
            return raw.decode('utf-8')
        except UnicodeDecodeError:
            raise MalformedMessage(f"{name} is not valid UTF-8", field=name)


def peek_type(payload: bytes) -> int:
    if not payload:
        raise MalformedMessage("Empty message payload")
    return payload[0]


def decode(payload: bytes) -> CrossChainMessage:
    """
    Parse wire bytes into a message.

    Raises:
        MalformedMessage: empty, truncated or over-length input
        UnknownMessageType: unrecognized leading type byte
    """
    message_type = peek_type(payload)
    cls = MESSAGE_CLASSES.get(message_type)
    if cls is None:
        raise UnknownMessageType(f"Unknown message type: {message_type}", field='type')

    reader = _Reader(bytes(payload))
    reader.offset = 1
    values = {}
    for name, kind in cls.layout + _ENVELOPE:
        if kind == 'str':
            values[name] = reader.string(name)
        else:
            values[name] = reader.fixed(kind, name)

    if reader.offset != len(payload):
        raise MalformedMessage(
            f"Over-length message: {len(payload) - reader.offset} trailing bytes"
        )
    return cls(**values)


def message_id(payload: bytes) -> bytes:
    """Keccak-256 digest identifying a payload in audit and delivery logs."""
    return generate_hash(payload)
