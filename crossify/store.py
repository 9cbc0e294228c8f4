"""
Persistence for a chain replica.

All state of a token is read and written inside a per-token transaction:
a re-entrant lock serializes every mutation of the token (its execution
lane) and writes are buffered and committed as one atomic LevelDB batch.
Nested transactions on the same lane in the same thread join the outer
one, so components can call each other while the lane is held.
"""
import logging
import struct
import threading
from contextlib import contextmanager
from typing import Optional

import msgpack

from crossify.db import DB
from crossify.state import AuditEntry, CircuitState, LiquidityState, OutboundMessage, PriceState

logger = logging.getLogger(__name__)

GLOBAL_LANE = 'global'

PREFIX_TOKEN = b'token:'
PREFIX_EMITTER = b'emitter:'
PREFIX_PRICE = b'price:'
PREFIX_LIQUIDITY = b'liq:'
PREFIX_CIRCUIT = b'circuit:'
PREFIX_SEQ_IN = b'seq:in:'
PREFIX_SEQ_OUT = b'seq:out:'
PREFIX_OUTBOUND = b'outbound:'
PREFIX_AUDIT = b'audit:'
TOKEN_COUNT_KEY = b'token_count'


def _u64(value: int) -> bytes:
    return struct.pack('>Q', value)


def _u16(value: int) -> bytes:
    return struct.pack('>H', value)


def _pack(obj) -> bytes:
    return msgpack.packb(obj, use_bin_type=True)


def _unpack(raw: Optional[bytes]):
    if raw is None:
        return None
    return msgpack.unpackb(raw, raw=False)


class StoreTransaction:
    """Buffered read-modify-write view over the database."""

    def __init__(self, db: DB, lane):
        self._db = db
        self.lane = lane
        self._writes: dict[bytes, Optional[bytes]] = {}

    # raw access

    def get(self, key: bytes) -> Optional[bytes]:
        if key in self._writes:
            return self._writes[key]
        return self._db.get(key)

    def put(self, key: bytes, value: bytes):
        self._writes[key] = value

    def delete(self, key: bytes):
        self._writes[key] = None

    def commit(self):
        if not self._writes:
            return
        with self._db.write_batch() as batch:
            for key, value in self._writes.items():
                if value is None:
                    batch.delete(key)
                else:
                    batch.put(key, value)
        logger.debug(f"Committed {len(self._writes)} writes on lane {self.lane}")
        self._writes.clear()

    # tokens

    def get_token_data(self, token_id: int) -> Optional[dict]:
        return _unpack(self.get(PREFIX_TOKEN + _u64(token_id)))

    def set_token_data(self, token_id: int, data: dict):
        self.put(PREFIX_TOKEN + _u64(token_id), _pack(data))

    def get_token_count(self) -> int:
        return _unpack(self.get(TOKEN_COUNT_KEY)) or 0

    def set_token_count(self, count: int):
        self.put(TOKEN_COUNT_KEY, _pack(count))

    # emitters

    def get_emitter(self, chain_id: int) -> Optional[bytes]:
        return self.get(PREFIX_EMITTER + _u16(chain_id))

    def set_emitter(self, chain_id: int, sender_id: bytes):
        self.put(PREFIX_EMITTER + _u16(chain_id), bytes(sender_id))

    def delete_emitter(self, chain_id: int):
        self.delete(PREFIX_EMITTER + _u16(chain_id))

    # price / liquidity / circuit

    def get_price_state(self, token_id: int, chain_id: int) -> PriceState:
        data = _unpack(self.get(PREFIX_PRICE + _u64(token_id) + _u16(chain_id)))
        return PriceState(token_id, chain_id, data)

    def set_price_state(self, state: PriceState):
        self.put(PREFIX_PRICE + _u64(state.token_id) + _u16(state.chain_id), _pack(state.to_dict()))

    def get_liquidity_state(self, token_id: int, chain_id: int) -> LiquidityState:
        data = _unpack(self.get(PREFIX_LIQUIDITY + _u64(token_id) + _u16(chain_id)))
        return LiquidityState(token_id, chain_id, data)

    def set_liquidity_state(self, state: LiquidityState):
        self.put(PREFIX_LIQUIDITY + _u64(state.token_id) + _u16(state.chain_id), _pack(state.to_dict()))

    def get_circuit_state(self, token_id: int) -> CircuitState:
        return CircuitState(token_id, _unpack(self.get(PREFIX_CIRCUIT + _u64(token_id))))

    def set_circuit_state(self, state: CircuitState):
        self.put(PREFIX_CIRCUIT + _u64(state.token_id), _pack(state.to_dict()))

    # sequences

    def get_last_applied_sequence(self, token_id: int, source_chain: int) -> int:
        return _unpack(self.get(PREFIX_SEQ_IN + _u64(token_id) + _u16(source_chain))) or 0

    def set_last_applied_sequence(self, token_id: int, source_chain: int, sequence: int):
        self.put(PREFIX_SEQ_IN + _u64(token_id) + _u16(source_chain), _pack(sequence))

    def get_outbound_sequence(self, token_id: int, target_chain: int) -> int:
        return _unpack(self.get(PREFIX_SEQ_OUT + _u64(token_id) + _u16(target_chain))) or 0

    def set_outbound_sequence(self, token_id: int, target_chain: int, sequence: int):
        self.put(PREFIX_SEQ_OUT + _u64(token_id) + _u16(target_chain), _pack(sequence))

    # outbound queue

    def get_outbound(self, token_id: int, target_chain: int, sequence: int) -> Optional[OutboundMessage]:
        data = _unpack(self.get(PREFIX_OUTBOUND + _u64(token_id) + _u16(target_chain) + _u64(sequence)))
        return OutboundMessage(data) if data else None

    def set_outbound(self, record: OutboundMessage):
        key = PREFIX_OUTBOUND + _u64(record.token_id) + _u16(record.target_chain) + _u64(record.sequence)
        self.put(key, _pack(record.to_dict()))

    # audit log

    def get_audit_entry(self, audit_id: str) -> Optional[AuditEntry]:
        data = _unpack(self.get(PREFIX_AUDIT + audit_id.encode()))
        return AuditEntry(data) if data else None

    def set_audit_entry(self, entry: AuditEntry):
        self.put(PREFIX_AUDIT + entry.audit_id.encode(), _pack(entry.to_dict()))


class StateStore:
    """Atomic per-token read-modify-write over a DB."""

    def __init__(self, db: DB):
        self.db = db
        self._locks: dict = {}
        self._locks_guard = threading.Lock()
        self._local = threading.local()

    def _lane_lock(self, lane) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(lane)
            if lock is None:
                lock = threading.RLock()
                self._locks[lane] = lock
            return lock

    @contextmanager
    def transaction(self, token_id: Optional[int] = None):
        """
        Open the execution lane of `token_id` (or the global lane).

        Writes become visible atomically when the outermost transaction on
        the lane exits without an exception; an exception discards them.
        """
        lane = GLOBAL_LANE if token_id is None else token_id
        open_txns = getattr(self._local, 'open', None)
        if open_txns is None:
            open_txns = self._local.open = {}

        if lane in open_txns:
            yield open_txns[lane]
            return

        lock = self._lane_lock(lane)
        with lock:
            txn = StoreTransaction(self.db, lane)
            open_txns[lane] = txn
            try:
                yield txn
                txn.commit()
            finally:
                del open_txns[lane]

    def reader(self) -> StoreTransaction:
        """Lock-free view of committed state; its writes are never committed."""
        return StoreTransaction(self.db, None)

    def outbound_messages(self, token_id: int) -> list[OutboundMessage]:
        return [
            OutboundMessage(_unpack(value))
            for _, value in self.db.iterator(PREFIX_OUTBOUND + _u64(token_id))
        ]

    def audit_entries(self) -> list[AuditEntry]:
        entries = [AuditEntry(_unpack(value)) for _, value in self.db.iterator(PREFIX_AUDIT)]
        entries.sort(key=lambda e: (e.recorded_at, e.audit_id))
        return entries

    def emitters(self) -> dict[int, bytes]:
        return {
            struct.unpack('>H', key[len(PREFIX_EMITTER):])[0]: value
            for key, value in self.db.iterator(PREFIX_EMITTER)
        }

    def close(self):
        self.db.close()
