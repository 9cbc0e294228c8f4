"""
Tests for inbound validation, ordering, conflict resolution and the price
corridor.
"""
import shutil
import tempfile
from dataclasses import replace

import pytest

from crossify.bonding_curve import CurveType
from crossify.circuit_breaker import CircuitBreaker
from crossify.codec import (
    LiquidityUpdateMessage,
    PriceUpdateMessage,
    TokenCreationMessage,
    encode,
    stamp,
)
from crossify.config import CircuitBreakerConfig, SyncConfig
from crossify.crypto import new_address
from crossify.db import DB
from crossify.emitter_registry import EmitterRegistry
from crossify.errors import (
    CircuitHalted,
    ClosedWindowViolation,
    CorridorViolation,
    InvalidParameter,
    StaleOrDuplicateMessage,
    Unauthorized,
)
from crossify.state import AUDIT_HELD, AUDIT_REJECTED, AUDIT_REPLAYED
from crossify.store import StateStore
from crossify.synchronizer import (
    APPLIED,
    HELD,
    REJECTED,
    SUPERSEDED,
    StateSynchronizer,
    supersedes,
)
from crossify.token_registry import CHAIN_ID_SHIFT, TokenRegistry

ORIGIN = 1
LOCAL = 2
ORIGIN_EMITTER = b'\x01' * 20
TOKEN = (ORIGIN << CHAIN_ID_SHIFT) | 0


class FakeClock:
    def __init__(self, now=10_000):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class Replica:
    """Receiving side of chain LOCAL, trusting ORIGIN."""

    def __init__(self, path, reorder_window=4):
        self.clock = FakeClock()
        self.authority = new_address()
        self.store = StateStore(DB(path))
        self.tokens = TokenRegistry(self.store, LOCAL, clock=self.clock)
        self.emitters = EmitterRegistry(self.store, self.authority)
        self.emitters.register(self.authority, ORIGIN, ORIGIN_EMITTER)
        self.breaker = CircuitBreaker(
            self.store,
            CircuitBreakerConfig(grace_window=60, outflow_threshold_bps=2000),
            corridor_bps=1000,
            authority=self.authority,
            clock=self.clock,
        )
        self.sync = StateSynchronizer(
            LOCAL, self.tokens, self.store, self.emitters, self.breaker,
            SyncConfig(reorder_window=reorder_window, corridor_bps=1000),
            self.authority, clock=self.clock,
        )

    def deliver(self, message, sequence, source_chain=ORIGIN, sender=ORIGIN_EMITTER):
        payload = encode(stamp(message, sequence, source_chain))
        return self.sync.on_deliver(source_chain, sender, payload)

    def price(self):
        with self.store.transaction(TOKEN) as txn:
            return txn.get_price_state(TOKEN, LOCAL)

    def last_applied(self, source_chain=ORIGIN):
        with self.store.transaction(TOKEN) as txn:
            return txn.get_last_applied_sequence(TOKEN, source_chain)


def creation_message():
    # linear 100 + 2 * supply; unit price at supply 1000 is 2100
    return TokenCreationMessage(
        token_id=TOKEN, name="Crossify", symbol="CRX", decimals=9, metadata_uri="ipfs://meta",
        initial_supply=1000, curve_type=CurveType.LINEAR, base_price=100, slope=2,
        reserve_ratio=0, timestamp=500,
    )


def price_update(price, supply, timestamp=600):
    return PriceUpdateMessage(token_id=TOKEN, current_price=price, current_supply=supply, timestamp=timestamp)


@pytest.fixture
def replica():
    temp_dir = tempfile.mkdtemp()
    replica = Replica(temp_dir)
    yield replica
    replica.store.close()
    shutil.rmtree(temp_dir)


@pytest.fixture
def imported(replica):
    result = replica.deliver(creation_message(), 1)
    assert result.status == APPLIED
    return replica


class TestSupersedes:
    def test_higher_sequence_wins(self):
        assert supersedes((6, 2000, 2), (5, 1000, 1))
        assert not supersedes((4, 1, 1), (5, 1000, 9))

    def test_earlier_timestamp_breaks_ties(self):
        assert supersedes((5, 999, 2), (5, 1000, 1))
        assert not supersedes((5, 1000, 1), (5, 999, 2))

    def test_lower_chain_breaks_remaining_ties(self):
        assert supersedes((5, 1000, 1), (5, 1000, 2))
        assert not supersedes((5, 1000, 2), (5, 1000, 1))

    def test_equal_versions_do_not_supersede(self):
        assert not supersedes((5, 1000, 1), (5, 1000, 1))


def test_token_creation_imports_token(imported):
    token = imported.tokens.get_token(TOKEN)
    assert token.origin_chain == ORIGIN
    assert token.curve.enabled
    state = imported.price()
    assert (state.supply, state.last_price) == (1000, 2100)
    assert imported.last_applied() == 1


def test_creation_for_foreign_token_id_is_rejected(replica):
    foreign = replace(creation_message(), token_id=7 << CHAIN_ID_SHIFT)
    result = replica.deliver(foreign, 1)
    assert result.status == REJECTED
    assert result.error.kind == 'UntrustedSource'


def test_untrusted_sender_rejected(imported):
    result = imported.deliver(price_update(2120, 1010), 2, sender=b'\x09' * 20)
    assert result.status == REJECTED
    assert result.error.kind == 'UntrustedSource'
    assert imported.last_applied() == 1
    # unregistered senders cannot grow the audit log
    assert result.audit_id is None
    assert imported.sync.audit_log() == []


def test_garbage_from_unknown_chain_is_not_audited(imported):
    result = imported.sync.on_deliver(9, b'\x09' * 20, b'\x02\x00')
    assert result.status == REJECTED
    assert result.error.kind == 'MalformedMessage'
    assert result.audit_id is None
    assert imported.sync.audit_log() == []


def test_source_chain_mismatch_rejected(imported):
    imported.emitters.register(imported.authority, 3, b'\x03' * 20)
    payload = encode(stamp(price_update(2120, 1010), 2, ORIGIN))
    result = imported.sync.on_deliver(3, b'\x03' * 20, payload)
    assert result.status == REJECTED
    assert result.error.field == 'source_chain'


def test_malformed_payload_is_audited(imported):
    result = imported.sync.on_deliver(ORIGIN, ORIGIN_EMITTER, b'\x02\x00')
    assert result.status == REJECTED
    assert result.message is None
    entries = imported.sync.rejected_messages()
    assert [e.error_kind for e in entries] == ['MalformedMessage']


def test_price_update_in_corridor_applies(imported):
    result = imported.deliver(price_update(2120, 1010), 2)
    assert result.status == APPLIED

    state = imported.price()
    assert (state.supply, state.last_price) == (1010, 2120)
    assert state.version == (2, 600, ORIGIN)
    assert not state.override


def test_in_corridor_override(imported):
    imported.deliver(price_update(2150, 1010), 2)
    state = imported.price()
    assert state.last_price == 2150
    assert state.override


def test_duplicate_is_rejected(imported):
    message = price_update(2120, 1010)
    assert imported.deliver(message, 2).status == APPLIED
    result = imported.deliver(message, 2)
    assert result.status == REJECTED
    assert isinstance(result.error, StaleOrDuplicateMessage)

    with pytest.raises(StaleOrDuplicateMessage):
        imported.sync.apply(ORIGIN, ORIGIN_EMITTER, encode(stamp(message, 2, ORIGIN)))


def test_reordered_older_message_is_stale(imported):
    assert imported.deliver(price_update(2140, 1020), 3).status == APPLIED
    result = imported.deliver(price_update(2120, 1010), 2)
    assert result.status == REJECTED
    assert imported.price().supply == 1020


def test_accepted_sequences_strictly_increase(imported):
    applied = [1]
    for sequence in (3, 2, 5, 4, 5, 6):
        if imported.deliver(price_update(2100 + sequence, 1000), sequence).ok:
            applied.append(sequence)
    assert applied == sorted(set(applied))


def test_corridor_violation_leaves_state_and_signals_breaker(imported):
    before = imported.price()
    result = imported.deliver(price_update(5000, 2450), 2)

    assert result.status == REJECTED
    assert isinstance(result.error, CorridorViolation)
    after = imported.price()
    assert after.to_dict() == before.to_dict()
    assert imported.last_applied() == 1
    assert imported.breaker.get_state(TOKEN).deviation_since == imported.clock.now


def test_corridor_violation_raises_from_apply(imported):
    payload = encode(stamp(price_update(5000, 2450), 2, ORIGIN))
    with pytest.raises(CorridorViolation):
        imported.sync.apply(ORIGIN, ORIGIN_EMITTER, payload)
    # the breaker signal is kept even though apply raised
    assert imported.breaker.get_state(TOKEN).deviation_since is not None


def test_persistent_deviation_halts_until_reset(imported):
    imported.deliver(price_update(5000, 2450), 2)
    imported.clock.advance(61)
    imported.deliver(price_update(5000, 2450), 2)
    assert imported.breaker.is_halted(TOKEN)

    # an otherwise valid message is refused while halted
    result = imported.deliver(price_update(2120, 1010), 2)
    assert isinstance(result.error, CircuitHalted)
    assert imported.price().supply == 1000

    imported.breaker.reset(imported.authority, TOKEN)
    assert imported.deliver(price_update(2120, 1010), 2).status == APPLIED


def test_valid_update_clears_deviation(imported):
    imported.deliver(price_update(5000, 2450), 2)
    imported.deliver(price_update(2120, 1010), 2)
    assert imported.breaker.get_state(TOKEN).deviation_since is None


def test_beyond_window_is_held_and_replayed(imported):
    # last applied 1, window 4: 5 is the highest acceptable sequence
    result = imported.deliver(price_update(2120, 1010), 6)
    assert result.status == HELD
    assert isinstance(result.error, ClosedWindowViolation)
    assert imported.last_applied() == 1

    held = imported.sync.held_messages()
    assert len(held) == 1
    assert held[0].status == AUDIT_HELD
    assert held[0].sequence == 6

    with pytest.raises(Unauthorized):
        imported.sync.replay(new_address(), held[0].audit_id)

    replayed = imported.sync.replay(imported.authority, held[0].audit_id)
    assert replayed.status == APPLIED
    assert imported.last_applied() == 6
    assert imported.price().supply == 1010
    assert imported.sync.held_messages() == []
    assert imported.store.reader().get_audit_entry(held[0].audit_id).status == AUDIT_REPLAYED

    with pytest.raises(InvalidParameter):
        imported.sync.replay(imported.authority, held[0].audit_id)


def test_within_window_gap_is_accepted(imported):
    assert imported.deliver(price_update(2120, 1010), 5).status == APPLIED


def test_replay_of_rejected_message_reruns_validation(imported):
    # price update before the token exists is rejected
    temp_dir = tempfile.mkdtemp()
    try:
        fresh = Replica(temp_dir)
        result = fresh.deliver(price_update(2120, 1010), 2)
        assert result.status == REJECTED
        assert result.error.kind == 'TokenNotFound'

        assert fresh.deliver(creation_message(), 1).status == APPLIED
        replayed = fresh.sync.replay(fresh.authority, result.audit_id)
        assert replayed.status == APPLIED
        assert fresh.price().supply == 1010
        fresh.store.close()
    finally:
        shutil.rmtree(temp_dir)


def test_failed_replay_stays_in_audit_log(imported):
    result = imported.deliver(price_update(5000, 2450), 2)
    again = imported.sync.replay(imported.authority, result.audit_id)
    assert again.status == REJECTED
    entry = imported.store.reader().get_audit_entry(result.audit_id)
    assert entry.status == AUDIT_REJECTED
    assert entry.error_kind == 'CorridorViolation'


def test_losing_write_is_superseded(imported):
    imported.sync.apply_local_price(TOKEN, 1005, timestamp=700, sequence=3)
    # same sequence, later timestamp: loses but is consumed
    result = imported.deliver(price_update(2120, 1010, timestamp=800), 3)
    assert result.status == SUPERSEDED
    assert imported.last_applied() == 3
    assert imported.price().supply == 1005


def test_out_of_corridor_loser_does_not_signal_breaker(imported):
    imported.sync.apply_local_price(TOKEN, 1005, timestamp=700, sequence=3)
    result = imported.deliver(price_update(5000, 2450, timestamp=800), 3)

    assert result.status == SUPERSEDED
    assert imported.last_applied() == 3
    assert imported.price().supply == 1005
    assert imported.breaker.get_state(TOKEN).deviation_since is None


def test_write_version_orders_independently_of_sequence(imported):
    imported.sync.apply_local_price(TOKEN, 1005, timestamp=700, sequence=8)
    # low transport sequence, higher write version: wins
    result = imported.deliver(replace(price_update(2120, 1010), version=9), 2)
    assert result.status == APPLIED
    assert imported.price().version == (9, 600, ORIGIN)

    # higher transport sequence, older write version: consumed, no change
    result = imported.deliver(replace(price_update(2140, 1020), version=4), 3)
    assert result.status == SUPERSEDED
    assert imported.last_applied() == 3
    assert imported.price().supply == 1010


def test_liquidity_update_applied_once(imported):
    message = LiquidityUpdateMessage(
        token_id=TOKEN, liquidity_added=500, liquidity_removed=0, current_liquidity=500, timestamp=700
    )
    assert imported.deliver(message, 2).status == APPLIED
    assert imported.deliver(message, 2).status == REJECTED

    with imported.store.transaction(TOKEN) as txn:
        state = txn.get_liquidity_state(TOKEN, ORIGIN)
    assert (state.total_added, state.current_liquidity) == (500, 500)
    assert imported.sync.total_liquidity(TOKEN) == 500


def test_liquidity_outflow_trips_breaker(imported):
    imported.sync.apply_local_liquidity(TOKEN, added=1000)
    added = LiquidityUpdateMessage(TOKEN, 1000, 0, 1000, 700)
    removed = LiquidityUpdateMessage(TOKEN, 0, 600, 400, 800)

    assert imported.deliver(added, 2).status == APPLIED
    # 600 of 2000 known liquidity exceeds the 20% threshold
    assert imported.deliver(removed, 3).status == APPLIED
    assert imported.breaker.is_halted(TOKEN)

    with imported.store.transaction(TOKEN) as txn:
        assert txn.get_liquidity_state(TOKEN, ORIGIN).total_removed == 600


def test_apply_local_price(imported):
    state = imported.sync.apply_local_price(TOKEN, 1010, timestamp=900)
    assert state.last_price == 2120
    assert state.version == (1, 900, LOCAL)


def test_apply_local_liquidity_validation(imported):
    with pytest.raises(InvalidParameter):
        imported.sync.apply_local_liquidity(TOKEN, removed=1)
    with pytest.raises(InvalidParameter):
        imported.sync.apply_local_liquidity(TOKEN, added=-5)
