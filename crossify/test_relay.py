"""
Tests for outbound sequencing and bounded-retry delivery.
"""
import asyncio
import shutil
import tempfile

import pytest

from crossify.bonding_curve import CurveType
from crossify.circuit_breaker import CircuitBreaker
from crossify.codec import PriceUpdateMessage, decode
from crossify.config import CircuitBreakerConfig, RelayConfig
from crossify.crypto import new_address
from crossify.db import DB
from crossify.emitter_registry import EmitterRegistry
from crossify.errors import ChainNotSupported, CircuitHalted, InvalidParameter
from crossify.monitoring import Monitor
from crossify.relay import RelayCoordinator
from crossify.state import (
    OUTBOUND_ACKNOWLEDGED,
    OUTBOUND_CANCELLED,
    OUTBOUND_FAILED,
    OUTBOUND_PENDING,
)
from crossify.store import StateStore
from crossify.token_registry import TokenRegistry
from crossify.transport import LoopbackNetwork, Transport

CHAIN = 1
TARGET = 2
OTHER_TARGET = 3
TARGET_ADDRESS = b'\x02' * 20
OTHER_ADDRESS = b'\x03' * 20


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class RecordingOperator:
    def __init__(self):
        self.failed = []

    def on_delivery_failed(self, record):
        self.failed.append(record)


class GatedTransport(Transport):
    """Holds every publish until the gate opens."""

    def __init__(self):
        self.gate = asyncio.Event()
        self.published = []

    async def publish(self, target_chain, target_address, payload):
        await self.gate.wait()
        self.published.append((target_chain, payload))
        return len(self.published)


class RelaySetup:
    def __init__(self, path, transport=None, config=None):
        self.authority = new_address()
        self.owner = new_address()
        self.store = StateStore(DB(path))
        self.tokens = TokenRegistry(self.store, CHAIN)
        self.emitters = EmitterRegistry(self.store, self.authority)
        self.emitters.register(self.authority, TARGET, TARGET_ADDRESS)
        self.emitters.register(self.authority, OTHER_TARGET, OTHER_ADDRESS)

        self.network = LoopbackNetwork()
        self.network.attach(TARGET, TARGET_ADDRESS, lambda *args: None)
        self.network.attach(OTHER_TARGET, OTHER_ADDRESS, lambda *args: None)

        self.breaker = CircuitBreaker(self.store, CircuitBreakerConfig(), 1000, self.authority)
        self.sleep = RecordingSleep()
        self.operator = RecordingOperator()
        self.monitor = Monitor(CHAIN)
        self.relay = RelayCoordinator(
            CHAIN, self.tokens, self.store, self.emitters,
            transport or self.network.transport_for(CHAIN, b'\x01' * 20),
            self.breaker, config or RelayConfig(base_delay=1.0, multiplier=2.0, max_attempts=5),
            operator=self.operator, monitor=self.monitor, sleep=self.sleep,
        )

        token = self.tokens.create_token(self.owner, "Crossify", "CRX", 9, "ipfs://meta", 10)
        self.token_id = token.token_id
        self.tokens.configure_bonding_curve(self.owner, self.token_id, CurveType.LINEAR, 100, 2, 0)
        self.tokens.enable_cross_chain(self.owner, self.token_id, b'\x01' * 20, [TARGET, OTHER_TARGET])

    def message(self, price=120):
        return PriceUpdateMessage(token_id=self.token_id, current_price=price, current_supply=10, timestamp=1000)


@pytest.fixture
def temp_dir():
    path = tempfile.mkdtemp()
    yield path
    shutil.rmtree(path)


@pytest.fixture
def setup(temp_dir):
    setup = RelaySetup(temp_dir)
    yield setup
    setup.store.close()


@pytest.mark.asyncio
async def test_send_delivers_and_acknowledges(setup):
    record = await setup.relay.send(setup.token_id, TARGET, setup.message())
    await setup.relay.flush()

    stored = setup.relay.outbound(setup.token_id, TARGET, record.sequence)
    assert stored.status == OUTBOUND_ACKNOWLEDGED
    assert stored.attempts == 1
    assert stored.transport_sequence == 1

    envelope, = setup.network.pending
    message = decode(envelope.payload)
    assert (message.sequence, message.source_chain) == (1, CHAIN)
    assert envelope.target_address == TARGET_ADDRESS
    assert setup.monitor.registry.get_sample_value(
        'crossify_outbound_deliveries_total', {'status': OUTBOUND_ACKNOWLEDGED}
    ) == 1


@pytest.mark.asyncio
async def test_sequences_per_target(setup):
    first = await setup.relay.send(setup.token_id, TARGET, setup.message())
    second = await setup.relay.send(setup.token_id, TARGET, setup.message(121))
    other = await setup.relay.send(setup.token_id, OTHER_TARGET, setup.message())
    await setup.relay.flush()

    assert (first.sequence, second.sequence, other.sequence) == (1, 2, 1)


@pytest.mark.asyncio
async def test_unsupported_targets(setup):
    with pytest.raises(ChainNotSupported):
        await setup.relay.send(setup.token_id, 9, setup.message())
    with pytest.raises(ChainNotSupported):
        await setup.relay.send(setup.token_id, CHAIN, setup.message())

    local = setup.tokens.create_token(setup.owner, "Local", "LOC", 9, "", 0)
    with pytest.raises(ChainNotSupported):
        await setup.relay.send(local.token_id, TARGET, PriceUpdateMessage(local.token_id, 1, 1, 1))


@pytest.mark.asyncio
async def test_message_for_other_token(setup):
    with pytest.raises(InvalidParameter):
        await setup.relay.send(setup.token_id, TARGET, PriceUpdateMessage(12345, 1, 1, 1))


@pytest.mark.asyncio
async def test_retries_with_backoff(setup):
    setup.network.fail_next(TARGET, 2)
    record = await setup.relay.send(setup.token_id, TARGET, setup.message())
    await setup.relay.flush()

    stored = setup.relay.outbound(setup.token_id, TARGET, record.sequence)
    assert stored.status == OUTBOUND_ACKNOWLEDGED
    assert stored.attempts == 3
    assert setup.sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_backoff_is_capped(temp_dir):
    setup = RelaySetup(temp_dir, config=RelayConfig(base_delay=10.0, multiplier=3.0, max_attempts=4, max_delay=15.0))
    try:
        setup.network.fail_next(TARGET, 3)
        await setup.relay.send(setup.token_id, TARGET, setup.message())
        await setup.relay.flush()
        assert setup.sleep.delays == [10.0, 15.0, 15.0]
    finally:
        setup.store.close()


@pytest.mark.asyncio
async def test_exhausted_budget_surfaces_failure(setup):
    setup.network.fail_next(TARGET, 10)
    record = await setup.relay.send(setup.token_id, TARGET, setup.message())
    await setup.relay.flush()

    stored = setup.relay.outbound(setup.token_id, TARGET, record.sequence)
    assert stored.status == OUTBOUND_FAILED
    assert stored.attempts == 5
    assert "Injected" in stored.last_error
    assert [r.key for r in setup.operator.failed] == [stored.key]
    # no sleep after the final attempt
    assert len(setup.sleep.delays) == 4
    assert setup.network.pending == []


@pytest.mark.asyncio
async def test_resend_failed_with_fresh_budget(setup):
    setup.network.fail_next(TARGET, 5)
    record = await setup.relay.send(setup.token_id, TARGET, setup.message())
    await setup.relay.flush()

    await setup.relay.resend(setup.token_id, TARGET, record.sequence)
    await setup.relay.flush()

    stored = setup.relay.outbound(setup.token_id, TARGET, record.sequence)
    assert stored.status == OUTBOUND_ACKNOWLEDGED
    assert stored.attempts == 6
    assert len(setup.network.pending) == 1


@pytest.mark.asyncio
async def test_resend_acknowledged_is_noop(setup):
    record = await setup.relay.send(setup.token_id, TARGET, setup.message())
    await setup.relay.flush()

    again = await setup.relay.resend(setup.token_id, TARGET, record.sequence)
    await setup.relay.flush()

    assert again.status == OUTBOUND_ACKNOWLEDGED
    assert len(setup.network.pending) == 1


@pytest.mark.asyncio
async def test_resend_unknown_sequence(setup):
    with pytest.raises(InvalidParameter):
        await setup.relay.resend(setup.token_id, TARGET, 99)


@pytest.mark.asyncio
async def test_one_delivery_in_flight_per_message(temp_dir):
    transport = GatedTransport()
    setup = RelaySetup(temp_dir, transport=transport)
    try:
        record = await setup.relay.send(setup.token_id, TARGET, setup.message())
        await asyncio.sleep(0)
        await setup.relay.resend(setup.token_id, TARGET, record.sequence)
        await setup.relay.resend(setup.token_id, TARGET, record.sequence)
        assert setup.relay.in_flight_count() == 1

        transport.gate.set()
        await setup.relay.flush()
        assert len(transport.published) == 1
        assert setup.relay.outbound(setup.token_id, TARGET, record.sequence).status == OUTBOUND_ACKNOWLEDGED
    finally:
        setup.store.close()


@pytest.mark.asyncio
async def test_halt_cancels_queued_deliveries(temp_dir):
    transport = GatedTransport()
    setup = RelaySetup(temp_dir, transport=transport)
    try:
        first = await setup.relay.send(setup.token_id, TARGET, setup.message())
        second = await setup.relay.send(setup.token_id, OTHER_TARGET, setup.message())
        await asyncio.sleep(0)

        setup.breaker.halt(setup.authority, setup.token_id, "incident")
        await setup.relay.flush()

        for record in (first, second):
            stored = setup.relay.outbound(setup.token_id, record.target_chain, record.sequence)
            assert stored.status == OUTBOUND_CANCELLED
        assert transport.published == []

        with pytest.raises(CircuitHalted):
            await setup.relay.send(setup.token_id, TARGET, setup.message())
        with pytest.raises(CircuitHalted):
            await setup.relay.resend(setup.token_id, TARGET, first.sequence)
    finally:
        setup.store.close()


@pytest.mark.asyncio
async def test_broadcast_price_update_fans_out(setup):
    records = await setup.relay.broadcast_price_update(setup.token_id)
    await setup.relay.flush()

    assert sorted(r.target_chain for r in records) == [TARGET, OTHER_TARGET]
    for envelope in setup.network.pending:
        message = decode(envelope.payload)
        assert (message.current_supply, message.current_price) == (10, 120)


@pytest.mark.asyncio
async def test_broadcast_token_creation(setup):
    await setup.relay.broadcast_token_creation(setup.token_id)
    await setup.relay.flush()
    names = {decode(e.payload).name for e in setup.network.pending}
    assert names == {"Crossify"}
    assert len(setup.network.pending) == 2


@pytest.mark.asyncio
async def test_recover_pending_deliveries(setup):
    record = setup.relay.prepare(setup.token_id, TARGET, setup.message())
    assert setup.relay.outbound(setup.token_id, TARGET, record.sequence).status == OUTBOUND_PENDING

    resumed = await setup.relay.recover(setup.token_id)
    await setup.relay.flush()

    assert [r.key for r in resumed] == [record.key]
    assert setup.relay.outbound(setup.token_id, TARGET, record.sequence).status == OUTBOUND_ACKNOWLEDGED


class BrokenTransport(Transport):
    def __init__(self):
        self.calls = 0

    def publish(self, target_chain, target_address, payload):
        self.calls += 1
        raise RuntimeError("bridge client crashed")


@pytest.mark.asyncio
async def test_unexpected_transport_error_fails_delivery(temp_dir):
    transport = BrokenTransport()
    setup = RelaySetup(temp_dir, transport=transport)
    try:
        record = await setup.relay.send(setup.token_id, TARGET, setup.message())
        await setup.relay.flush()

        stored = setup.relay.outbound(setup.token_id, TARGET, record.sequence)
        assert stored.status == OUTBOUND_FAILED
        assert stored.attempts == 1
        assert stored.last_error == "RuntimeError: bridge client crashed"
        assert [r.key for r in setup.operator.failed] == [stored.key]
        # not retried on its own
        assert transport.calls == 1
        assert setup.sleep.delays == []
    finally:
        setup.store.close()
