"""
Outbound side of cross-chain synchronization.

Local mutations become encoded messages stamped with a sequence that is
strictly increasing per (token, target chain). Each message is delivered by
its own asyncio task with exponential backoff and a bounded attempt budget.
A message that exhausts its budget, or whose transport raises an error
outside RETRYABLE_ERRORS, is marked FAILED and handed to the operator,
never dropped and never retried on its own.
"""
import asyncio
import inspect
import logging
import time
from typing import Optional

from crossify.circuit_breaker import CircuitBreaker
from crossify.codec import (
    CrossChainMessage,
    LiquidityUpdateMessage,
    PriceUpdateMessage,
    encode,
    message_kind,
    stamp,
)
from crossify.config import RelayConfig
from crossify.emitter_registry import EmitterRegistry
from crossify.errors import ChainNotSupported, InvalidParameter, TransportError
from crossify.state import (
    OUTBOUND_ACKNOWLEDGED,
    OUTBOUND_CANCELLED,
    OUTBOUND_FAILED,
    OUTBOUND_IN_FLIGHT,
    OUTBOUND_PENDING,
    OutboundMessage,
)
from crossify.store import StateStore
from crossify.token_registry import TokenRegistry
from crossify.transport import Transport

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (TransportError, OSError, asyncio.TimeoutError)


class LoggingOperator:
    """Default operator collaborator: surfaces failed deliveries in the log."""

    def on_delivery_failed(self, record: OutboundMessage):
        logger.error(f"Operator attention required: {record} last_error={record.last_error!r}")


class RelayCoordinator:
    def __init__(self, chain_id: int, tokens: TokenRegistry, store: StateStore,
                 emitters: EmitterRegistry, transport: Transport,
                 circuit_breaker: CircuitBreaker, config: RelayConfig,
                 operator=None, monitor=None, clock=time.time, sleep=asyncio.sleep):
        self.chain_id = chain_id
        self.tokens = tokens
        self.store = store
        self.emitters = emitters
        self.transport = transport
        self.circuit_breaker = circuit_breaker
        self.config = config
        self.operator = operator or LoggingOperator()
        self.monitor = monitor
        self.clock = clock
        self.sleep = sleep

        self._in_flight: dict[tuple[int, int, int], asyncio.Task] = {}
        self._records: dict[tuple[int, int, int], OutboundMessage] = {}

        circuit_breaker.add_trip_listener(self._on_trip)

    # ------------------------------------------------------------------ #
    # Sending
    # ------------------------------------------------------------------ #

    def prepare(self, token_id: int, target_chain: int, message: CrossChainMessage) -> OutboundMessage:
        """Validate, sequence, encode and persist a message for `target_chain`."""
        token = self.tokens.get_token(token_id)
        if not token.cross_chain_enabled:
            raise ChainNotSupported(f"Cross-chain not enabled for token {token_id}", field='token_id')
        if target_chain not in token.supported_chains or target_chain == self.chain_id:
            raise ChainNotSupported(
                f"Chain {target_chain} not supported for token {token_id}", field='target_chain'
            )
        if message.token_id != token_id:
            raise InvalidParameter(
                f"Message is for token {message.token_id}, not {token_id}", field='token_id'
            )

        with self.store.transaction(token_id) as txn:
            self.circuit_breaker.ensure_operational(token_id)

            sequence = txn.get_outbound_sequence(token_id, target_chain) + 1
            payload = encode(stamp(message, sequence, self.chain_id))
            record = OutboundMessage({
                'token_id': token_id,
                'target_chain': target_chain,
                'sequence': sequence,
                'payload': payload,
                'status': OUTBOUND_PENDING,
                'created_at': int(self.clock()),
            })
            txn.set_outbound_sequence(token_id, target_chain, sequence)
            txn.set_outbound(record)

        logger.debug(f"Queued {message_kind(message)} for token {token_id} to chain {target_chain} seq={sequence}")
        return record

    async def send(self, token_id: int, target_chain: int, message: CrossChainMessage) -> OutboundMessage:
        """
        Queue `message` for `target_chain` and start delivering it.

        Raises:
            ChainNotSupported: cross-chain disabled or target not supported
            CircuitHalted: the token is halted
        """
        record = self.prepare(token_id, target_chain, message)
        self._schedule(record)
        return record

    async def broadcast(self, token_id: int, message: CrossChainMessage) -> list[OutboundMessage]:
        """Send `message` to every chain the token supports."""
        token = self.tokens.get_token(token_id)
        if not token.cross_chain_enabled:
            raise ChainNotSupported(f"Cross-chain not enabled for token {token_id}", field='token_id')

        records = []
        for target_chain in token.supported_chains:
            if target_chain == self.chain_id:
                continue
            records.append(await self.send(token_id, target_chain, message))
        return records

    async def broadcast_price_update(self, token_id: int) -> list[OutboundMessage]:
        with self.store.transaction(token_id) as txn:
            price_state = txn.get_price_state(token_id, self.chain_id)
        message = PriceUpdateMessage(
            token_id=token_id,
            current_price=price_state.last_price,
            current_supply=price_state.supply,
            timestamp=price_state.last_update_timestamp,
            version=price_state.last_applied_sequence,
        )
        return await self.broadcast(token_id, message)

    async def broadcast_liquidity_update(self, token_id: int, liquidity_added: int = 0,
                                         liquidity_removed: int = 0) -> list[OutboundMessage]:
        with self.store.transaction(token_id) as txn:
            liquidity = txn.get_liquidity_state(token_id, self.chain_id)
        message = LiquidityUpdateMessage(
            token_id=token_id,
            liquidity_added=liquidity_added,
            liquidity_removed=liquidity_removed,
            current_liquidity=liquidity.current_liquidity,
            timestamp=liquidity.last_update_timestamp,
        )
        return await self.broadcast(token_id, message)

    async def broadcast_token_creation(self, token_id: int) -> list[OutboundMessage]:
        return await self.broadcast(token_id, self.tokens.creation_message(token_id))

    # ------------------------------------------------------------------ #
    # Delivery
    # ------------------------------------------------------------------ #

    def _schedule(self, record: OutboundMessage) -> asyncio.Task:
        key = record.key
        task = self._in_flight.get(key)
        if task is not None and not task.done():
            logger.debug(f"Delivery already in flight for {key}")
            return task

        self._records[key] = record
        task = asyncio.create_task(self._deliver(record))
        self._in_flight[key] = task
        task.add_done_callback(lambda t, key=key: self._on_done(key, t))
        self._update_in_flight_gauge()
        return task

    def _on_done(self, key, task: asyncio.Task):
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        record = self._records.pop(key, None)
        if task.cancelled() and record is not None and record.status not in (OUTBOUND_ACKNOWLEDGED, OUTBOUND_FAILED):
            record.status = OUTBOUND_CANCELLED
            self._persist(record)
            logger.info(f"Delivery cancelled: {record}")
            if self.monitor:
                self.monitor.record_delivery(OUTBOUND_CANCELLED)
        self._update_in_flight_gauge()

    def _update_in_flight_gauge(self):
        if self.monitor:
            self.monitor.set_in_flight(len(self._in_flight))

    def _persist(self, record: OutboundMessage):
        with self.store.transaction(record.token_id) as txn:
            txn.set_outbound(record)

    async def _deliver(self, record: OutboundMessage) -> OutboundMessage:
        delay = self.config.base_delay

        for attempt in range(1, self.config.max_attempts + 1):
            if self.circuit_breaker.is_halted(record.token_id):
                record.status = OUTBOUND_CANCELLED
                self._persist(record)
                logger.info(f"Token {record.token_id} halted, dropping retry sequence for {record}")
                if self.monitor:
                    self.monitor.record_delivery(OUTBOUND_CANCELLED)
                return record

            record.status = OUTBOUND_IN_FLIGHT
            record.attempts += 1
            self._persist(record)
            if self.monitor:
                self.monitor.record_attempt()

            try:
                target_address = self.emitters.get_emitter(record.target_chain)
                if target_address is None:
                    raise TransportError(f"No registered endpoint for chain {record.target_chain}")
                result = self.transport.publish(record.target_chain, target_address, record.payload)
                if inspect.isawaitable(result):
                    result = await result
            except RETRYABLE_ERRORS as e:
                record.last_error = str(e)
                logger.warning(
                    f"Delivery attempt {attempt}/{self.config.max_attempts} failed for "
                    f"token {record.token_id} to chain {record.target_chain} seq={record.sequence}: {e}"
                )
                if attempt < self.config.max_attempts:
                    record.status = OUTBOUND_PENDING
                    self._persist(record)
                    await self.sleep(min(delay, self.config.max_delay))
                    delay *= self.config.multiplier
                continue
            except Exception as e:
                record.last_error = f"{type(e).__name__}: {e}"
                logger.error(
                    f"Delivery of token {record.token_id} to chain {record.target_chain} "
                    f"seq={record.sequence} hit a non-retryable error: {record.last_error}"
                )
                break

            record.status = OUTBOUND_ACKNOWLEDGED
            record.transport_sequence = result
            record.last_error = ""
            self._persist(record)
            logger.info(
                f"Delivered token {record.token_id} seq={record.sequence} to chain "
                f"{record.target_chain} (transport seq {result}, attempt {attempt})"
            )
            if self.monitor:
                self.monitor.record_delivery(OUTBOUND_ACKNOWLEDGED)
            return record

        record.status = OUTBOUND_FAILED
        self._persist(record)
        logger.error(
            f"Delivery failed after {record.attempts} attempts: token {record.token_id} "
            f"to chain {record.target_chain} seq={record.sequence}"
        )
        if self.monitor:
            self.monitor.record_delivery(OUTBOUND_FAILED)
        self.operator.on_delivery_failed(record)
        return record

    # ------------------------------------------------------------------ #
    # Operator actions
    # ------------------------------------------------------------------ #

    def outbound(self, token_id: int, target_chain: int, sequence: int) -> Optional[OutboundMessage]:
        with self.store.transaction(token_id) as txn:
            return txn.get_outbound(token_id, target_chain, sequence)

    async def resend(self, token_id: int, target_chain: int, sequence: int) -> OutboundMessage:
        """
        Retry a message with a fresh attempt budget.

        Acknowledged messages and messages already in flight are left alone.
        """
        key = (token_id, target_chain, sequence)
        task = self._in_flight.get(key)
        if task is not None and not task.done():
            return self._records[key]

        record = self.outbound(token_id, target_chain, sequence)
        if record is None:
            raise InvalidParameter(
                f"No outbound message for token {token_id} to chain {target_chain} seq={sequence}",
                field='sequence'
            )
        if record.status == OUTBOUND_ACKNOWLEDGED:
            logger.debug(f"Resend of acknowledged {record} ignored")
            return record

        self.circuit_breaker.ensure_operational(token_id)
        record.status = OUTBOUND_PENDING
        self._persist(record)
        self._schedule(record)
        logger.info(f"Resending {record}")
        return record

    async def recover(self, token_id: int) -> list[OutboundMessage]:
        """Restart delivery of messages left PENDING or IN_FLIGHT by a previous run."""
        resumed = []
        for record in self.store.outbound_messages(token_id):
            if record.status in (OUTBOUND_PENDING, OUTBOUND_IN_FLIGHT) and record.key not in self._in_flight:
                self._schedule(record)
                resumed.append(record)
        if resumed:
            logger.info(f"Recovered {len(resumed)} deliveries for token {token_id}")
        return resumed

    def cancel_token(self, token_id: int) -> int:
        """Cancel every queued delivery of a token. Returns the number cancelled."""
        cancelled = 0
        for key, task in list(self._in_flight.items()):
            if key[0] == token_id and not task.done():
                task.cancel()
                cancelled += 1
        if cancelled:
            logger.warning(f"Cancelled {cancelled} pending deliveries for token {token_id}")
        return cancelled

    def _on_trip(self, token_id: int, reason: str):
        self.cancel_token(token_id)

    def in_flight_count(self) -> int:
        return len(self._in_flight)

    async def flush(self):
        """Wait until every scheduled delivery has finished."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)
