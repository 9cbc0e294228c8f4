"""
Inbound side of cross-chain synchronization.

Every delivered payload is decoded, authenticated against the emitter
table, ordered by its per-(token, source chain) sequence and applied inside
the token's lane. Concurrent price writes from different chains are
resolved last-writer-wins over (version, timestamp, source_chain), where
the version is the writer's own counter carried in the message: the higher
version wins, then the earlier timestamp, then the lower chain id. A losing
write is consumed before the price corridor is consulted.

Rejected and held messages from registered emitters are kept in the audit
log until an operator replays them.
"""
import logging
import time
from dataclasses import dataclass
from typing import Optional

from crossify.bonding_curve import unit_price
from crossify.circuit_breaker import CircuitBreaker, within_corridor
from crossify.codec import (
    CrossChainMessage,
    LiquidityUpdateMessage,
    PriceUpdateMessage,
    TokenCreationMessage,
    decode,
    message_id,
    message_kind,
)
from crossify.config import SyncConfig
from crossify.emitter_registry import EmitterRegistry
from crossify.errors import (
    BondingCurveNotEnabled,
    CircuitHalted,
    ClosedWindowViolation,
    CorridorViolation,
    InvalidParameter,
    StaleOrDuplicateMessage,
    TokenNotFound,
    Unauthorized,
    UntrustedSource,
    ValidationError,
)
from crossify.state import (
    AUDIT_HELD,
    AUDIT_REJECTED,
    AUDIT_REPLAYED,
    AuditEntry,
    LiquidityState,
    PriceState,
)
from crossify.store import StateStore, StoreTransaction
from crossify.token_registry import CHAIN_ID_SHIFT, TokenRecord, TokenRegistry

logger = logging.getLogger(__name__)

APPLIED = 'APPLIED'
SUPERSEDED = 'SUPERSEDED'
REJECTED = 'REJECTED'
HELD = 'HELD'


def supersedes(incoming: tuple[int, int, int], current: tuple[int, int, int]) -> bool:
    """True if write version `incoming` wins over `current`."""
    in_seq, in_ts, in_chain = incoming
    cur_seq, cur_ts, cur_chain = current
    if in_seq != cur_seq:
        return in_seq > cur_seq
    if in_ts != cur_ts:
        return in_ts < cur_ts
    return in_chain < cur_chain


@dataclass
class ApplyResult:
    status: str
    message: Optional[CrossChainMessage] = None
    error: Optional[ValidationError] = None
    audit_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (APPLIED, SUPERSEDED)


class StateSynchronizer:
    def __init__(self, chain_id: int, tokens: TokenRegistry, store: StateStore,
                 emitters: EmitterRegistry, circuit_breaker: CircuitBreaker,
                 config: SyncConfig, authority: bytes, monitor=None, clock=time.time):
        self.chain_id = chain_id
        self.tokens = tokens
        self.store = store
        self.emitters = emitters
        self.circuit_breaker = circuit_breaker
        self.config = config
        self.authority = authority
        self.monitor = monitor
        self.clock = clock

    def _now(self) -> int:
        return int(self.clock())

    # ------------------------------------------------------------------ #
    # Inbound entry points
    # ------------------------------------------------------------------ #

    def on_deliver(self, source_chain: int, source_address: bytes, payload: bytes) -> ApplyResult:
        """
        Transport callback. Validation failures are logged and returned,
        never raised; those from registered emitters are also audited.
        """
        return self._handle(source_chain, source_address, payload, check_window=True)

    def apply(self, source_chain: int, source_address: bytes, payload: bytes) -> ApplyResult:
        """Like on_deliver, but raises the validation error of a rejected message."""
        result = self.on_deliver(source_chain, source_address, payload)
        if result.error is not None:
            raise result.error
        return result

    def replay(self, caller: bytes, audit_id: str) -> ApplyResult:
        """
        Re-run an audited message through validation. Authority only.

        A message held for arriving beyond the reorder window is accepted
        past the window on replay; every other check still applies.
        """
        if caller != self.authority:
            raise Unauthorized(f"Caller {caller.hex()[:16]} may not replay messages", field='caller')

        entry = self.store.reader().get_audit_entry(audit_id)
        if entry is None:
            raise InvalidParameter(f"Unknown audit entry {audit_id}", field='audit_id')
        if entry.status == AUDIT_REPLAYED:
            raise InvalidParameter(f"Audit entry {audit_id} was already replayed", field='audit_id')

        logger.info(f"Replaying {entry}")
        result = self._handle(
            entry.source_chain, entry.source_address, entry.payload,
            check_window=entry.status != AUDIT_HELD
        )
        if result.ok:
            entry.status = AUDIT_REPLAYED
            with self.store.transaction() as txn:
                txn.set_audit_entry(entry)
            result.audit_id = audit_id
        return result

    def audit_log(self) -> list[AuditEntry]:
        return self.store.audit_entries()

    def held_messages(self) -> list[AuditEntry]:
        return [e for e in self.store.audit_entries() if e.status == AUDIT_HELD]

    def rejected_messages(self) -> list[AuditEntry]:
        return [e for e in self.store.audit_entries() if e.status == AUDIT_REJECTED]

    # ------------------------------------------------------------------ #
    # Validation and apply
    # ------------------------------------------------------------------ #

    def _handle(self, source_chain: int, source_address: bytes, payload: bytes,
                check_window: bool) -> ApplyResult:
        message = None
        try:
            message = decode(payload)
            status = self._process(source_chain, source_address, message, check_window)
        except ClosedWindowViolation as e:
            return self._refuse(HELD, AUDIT_HELD, source_chain, source_address, payload, message, e)
        except ValidationError as e:
            return self._refuse(REJECTED, AUDIT_REJECTED, source_chain, source_address, payload, message, e)

        logger.info(
            f"{message_kind(message)} for token {message.token_id} from chain {source_chain} "
            f"seq={message.sequence}: {status}"
        )
        if self.monitor:
            self.monitor.record_inbound(message_kind(message), status)
        return ApplyResult(status, message)

    def _refuse(self, status: str, audit_status: str, source_chain: int, source_address: bytes,
                payload: bytes, message: Optional[CrossChainMessage], error: ValidationError) -> ApplyResult:
        audit_id = None
        # Only registered emitters can add to the persisted audit log
        if self.emitters.is_trusted(source_chain, source_address):
            audit_id = self._audit(audit_status, source_chain, source_address, payload, message, error)

        kind = message_kind(message) if message else 'unknown'
        if isinstance(error, StaleOrDuplicateMessage):
            logger.debug(f"Dropped duplicate {kind} from chain {source_chain}: {error}")
        else:
            logger.warning(f"{status} {kind} from chain {source_chain} ({error.kind}): {error}")
        if self.monitor:
            self.monitor.record_inbound(kind, status)
        return ApplyResult(status, message, error, audit_id)

    def _audit(self, audit_status: str, source_chain: int, source_address: bytes,
               payload: bytes, message: Optional[CrossChainMessage], error: ValidationError) -> str:
        audit_id = message_id(payload).hex()
        entry = AuditEntry({
            'audit_id': audit_id,
            'source_chain': source_chain,
            'source_address': bytes(source_address),
            'payload': payload,
            'token_id': message.token_id if message else None,
            'sequence': message.sequence if message else None,
            'error_kind': error.kind,
            'error_message': str(error),
            'status': audit_status,
            'recorded_at': self._now(),
        })
        with self.store.transaction() as txn:
            previous = txn.get_audit_entry(audit_id)
            # A late duplicate of an already replayed message keeps the replay record
            if previous is None or previous.status != AUDIT_REPLAYED:
                txn.set_audit_entry(entry)
        return audit_id

    def _process(self, source_chain: int, source_address: bytes, message: CrossChainMessage,
                 check_window: bool) -> str:
        if message.source_chain != source_chain:
            raise UntrustedSource(
                f"Message claims chain {message.source_chain} but was delivered from chain {source_chain}",
                field='source_chain'
            )
        if not self.emitters.is_trusted(source_chain, source_address):
            raise UntrustedSource(
                f"Sender {bytes(source_address).hex()[:16]} is not the trusted emitter of chain {source_chain}",
                field='source_address'
            )

        error = None
        with self.store.transaction(message.token_id) as txn:
            try:
                status = self._apply_in_lane(txn, message, check_window)
            except ValidationError as e:
                # Commit what the breaker recorded; nothing else was written.
                error = e
        if error is not None:
            raise error
        return status

    def _apply_in_lane(self, txn: StoreTransaction, message: CrossChainMessage, check_window: bool) -> str:
        token_id = message.token_id
        source_chain = message.source_chain

        circuit = txn.get_circuit_state(token_id)
        if circuit.is_halted:
            raise CircuitHalted(
                f"Cross-chain operation halted for token {token_id}: {circuit.trip_reason}",
                field='token_id'
            )

        last_applied = txn.get_last_applied_sequence(token_id, source_chain)
        if message.sequence <= last_applied:
            raise StaleOrDuplicateMessage(
                f"Sequence {message.sequence} from chain {source_chain} for token {token_id} "
                f"already applied (last {last_applied})",
                field='sequence'
            )
        if check_window and message.sequence > last_applied + self.config.reorder_window:
            raise ClosedWindowViolation(
                f"Sequence {message.sequence} from chain {source_chain} for token {token_id} is beyond "
                f"the reorder window (last {last_applied}, window {self.config.reorder_window})",
                field='sequence'
            )

        if isinstance(message, TokenCreationMessage):
            status = self._apply_token_creation(txn, message)
        else:
            data = txn.get_token_data(token_id)
            if data is None:
                raise TokenNotFound(f"Unknown token {token_id}", field='token_id')
            token = TokenRecord(data)
            if isinstance(message, PriceUpdateMessage):
                status = self._apply_price_update(txn, token, message)
            else:
                status = self._apply_liquidity_update(txn, token, message)

        txn.set_last_applied_sequence(token_id, source_chain, message.sequence)
        return status

    def _apply_token_creation(self, txn: StoreTransaction, message: TokenCreationMessage) -> str:
        if message.token_id >> CHAIN_ID_SHIFT != message.source_chain:
            raise UntrustedSource(
                f"Chain {message.source_chain} cannot announce token {message.token_id}",
                field='token_id'
            )
        if self.tokens.import_remote_token(message, txn):
            return APPLIED
        return SUPERSEDED

    def _apply_price_update(self, txn: StoreTransaction, token: TokenRecord,
                            message: PriceUpdateMessage) -> str:
        token_id = token.token_id
        local = txn.get_price_state(token_id, self.chain_id)

        incoming = (message.version or message.sequence, message.timestamp, message.source_chain)
        if not supersedes(incoming, local.version):
            logger.debug(f"Write {incoming} on token {token_id} loses to {local.version}")
            return SUPERSEDED

        if not within_corridor(local.last_price, message.current_price, self.config.corridor_bps):
            self.circuit_breaker.record_deviation(token_id, local.last_price, message.current_price, now=self._now())
            raise CorridorViolation(
                f"Price {message.current_price} from chain {message.source_chain} is outside the "
                f"{self.config.corridor_bps}bps corridor around {local.last_price}",
                field='current_price'
            )

        if token.curve.enabled:
            computed = unit_price(message.current_supply, token.curve)
            local.override = computed != message.current_price
        else:
            local.override = False

        local.supply = message.current_supply
        local.last_price = message.current_price
        local.last_applied_sequence = incoming[0]
        local.last_update_timestamp = message.timestamp
        local.source_chain = message.source_chain
        txn.set_price_state(local)

        self.circuit_breaker.clear_deviation(token_id)
        if self.monitor:
            self.monitor.set_price(token_id, local.last_price)
        return APPLIED

    def _apply_liquidity_update(self, txn: StoreTransaction, token: TokenRecord,
                                message: LiquidityUpdateMessage) -> str:
        total_before = self._total_liquidity(txn, token)

        remote = txn.get_liquidity_state(token.token_id, message.source_chain)
        remote.total_added += message.liquidity_added
        remote.total_removed += message.liquidity_removed
        remote.current_liquidity = message.current_liquidity
        remote.last_update_timestamp = message.timestamp
        txn.set_liquidity_state(remote)

        self.circuit_breaker.record_outflow(
            token.token_id, message.source_chain, message.liquidity_removed, total_before, now=self._now()
        )
        return APPLIED

    def _total_liquidity(self, txn: StoreTransaction, token: TokenRecord) -> int:
        chains = {self.chain_id, token.origin_chain, *token.supported_chains}
        return sum(txn.get_liquidity_state(token.token_id, c).current_liquidity for c in chains)

    # ------------------------------------------------------------------ #
    # Local writes
    # ------------------------------------------------------------------ #

    def apply_local_price(self, token_id: int, supply: int, timestamp: int = None,
                          sequence: int = None) -> PriceState:
        """
        Record a local supply change and reprice it on the token's curve.

        Local writes always apply here; their version is one above the
        stored version unless `sequence` is given.
        """
        timestamp = self._now() if timestamp is None else timestamp
        with self.store.transaction(token_id) as txn:
            data = txn.get_token_data(token_id)
            if data is None:
                raise TokenNotFound(f"Unknown token {token_id}", field='token_id')
            token = TokenRecord(data)
            if not token.curve.enabled:
                raise BondingCurveNotEnabled(f"Bonding curve not enabled for token {token_id}", field='curve')

            local = txn.get_price_state(token_id, self.chain_id)
            local.supply = supply
            local.last_price = unit_price(supply, token.curve)
            local.last_applied_sequence = local.last_applied_sequence + 1 if sequence is None else sequence
            local.last_update_timestamp = timestamp
            local.source_chain = self.chain_id
            local.override = False
            txn.set_price_state(local)

        logger.info(f"Local price of token {token_id}: supply={supply} price={local.last_price}")
        if self.monitor:
            self.monitor.set_price(token_id, local.last_price)
        return local

    def apply_local_liquidity(self, token_id: int, added: int = 0, removed: int = 0,
                              timestamp: int = None) -> LiquidityState:
        """Record liquidity added to or removed from this chain's pool."""
        if added < 0 or removed < 0:
            raise InvalidParameter("Liquidity amounts must be non-negative", field='added' if added < 0 else 'removed')
        timestamp = self._now() if timestamp is None else timestamp

        with self.store.transaction(token_id) as txn:
            data = txn.get_token_data(token_id)
            if data is None:
                raise TokenNotFound(f"Unknown token {token_id}", field='token_id')
            token = TokenRecord(data)

            local = txn.get_liquidity_state(token_id, self.chain_id)
            if removed > local.current_liquidity + added:
                raise InvalidParameter(
                    f"Cannot remove {removed} from {local.current_liquidity + added} liquidity",
                    field='removed'
                )
            total_before = self._total_liquidity(txn, token)

            local.total_added += added
            local.total_removed += removed
            local.current_liquidity += added - removed
            local.last_update_timestamp = timestamp
            txn.set_liquidity_state(local)

            self.circuit_breaker.record_outflow(token_id, self.chain_id, removed, total_before, now=timestamp)

        logger.info(f"Local liquidity of token {token_id}: +{added} -{removed} -> {local.current_liquidity}")
        return local

    def total_liquidity(self, token_id: int) -> int:
        """Liquidity summed over every chain known to hold the token."""
        token = self.tokens.get_token(token_id)
        with self.store.transaction(token_id) as txn:
            return self._total_liquidity(txn, token)
