"""
Circuit breaker halting cross-chain operation of a token on anomalies.

Two independent trip conditions per token:

1. the cross-chain price stays outside the corridor for longer than the
   grace window;
2. the outflow of liquidity on one chain exceeds a fraction of the total
   known liquidity within the outflow window.

A halted token stays halted until the authority resets it.
"""
import logging
import time
from typing import Callable

from crossify.config import MAX_BPS, CircuitBreakerConfig
from crossify.errors import CircuitHalted, Unauthorized
from crossify.state import CIRCUIT_HALTED, CIRCUIT_NORMAL, CircuitState
from crossify.store import StateStore

logger = logging.getLogger(__name__)

TRIP_PRICE_DEVIATION = 'price_deviation'
TRIP_LIQUIDITY_OUTFLOW = 'liquidity_outflow'
TRIP_MANUAL = 'manual'


def within_corridor(reference: int, proposed: int, corridor_bps: int) -> bool:
    """
    True if `proposed` lies in [reference*(1-C), reference*(1+C)].

    With no reference price yet (zero) there is no corridor to enforce.
    """
    if reference <= 0:
        return True
    return abs(proposed - reference) * MAX_BPS <= reference * corridor_bps


class CircuitBreaker:
    """
    Per-token breaker. The optional `oracle` is consulted inside the token
    lane, so it must answer from memory (see oracle.ReferencePriceCache).
    """

    def __init__(self, store: StateStore, config: CircuitBreakerConfig, corridor_bps: int,
                 authority: bytes, oracle=None, monitor=None, clock=time.time):
        self.store = store
        self.config = config
        self.corridor_bps = corridor_bps
        self.authority = authority
        self.oracle = oracle
        self.monitor = monitor
        self.clock = clock
        self._listeners: list[Callable[[int, str], None]] = []

    def add_trip_listener(self, listener: Callable[[int, str], None]):
        """Call listener(token_id, reason) when a token is halted."""
        self._listeners.append(listener)

    def get_state(self, token_id: int) -> CircuitState:
        with self.store.transaction(token_id) as txn:
            return txn.get_circuit_state(token_id)

    def is_halted(self, token_id: int) -> bool:
        return self.get_state(token_id).is_halted

    def ensure_operational(self, token_id: int):
        """Raise CircuitHalted if cross-chain operation is halted for the token."""
        state = self.get_state(token_id)
        if state.is_halted:
            raise CircuitHalted(
                f"Cross-chain operation halted for token {token_id}: {state.trip_reason}",
                field='token_id'
            )

    def ensure_local_trading(self, token_id: int):
        if not self.config.allow_local_trading:
            self.ensure_operational(token_id)

    def record_deviation(self, token_id: int, local_price: int, proposed_price: int,
                         now: int = None) -> bool:
        """
        Signal an out-of-corridor price. Returns True if the token is halted.
        """
        now = int(self.clock()) if now is None else now
        with self.store.transaction(token_id) as txn:
            state = txn.get_circuit_state(token_id)
            if state.is_halted:
                return True

            if not self._corroborated(token_id, proposed_price):
                logger.info(
                    f"Deviation on token {token_id} not corroborated by reference price "
                    f"(local={local_price}, proposed={proposed_price})"
                )
                return False

            if state.deviation_since is None:
                state.deviation_since = now
                logger.warning(
                    f"Price anomaly on token {token_id}: local={local_price}, proposed={proposed_price}"
                )
            elif now - state.deviation_since > self.config.grace_window:
                self._trip(
                    state, now, TRIP_PRICE_DEVIATION,
                    f"Price outside corridor for {now - state.deviation_since}s "
                    f"(local={local_price}, proposed={proposed_price})"
                )
            txn.set_circuit_state(state)
            return state.is_halted

    def clear_deviation(self, token_id: int):
        with self.store.transaction(token_id) as txn:
            state = txn.get_circuit_state(token_id)
            if state.deviation_since is not None and not state.is_halted:
                state.deviation_since = None
                txn.set_circuit_state(state)
                logger.info(f"Price of token {token_id} back inside corridor")

    def record_outflow(self, token_id: int, chain_id: int, amount: int,
                       total_liquidity: int, now: int = None) -> bool:
        """
        Record liquidity removed on `chain_id`.

        `total_liquidity` is the total known liquidity across chains before
        the removal. Returns True if the token is halted.
        """
        if amount <= 0:
            return self.is_halted(token_id)

        now = int(self.clock()) if now is None else now
        with self.store.transaction(token_id) as txn:
            state = txn.get_circuit_state(token_id)
            if state.is_halted:
                return True

            cutoff = now - self.config.outflow_window
            state.outflows = [o for o in state.outflows if o[0] > cutoff]
            state.outflows.append((now, chain_id, amount))

            chain_outflow = sum(a for _, c, a in state.outflows if c == chain_id)
            if total_liquidity > 0 and chain_outflow * MAX_BPS > total_liquidity * self.config.outflow_threshold_bps:
                self._trip(
                    state, now, TRIP_LIQUIDITY_OUTFLOW,
                    f"Outflow of {chain_outflow} on chain {chain_id} exceeds "
                    f"{self.config.outflow_threshold_bps / 100:.2f}% of {total_liquidity}"
                )
            txn.set_circuit_state(state)
            return state.is_halted

    def halt(self, caller: bytes, token_id: int, reason: str = "operator halt"):
        self._require_authority(caller)
        with self.store.transaction(token_id) as txn:
            state = txn.get_circuit_state(token_id)
            if not state.is_halted:
                self._trip(state, int(self.clock()), TRIP_MANUAL, reason)
                txn.set_circuit_state(state)

    def reset(self, caller: bytes, token_id: int):
        """Restore NORMAL operation. Authority only."""
        self._require_authority(caller)
        with self.store.transaction(token_id) as txn:
            state = txn.get_circuit_state(token_id)
            was_halted = state.is_halted
            state.status = CIRCUIT_NORMAL
            state.trip_reason = ""
            state.deviation_since = None
            state.outflows = []
            txn.set_circuit_state(state)

        if was_halted:
            logger.info(f"Circuit breaker reset for token {token_id}")
            if self.monitor:
                self.monitor.record_reset()

    def _require_authority(self, caller: bytes):
        if caller != self.authority:
            raise Unauthorized(f"Caller {caller.hex()[:16]} may not operate the circuit breaker", field='caller')

    def _corroborated(self, token_id: int, proposed_price: int) -> bool:
        if self.oracle is None:
            return True
        reference = self.oracle.get_reference_price(token_id)
        if reference is None:
            return True
        price, confidence = reference
        if confidence < self.config.oracle_min_confidence:
            return True
        return not within_corridor(price, proposed_price, self.corridor_bps)

    def _trip(self, state: CircuitState, now: int, kind: str, reason: str):
        state.status = CIRCUIT_HALTED
        state.trip_time = now
        state.trip_reason = reason
        logger.warning(f"CIRCUIT BREAKER TRIPPED for token {state.token_id}: {reason}")
        if self.monitor:
            self.monitor.record_trip(kind)
        for listener in self._listeners:
            listener(state.token_id, reason)
