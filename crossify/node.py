"""
Main entry point for running a chain replica of the cross-chain pricing core.
"""
import asyncio
import argparse
import logging
import signal
import time
from pathlib import Path
from typing import Optional

from crossify.circuit_breaker import CircuitBreaker
from crossify.config import Config
from crossify.crypto import new_address
from crossify.db import DB
from crossify.emitter_registry import EmitterRegistry
from crossify.errors import ChainNotSupported, InvalidParameter
from crossify.monitoring import Monitor
from crossify.oracle import HttpReferenceOracle, ReferencePriceCache
from crossify.relay import RelayCoordinator
from crossify.state import LiquidityState, OutboundMessage, PriceState
from crossify.store import StateStore
from crossify.synchronizer import ApplyResult, StateSynchronizer
from crossify.token_registry import TokenRecord, TokenRegistry
from crossify.transport import LoopbackNetwork, Transport

logger = logging.getLogger(__name__)


class CrossChainNode:
    """One chain's replica: token factory, relay, synchronizer and breaker."""

    def __init__(self, config: Config, transport: Transport, address: bytes = None,
                 oracle=None, operator=None, clock=time.time):
        self.config = config
        self.chain_id = config.chain.chain_id
        self.address = address or new_address()
        self.authority = config.chain.authority()

        logger.info(f"Initializing chain {self.chain_id} replica at {config.database.path}")
        self.db = DB(
            config.database.path,
            write_buffer_size=config.database.write_buffer_size,
            max_open_files=config.database.max_open_files,
        )
        self.store = StateStore(self.db)

        self.monitor = Monitor(self.chain_id, config.monitoring.host, config.monitoring.port) \
            if config.monitoring.enabled else None
        if oracle is None and config.oracle.url:
            oracle = ReferencePriceCache(
                HttpReferenceOracle(config.oracle.url, timeout=config.oracle.timeout),
                max_age=config.oracle.max_age, clock=clock
            )
        self.oracle = oracle

        self.tokens = TokenRegistry(self.store, self.chain_id, clock=clock)
        self.emitters = EmitterRegistry(self.store, self.authority)
        self.circuit_breaker = CircuitBreaker(
            self.store, config.circuit_breaker, config.sync.corridor_bps, self.authority,
            oracle=oracle, monitor=self.monitor, clock=clock
        )
        self.relay = RelayCoordinator(
            self.chain_id, self.tokens, self.store, self.emitters, transport,
            self.circuit_breaker, config.relay, operator=operator, monitor=self.monitor, clock=clock
        )
        self.synchronizer = StateSynchronizer(
            self.chain_id, self.tokens, self.store, self.emitters, self.circuit_breaker,
            config.sync, self.authority, monitor=self.monitor, clock=clock
        )

        self.running = False
        self._reporter: Optional[asyncio.Task] = None
        self._oracle_refresher: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------ #
    # Token factory
    # ------------------------------------------------------------------ #

    def create_token(self, owner: bytes, name: str, symbol: str, decimals: int,
                     metadata_uri: str, initial_supply: int) -> TokenRecord:
        return self.tokens.create_token(owner, name, symbol, decimals, metadata_uri, initial_supply)

    def configure_bonding_curve(self, caller: bytes, token_id: int, curve_type: int,
                                base_price: int, slope: int = 0, reserve_ratio: int = 0):
        return self.tokens.configure_bonding_curve(caller, token_id, curve_type, base_price, slope, reserve_ratio)

    def enable_cross_chain(self, caller: bytes, token_id: int, chain_ids: list[int]) -> TokenRecord:
        return self.tokens.enable_cross_chain(caller, token_id, self.address, chain_ids)

    def update_metadata(self, caller: bytes, token_id: int, metadata_uri: str) -> TokenRecord:
        return self.tokens.update_metadata(caller, token_id, metadata_uri)

    def calculate_price(self, token_id: int, supply: int, amount: int) -> int:
        return self.tokens.calculate_price(token_id, supply, amount)

    async def announce_token(self, token_id: int) -> list[OutboundMessage]:
        """Announce a local token and its curve to every supported chain."""
        return await self.relay.broadcast_token_creation(token_id)

    # ------------------------------------------------------------------ #
    # Local trading and liquidity
    # ------------------------------------------------------------------ #

    def price_state(self, token_id: int) -> PriceState:
        with self.store.transaction(token_id) as txn:
            return txn.get_price_state(token_id, self.chain_id)

    def liquidity_state(self, token_id: int, chain_id: int = None) -> LiquidityState:
        chain_id = self.chain_id if chain_id is None else chain_id
        with self.store.transaction(token_id) as txn:
            return txn.get_liquidity_state(token_id, chain_id)

    async def buy(self, token_id: int, amount: int) -> int:
        """Mint `amount` tokens on the curve. Returns the cost."""
        if amount <= 0:
            raise InvalidParameter(f"Invalid amount: {amount}", field='amount')
        self.circuit_breaker.ensure_local_trading(token_id)

        supply = self.price_state(token_id).supply
        cost = self.tokens.calculate_price(token_id, supply, amount)
        self.synchronizer.apply_local_price(token_id, supply + amount)
        logger.info(f"Bought {amount} of token {token_id} for {cost}")

        await self._propagate(token_id, lambda: self.relay.broadcast_price_update(token_id))
        return cost

    async def sell(self, token_id: int, amount: int) -> int:
        """Burn `amount` tokens on the curve. Returns the refund."""
        if amount <= 0:
            raise InvalidParameter(f"Invalid amount: {amount}", field='amount')
        self.circuit_breaker.ensure_local_trading(token_id)

        supply = self.price_state(token_id).supply
        if amount > supply:
            raise InvalidParameter(f"Cannot sell {amount} of supply {supply}", field='amount')
        refund = self.tokens.calculate_price(token_id, supply - amount, amount)
        self.synchronizer.apply_local_price(token_id, supply - amount)
        logger.info(f"Sold {amount} of token {token_id} for {refund}")

        await self._propagate(token_id, lambda: self.relay.broadcast_price_update(token_id))
        return refund

    async def add_liquidity(self, token_id: int, amount: int) -> LiquidityState:
        self.circuit_breaker.ensure_local_trading(token_id)
        state = self.synchronizer.apply_local_liquidity(token_id, added=amount)
        await self._propagate(token_id, lambda: self.relay.broadcast_liquidity_update(token_id, liquidity_added=amount))
        return state

    async def remove_liquidity(self, token_id: int, amount: int) -> LiquidityState:
        self.circuit_breaker.ensure_local_trading(token_id)
        state = self.synchronizer.apply_local_liquidity(token_id, removed=amount)
        await self._propagate(token_id, lambda: self.relay.broadcast_liquidity_update(token_id, liquidity_removed=amount))
        return state

    async def _propagate(self, token_id: int, broadcast) -> list[OutboundMessage]:
        """Fan a local change out unless the token is local-only or halted."""
        token = self.tokens.get_token(token_id)
        if not token.cross_chain_enabled:
            return []
        if self.circuit_breaker.is_halted(token_id):
            logger.warning(f"Token {token_id} is halted, local change not propagated")
            return []
        try:
            return await broadcast()
        except ChainNotSupported as e:
            logger.warning(f"Local change on token {token_id} not propagated: {e}")
            return []

    # ------------------------------------------------------------------ #
    # Inbound and operator actions
    # ------------------------------------------------------------------ #

    def on_deliver(self, source_chain: int, source_address: bytes, payload: bytes) -> ApplyResult:
        return self.synchronizer.on_deliver(source_chain, source_address, payload)

    def register_emitter(self, caller: bytes, chain_id: int, sender_id: bytes):
        self.emitters.register(caller, chain_id, sender_id)

    def halt(self, caller: bytes, token_id: int, reason: str = "operator halt"):
        self.circuit_breaker.halt(caller, token_id, reason)

    def reset_circuit(self, caller: bytes, token_id: int):
        self.circuit_breaker.reset(caller, token_id)

    def replay(self, caller: bytes, audit_id: str) -> ApplyResult:
        return self.synchronizer.replay(caller, audit_id)

    async def resend(self, token_id: int, target_chain: int, sequence: int) -> OutboundMessage:
        return await self.relay.resend(token_id, target_chain, sequence)

    def get_status(self) -> dict:
        audit = self.synchronizer.audit_log()
        return {
            'chain_id': self.chain_id,
            'address': self.address.hex(),
            'trusted_chains': self.emitters.trusted_chains(),
            'in_flight': self.relay.in_flight_count(),
            'held_messages': sum(1 for e in audit if e.status == 'HELD'),
            'rejected_messages': sum(1 for e in audit if e.status == 'REJECTED'),
        }

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self):
        """Start the metrics endpoint, the status reporter and the oracle refresher."""
        self.running = True
        logger.info(f"Starting chain {self.chain_id} replica...")
        if self.monitor:
            self.monitor.start_server()
        self._reporter = asyncio.create_task(self._status_reporter())
        if isinstance(self.oracle, ReferencePriceCache):
            self._oracle_refresher = asyncio.create_task(self._refresh_reference_prices())

    async def stop(self):
        """Drain deliveries and close storage."""
        if not self.running and self.db.is_closed():
            return
        logger.info(f"Stopping chain {self.chain_id} replica...")
        self.running = False
        for task in (self._reporter, self._oracle_refresher):
            if task:
                task.cancel()
        self._reporter = self._oracle_refresher = None
        await self.relay.flush()
        if self.monitor:
            self.monitor.stop_server()
        self.store.close()
        logger.info("Replica stopped successfully")

    async def _refresh_reference_prices(self):
        """Keep the reference-price cache warm outside the token lanes."""
        while self.running:
            await self.oracle.refresh()
            await asyncio.sleep(self.config.oracle.refresh_interval)

    async def _status_reporter(self):
        """Periodically report replica status."""
        while self.running:
            await asyncio.sleep(60)  # Report every minute

            status = self.get_status()
            logger.info(f"=== Chain {self.chain_id} Status ===")
            logger.info(f"Trusted chains: {status['trusted_chains']}")
            logger.info(f"In flight: {status['in_flight']}")
            logger.info(f"Held: {status['held_messages']} Rejected: {status['rejected_messages']}")
            if self.monitor:
                self.monitor.update_system()


async def main():
    """Run a single replica attached to an in-process loopback bridge."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description='Run a cross-chain pricing replica')
    parser.add_argument('--config', type=str, required=True, help='Path to config file')
    parser.add_argument('--data-dir', type=str, help='Data directory (overrides config)')
    parser.add_argument('--metrics-port', type=int, help='Prometheus port (enables monitoring)')

    args = parser.parse_args()

    config = Config.from_file(args.config)
    if args.data_dir:
        config.database.path = str(Path(args.data_dir) / f"chain_{config.chain.chain_id}")
    if args.metrics_port:
        config.monitoring.enabled = True
        config.monitoring.port = args.metrics_port

    network = LoopbackNetwork()
    address = new_address()
    node = CrossChainNode(config, network.transport_for(config.chain.chain_id, address), address)
    network.attach(config.chain.chain_id, address, node.on_deliver)
    logger.info(f"Replica address: {address.hex()}")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    await node.start()
    try:
        await stop_event.wait()
    finally:
        await node.stop()


if __name__ == '__main__':
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Exiting...")
