"""
Transport collaborator.

The core only needs publish(target_chain, target_address, payload) and an
inbound callback on_deliver(source_chain, source_address, payload). Real
bridges are unreliable: delivery is at-least-once and may be reordered.
LoopbackNetwork connects replicas inside one process and lets the caller
choose the delivery order, duplicate envelopes and inject publish failures.
"""
import logging
import random
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Optional

from crossify.errors import TransportError

logger = logging.getLogger(__name__)

DeliveryHandler = Callable[[int, bytes, bytes], object]


class Transport:
    """Publish side of a bridge."""

    def publish(self, target_chain: int, target_address: bytes, payload: bytes) -> int:
        """Hand a payload to the bridge; returns the bridge's sequence number."""
        raise NotImplementedError


@dataclass
class Envelope:
    source_chain: int
    source_address: bytes
    target_chain: int
    target_address: bytes
    payload: bytes
    transport_sequence: int


class LoopbackNetwork:
    def __init__(self, seed: Optional[int] = None):
        self.endpoints: dict[int, tuple[bytes, DeliveryHandler]] = {}
        self.pending: list[Envelope] = []
        self.delivered: list[Envelope] = []
        self._failures = defaultdict(int)
        self._sequence = 0
        self.random = random.Random(seed)

    def attach(self, chain_id: int, address: bytes, handler: DeliveryHandler):
        """Register the receiving endpoint of a chain."""
        self.endpoints[chain_id] = (address, handler)

    def transport_for(self, chain_id: int, address: bytes) -> 'LoopbackTransport':
        return LoopbackTransport(self, chain_id, address)

    def fail_next(self, target_chain: int, count: int = 1):
        """Make the next `count` publishes to `target_chain` fail."""
        self._failures[target_chain] += count

    def _publish(self, source_chain: int, source_address: bytes, target_chain: int,
                 target_address: bytes, payload: bytes) -> int:
        if self._failures[target_chain] > 0:
            self._failures[target_chain] -= 1
            raise TransportError(f"Injected publish failure to chain {target_chain}")

        endpoint = self.endpoints.get(target_chain)
        if endpoint is None:
            raise TransportError(f"No endpoint for chain {target_chain}")
        if endpoint[0] != target_address:
            raise TransportError(f"Unknown address on chain {target_chain}: {target_address.hex()[:16]}")

        self._sequence += 1
        self.pending.append(Envelope(
            source_chain, source_address, target_chain, target_address, payload, self._sequence
        ))
        return self._sequence

    def deliver_all(self, order: str = 'fifo', duplicate: bool = False) -> list:
        """
        Deliver every pending envelope and return the handlers' results.

        order is 'fifo', 'reverse' or 'shuffle'; duplicate delivers each
        envelope twice.
        """
        batch, self.pending = self.pending, []
        if order == 'reverse':
            batch.reverse()
        elif order == 'shuffle':
            self.random.shuffle(batch)
        elif order != 'fifo':
            raise ValueError(f"Unknown delivery order: {order}")

        if duplicate:
            batch = [e for envelope in batch for e in (envelope, envelope)]

        results = []
        for envelope in batch:
            _, handler = self.endpoints[envelope.target_chain]
            results.append(handler(envelope.source_chain, envelope.source_address, envelope.payload))
            self.delivered.append(envelope)
        logger.debug(f"Delivered {len(batch)} envelopes ({order})")
        return results


class LoopbackTransport(Transport):
    def __init__(self, network: LoopbackNetwork, chain_id: int, address: bytes):
        self.network = network
        self.chain_id = chain_id
        self.address = address

    def publish(self, target_chain: int, target_address: bytes, payload: bytes) -> int:
        return self.network._publish(self.chain_id, self.address, target_chain, target_address, payload)
