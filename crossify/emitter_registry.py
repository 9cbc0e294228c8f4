"""
Trusted emitters: the sender allowed to originate messages for each chain.
"""
import logging
from typing import Optional

from crossify.errors import InvalidParameter, Unauthorized
from crossify.store import StateStore

logger = logging.getLogger(__name__)


class EmitterRegistry:
    """
    Maps chain id to the trusted sender identifier of that chain.

    Only the token-factory authority may change the table. Lookups read
    committed state without taking a lane.
    """

    def __init__(self, store: StateStore, authority: bytes):
        self.store = store
        self.authority = authority

    def _require_authority(self, caller: bytes):
        if caller != self.authority:
            raise Unauthorized(
                f"Caller {caller.hex()[:16]} is not the token factory authority",
                field='caller'
            )

    def register(self, caller: bytes, chain_id: int, sender_id: bytes):
        self._require_authority(caller)
        if not 0 < chain_id < 2 ** 16:
            raise InvalidParameter(f"Invalid chain id: {chain_id}", field='chain_id')
        if not sender_id:
            raise InvalidParameter("Emitter sender id must not be empty", field='sender_id')

        with self.store.transaction() as txn:
            previous = txn.get_emitter(chain_id)
            txn.set_emitter(chain_id, sender_id)

        if previous and previous != sender_id:
            logger.info(f"Emitter for chain {chain_id} rotated: {previous.hex()[:16]} -> {sender_id.hex()[:16]}")
        else:
            logger.info(f"Emitter for chain {chain_id} registered: {sender_id.hex()[:16]}")

    def revoke(self, caller: bytes, chain_id: int):
        self._require_authority(caller)
        with self.store.transaction() as txn:
            txn.delete_emitter(chain_id)
        logger.info(f"Emitter for chain {chain_id} revoked")

    def get_emitter(self, chain_id: int) -> Optional[bytes]:
        return self.store.reader().get_emitter(chain_id)

    def is_trusted(self, chain_id: int, sender_id: bytes) -> bool:
        expected = self.get_emitter(chain_id)
        return expected is not None and expected == bytes(sender_id)

    def trusted_chains(self) -> list[int]:
        return sorted(self.store.emitters())
