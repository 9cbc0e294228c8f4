"""
Token factory: token records, bonding curve configuration and cross-chain
enablement for the tokens known to one chain replica.
"""
import logging
import time
from typing import Optional

from crossify.bonding_curve import BondingCurveParams, calculate_price, unit_price, validate_params
from crossify.codec import TokenCreationMessage
from crossify.errors import BondingCurveNotEnabled, InvalidParameter, TokenNotFound, Unauthorized
from crossify.store import StateStore

logger = logging.getLogger(__name__)

# Token ids embed the creating chain in the top 16 bits so ids never
# collide between replicas.
CHAIN_ID_SHIFT = 48
MAX_LOCAL_TOKENS = 2 ** CHAIN_ID_SHIFT

MAX_DECIMALS = 18


class TokenRecord:
    """Identity and configuration of a token."""

    def __init__(self, data: dict):
        self.token_id = int(data['token_id'])
        self.name = data['name']
        self.symbol = data['symbol']
        self.decimals = int(data['decimals'])
        self.metadata_uri = data['metadata_uri']
        self.initial_supply = int(data['initial_supply'])
        self.owner = bytes(data['owner'])
        self.cross_chain_enabled = bool(data.get('cross_chain_enabled', False))
        self.supported_chains = [int(c) for c in data.get('supported_chains', [])]
        self.emitter = bytes(data.get('emitter', b''))
        self.origin_chain = int(data['origin_chain'])
        self.curve = BondingCurveParams(data.get('curve'))
        self.created_at = int(data.get('created_at', 0))

    def supports(self, chain_id: int) -> bool:
        return self.cross_chain_enabled and chain_id in self.supported_chains

    def to_dict(self) -> dict:
        return {
            'token_id': self.token_id,
            'name': self.name,
            'symbol': self.symbol,
            'decimals': self.decimals,
            'metadata_uri': self.metadata_uri,
            'initial_supply': self.initial_supply,
            'owner': self.owner,
            'cross_chain_enabled': self.cross_chain_enabled,
            'supported_chains': list(self.supported_chains),
            'emitter': self.emitter,
            'origin_chain': self.origin_chain,
            'curve': self.curve.to_dict(),
            'created_at': self.created_at,
        }

    def __repr__(self) -> str:
        return (
            f"TokenRecord(id={self.token_id}, symbol={self.symbol}, "
            f"origin={self.origin_chain}, cross_chain={self.cross_chain_enabled}, "
            f"chains={self.supported_chains})"
        )


class TokenRegistry:
    def __init__(self, store: StateStore, chain_id: int, clock=time.time):
        self.store = store
        self.chain_id = chain_id
        self.clock = clock

    def _now(self) -> int:
        return int(self.clock())

    def find_token(self, token_id: int) -> Optional[TokenRecord]:
        with self.store.transaction(token_id) as txn:
            data = txn.get_token_data(token_id)
        return TokenRecord(data) if data else None

    def get_token(self, token_id: int) -> TokenRecord:
        token = self.find_token(token_id)
        if token is None:
            raise TokenNotFound(f"Unknown token {token_id}", field='token_id')
        return token

    def _require_owner(self, token: TokenRecord, caller: bytes):
        if token.owner != caller:
            raise Unauthorized(
                f"Caller {caller.hex()[:16]} is not the owner of token {token.token_id}",
                field='caller'
            )

    def create_token(self, owner: bytes, name: str, symbol: str, decimals: int,
                     metadata_uri: str, initial_supply: int) -> TokenRecord:
        """Create a token owned by `owner` with a disabled bonding curve."""
        if not name or not symbol:
            raise InvalidParameter("Token name and symbol are required", field='name' if not name else 'symbol')
        if not 0 <= decimals <= MAX_DECIMALS:
            raise InvalidParameter(f"Invalid decimals: {decimals}", field='decimals')
        if initial_supply < 0:
            raise InvalidParameter(f"Invalid initial supply: {initial_supply}", field='initial_supply')

        with self.store.transaction() as global_txn:
            count = global_txn.get_token_count()
            if count >= MAX_LOCAL_TOKENS:
                raise InvalidParameter("Token id space exhausted", field='token_id')
            token_id = (self.chain_id << CHAIN_ID_SHIFT) | count

            token = TokenRecord({
                'token_id': token_id,
                'name': name,
                'symbol': symbol,
                'decimals': decimals,
                'metadata_uri': metadata_uri,
                'initial_supply': initial_supply,
                'owner': owner,
                'origin_chain': self.chain_id,
                'created_at': self._now(),
            })

            with self.store.transaction(token_id) as txn:
                txn.set_token_data(token_id, token.to_dict())
                price_state = txn.get_price_state(token_id, self.chain_id)
                price_state.supply = initial_supply
                price_state.last_update_timestamp = token.created_at
                txn.set_price_state(price_state)

            global_txn.set_token_count(count + 1)

        logger.info(f"Token {token_id} ({symbol}) created with initial supply {initial_supply}")
        return token

    def configure_bonding_curve(self, caller: bytes, token_id: int, curve_type: int,
                                base_price: int, slope: int, reserve_ratio: int) -> BondingCurveParams:
        """Set (or overwrite) the token's curve and reprice its local supply."""
        params = BondingCurveParams.create(curve_type, base_price, slope, reserve_ratio)

        with self.store.transaction(token_id) as txn:
            data = txn.get_token_data(token_id)
            if data is None:
                raise TokenNotFound(f"Unknown token {token_id}", field='token_id')
            token = TokenRecord(data)
            self._require_owner(token, caller)

            token.curve = params
            txn.set_token_data(token_id, token.to_dict())

            price_state = txn.get_price_state(token_id, self.chain_id)
            price_state.last_price = unit_price(price_state.supply, params)
            price_state.override = False
            txn.set_price_state(price_state)

        logger.info(f"Bonding curve configured for token {token_id}: {params}")
        return params

    def enable_cross_chain(self, caller: bytes, token_id: int, emitter: bytes,
                           chain_ids: list[int]) -> TokenRecord:
        for chain_id in chain_ids:
            if not 0 < chain_id < 2 ** 16:
                raise InvalidParameter(f"Invalid chain id: {chain_id}", field='chain_ids')

        with self.store.transaction(token_id) as txn:
            data = txn.get_token_data(token_id)
            if data is None:
                raise TokenNotFound(f"Unknown token {token_id}", field='token_id')
            token = TokenRecord(data)
            self._require_owner(token, caller)

            token.cross_chain_enabled = True
            token.emitter = bytes(emitter)
            token.supported_chains = sorted(set(chain_ids))
            txn.set_token_data(token_id, token.to_dict())

        logger.info(f"Cross-chain enabled for token {token_id} on chains {token.supported_chains}")
        return token

    def update_metadata(self, caller: bytes, token_id: int, metadata_uri: str) -> TokenRecord:
        with self.store.transaction(token_id) as txn:
            data = txn.get_token_data(token_id)
            if data is None:
                raise TokenNotFound(f"Unknown token {token_id}", field='token_id')
            token = TokenRecord(data)
            self._require_owner(token, caller)
            token.metadata_uri = metadata_uri
            txn.set_token_data(token_id, token.to_dict())
        return token

    def calculate_price(self, token_id: int, supply: int, amount: int) -> int:
        """Quote `amount` tokens at `supply` on the token's configured curve."""
        token = self.get_token(token_id)
        if not token.curve.enabled:
            raise BondingCurveNotEnabled(f"Bonding curve not enabled for token {token_id}", field='curve')

        price = calculate_price(supply, amount, token.curve)
        logger.info(f"Price calculated for token {token_id}: supply={supply} amount={amount} price={price}")
        return price

    def import_remote_token(self, message: TokenCreationMessage, txn) -> bool:
        """
        Mirror a token announced by another chain.

        Must be called inside the token's transaction. Returns False if the
        token is already known here.
        """
        if txn.get_token_data(message.token_id) is not None:
            return False

        curve = BondingCurveParams({
            'curve_type': message.curve_type,
            'base_price': message.base_price,
            'slope': message.slope,
            'reserve_ratio': message.reserve_ratio,
            'enabled': True,
        })
        validate_params(curve)

        token = TokenRecord({
            'token_id': message.token_id,
            'name': message.name,
            'symbol': message.symbol,
            'decimals': message.decimals,
            'metadata_uri': message.metadata_uri,
            'initial_supply': message.initial_supply,
            'owner': b'',
            'cross_chain_enabled': True,
            'supported_chains': [message.source_chain],
            'origin_chain': message.source_chain,
            'curve': curve.to_dict(),
            'created_at': message.timestamp,
        })
        txn.set_token_data(message.token_id, token.to_dict())

        price_state = txn.get_price_state(message.token_id, self.chain_id)
        price_state.supply = message.initial_supply
        price_state.last_price = unit_price(message.initial_supply, curve)
        price_state.last_update_timestamp = message.timestamp
        txn.set_price_state(price_state)

        logger.info(f"Imported token {message.token_id} ({message.symbol}) from chain {message.source_chain}")
        return True

    def creation_message(self, token_id: int) -> TokenCreationMessage:
        """Build the announcement of a local token for other chains."""
        token = self.get_token(token_id)
        if not token.curve.enabled:
            raise BondingCurveNotEnabled(f"Bonding curve not enabled for token {token_id}", field='curve')
        return TokenCreationMessage(
            token_id=token.token_id,
            name=token.name,
            symbol=token.symbol,
            decimals=token.decimals,
            metadata_uri=token.metadata_uri,
            initial_supply=token.initial_supply,
            curve_type=token.curve.curve_type,
            base_price=token.curve.base_price,
            slope=token.curve.slope,
            reserve_ratio=token.curve.reserve_ratio,
            timestamp=token.created_at,
        )
