"""
Per-token state records kept by each chain replica.

Records are plain classes that round-trip through dicts so the store can
pack them with msgpack.
"""
from typing import Optional

CIRCUIT_NORMAL = 'NORMAL'
CIRCUIT_HALTED = 'HALTED'

OUTBOUND_PENDING = 'PENDING'
OUTBOUND_IN_FLIGHT = 'IN_FLIGHT'
OUTBOUND_ACKNOWLEDGED = 'ACKNOWLEDGED'
OUTBOUND_FAILED = 'FAILED'
OUTBOUND_CANCELLED = 'CANCELLED'

AUDIT_REJECTED = 'REJECTED'
AUDIT_HELD = 'HELD'
AUDIT_REPLAYED = 'REPLAYED'


class PriceState:
    """
    Price of a token as seen by one replica.

    (last_applied_sequence, last_update_timestamp, source_chain) is the
    version of the write that produced the state; concurrent writes are
    ordered by it.
    """

    def __init__(self, token_id: int, chain_id: int, data: dict = None):
        if data is None:
            data = {
                'supply': 0,
                'last_price': 0,
                'last_applied_sequence': 0,
                'last_update_timestamp': 0,
                'source_chain': chain_id,
                'override': False,
            }

        self.token_id = token_id
        self.chain_id = chain_id
        self.supply = int(data['supply'])
        self.last_price = int(data['last_price'])
        self.last_applied_sequence = int(data['last_applied_sequence'])
        self.last_update_timestamp = int(data['last_update_timestamp'])
        self.source_chain = int(data['source_chain'])
        self.override = bool(data.get('override', False))

    @property
    def version(self) -> tuple[int, int, int]:
        return (self.last_applied_sequence, self.last_update_timestamp, self.source_chain)

    def to_dict(self) -> dict:
        return {
            'supply': self.supply,
            'last_price': self.last_price,
            'last_applied_sequence': self.last_applied_sequence,
            'last_update_timestamp': self.last_update_timestamp,
            'source_chain': self.source_chain,
            'override': self.override,
        }

    def __repr__(self) -> str:
        return (
            f"PriceState("
            f"token={self.token_id}, "
            f"chain={self.chain_id}, "
            f"supply={self.supply}, "
            f"price={self.last_price}, "
            f"version={self.version})"
        )


class LiquidityState:
    """Liquidity of a token on one chain."""

    def __init__(self, token_id: int, chain_id: int, data: dict = None):
        if data is None:
            data = {
                'current_liquidity': 0,
                'total_added': 0,
                'total_removed': 0,
                'last_update_timestamp': 0,
            }

        self.token_id = token_id
        self.chain_id = chain_id
        self.current_liquidity = int(data['current_liquidity'])
        self.total_added = int(data['total_added'])
        self.total_removed = int(data['total_removed'])
        self.last_update_timestamp = int(data['last_update_timestamp'])

    def to_dict(self) -> dict:
        return {
            'current_liquidity': self.current_liquidity,
            'total_added': self.total_added,
            'total_removed': self.total_removed,
            'last_update_timestamp': self.last_update_timestamp,
        }

    def __repr__(self) -> str:
        return (
            f"LiquidityState("
            f"token={self.token_id}, "
            f"chain={self.chain_id}, "
            f"current={self.current_liquidity}, "
            f"added={self.total_added}, "
            f"removed={self.total_removed})"
        )


class CircuitState:
    """Circuit breaker state of a token."""

    def __init__(self, token_id: int, data: dict = None):
        data = data or {}
        self.token_id = token_id
        self.status = data.get('status', CIRCUIT_NORMAL)
        self.trip_time = int(data.get('trip_time', 0))
        self.trip_reason = data.get('trip_reason', "")
        self.deviation_since: Optional[int] = data.get('deviation_since')
        # [(timestamp, chain_id, amount)]
        self.outflows = [tuple(o) for o in data.get('outflows', [])]

    @property
    def is_halted(self) -> bool:
        return self.status == CIRCUIT_HALTED

    def to_dict(self) -> dict:
        return {
            'status': self.status,
            'trip_time': self.trip_time,
            'trip_reason': self.trip_reason,
            'deviation_since': self.deviation_since,
            'outflows': [list(o) for o in self.outflows],
        }

    def __repr__(self) -> str:
        return f"CircuitState(token={self.token_id}, status={self.status}, reason={self.trip_reason!r})"


class OutboundMessage:
    """An encoded message queued for delivery to one target chain."""

    def __init__(self, data: dict):
        self.token_id = int(data['token_id'])
        self.target_chain = int(data['target_chain'])
        self.sequence = int(data['sequence'])
        self.payload = bytes(data['payload'])
        self.status = data.get('status', OUTBOUND_PENDING)
        self.attempts = int(data.get('attempts', 0))
        self.last_error = data.get('last_error', "")
        self.transport_sequence = data.get('transport_sequence')
        self.created_at = int(data.get('created_at', 0))

    @property
    def key(self) -> tuple[int, int, int]:
        return (self.token_id, self.target_chain, self.sequence)

    def to_dict(self) -> dict:
        return {
            'token_id': self.token_id,
            'target_chain': self.target_chain,
            'sequence': self.sequence,
            'payload': self.payload,
            'status': self.status,
            'attempts': self.attempts,
            'last_error': self.last_error,
            'transport_sequence': self.transport_sequence,
            'created_at': self.created_at,
        }

    def __repr__(self) -> str:
        return (
            f"OutboundMessage(token={self.token_id}, target={self.target_chain}, "
            f"seq={self.sequence}, status={self.status}, attempts={self.attempts})"
        )


class AuditEntry:
    """An inbound message that was rejected or held, kept for replay."""

    def __init__(self, data: dict):
        self.audit_id = data['audit_id']
        self.source_chain = int(data['source_chain'])
        self.source_address = bytes(data['source_address'])
        self.payload = bytes(data['payload'])
        self.token_id = data.get('token_id')
        self.sequence = data.get('sequence')
        self.error_kind = data.get('error_kind', "")
        self.error_message = data.get('error_message', "")
        self.status = data.get('status', AUDIT_REJECTED)
        self.recorded_at = int(data.get('recorded_at', 0))

    def to_dict(self) -> dict:
        return {
            'audit_id': self.audit_id,
            'source_chain': self.source_chain,
            'source_address': self.source_address,
            'payload': self.payload,
            'token_id': self.token_id,
            'sequence': self.sequence,
            'error_kind': self.error_kind,
            'error_message': self.error_message,
            'status': self.status,
            'recorded_at': self.recorded_at,
        }

    def __repr__(self) -> str:
        return (
            f"AuditEntry(id={self.audit_id}, source={self.source_chain}, "
            f"kind={self.error_kind}, status={self.status})"
        )
