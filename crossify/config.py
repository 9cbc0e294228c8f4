"""
Configuration management for a chain replica.
"""
import json
import os
from dataclasses import dataclass, asdict

from crossify.crypto import public_key_to_address

MAX_BPS = 10_000


@dataclass
class ChainConfig:
    """Identity of this replica."""
    chain_id: int = 1
    # PEM public key of the token-factory authority (preferred) or its hex address
    authority_public_key: str = ""
    authority_address: str = ""

    def authority(self) -> bytes:
        if self.authority_public_key:
            return public_key_to_address(self.authority_public_key)
        if self.authority_address:
            return bytes.fromhex(self.authority_address)
        raise ValueError("chain.authority_public_key or chain.authority_address is required")


@dataclass
class SyncConfig:
    """
    Inbound synchronization. Both values are deployment decisions with no
    default: every replica of a token must run with the same values.
    """
    reorder_window: int
    corridor_bps: int  # allowed deviation, in basis points of the local price

    def __post_init__(self):
        if self.reorder_window < 1:
            raise ValueError(f"reorder_window must be positive, got {self.reorder_window}")
        if not 0 < self.corridor_bps <= MAX_BPS:
            raise ValueError(f"corridor_bps must be in (0, {MAX_BPS}], got {self.corridor_bps}")


@dataclass
class RelayConfig:
    """Outbound delivery retry policy."""
    base_delay: float = 1.0  # seconds
    multiplier: float = 2.0
    max_attempts: int = 5
    max_delay: float = 60.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be positive, got {self.max_attempts}")
        if self.multiplier < 1:
            raise ValueError(f"multiplier must be >= 1, got {self.multiplier}")


@dataclass
class CircuitBreakerConfig:
    grace_window: int = 300  # seconds of continuous corridor deviation
    outflow_threshold_bps: int = 2000  # of total known liquidity
    outflow_window: int = 3600  # seconds
    allow_local_trading: bool = True
    oracle_min_confidence: int = 5000  # bps


@dataclass
class DatabaseConfig:
    path: str = "./crossify_data"
    write_buffer_size: int = 4 * 1024 * 1024
    max_open_files: int = 1000


@dataclass
class MonitoringConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 9090


@dataclass
class OracleConfig:
    url: str = ""  # empty disables the reference-price oracle
    timeout: float = 5.0
    refresh_interval: float = 30.0  # seconds between cache refreshes
    max_age: float = 120.0  # cached prices older than this are ignored


@dataclass
class Config:
    """Main configuration."""
    chain: ChainConfig
    sync: SyncConfig
    relay: RelayConfig
    circuit_breaker: CircuitBreakerConfig
    database: DatabaseConfig
    monitoring: MonitoringConfig
    oracle: OracleConfig

    @classmethod
    def default(cls, sync: SyncConfig) -> 'Config':
        """Defaults for everything except the sync parameters."""
        return cls(
            chain=ChainConfig(),
            sync=sync,
            relay=RelayConfig(),
            circuit_breaker=CircuitBreakerConfig(),
            database=DatabaseConfig(),
            monitoring=MonitoringConfig(),
            oracle=OracleConfig(),
        )

    @classmethod
    def from_dict(cls, data: dict) -> 'Config':
        sync = data.get('sync') or {}
        missing = [k for k in ('reorder_window', 'corridor_bps') if k not in sync]
        if missing:
            raise ValueError(f"Missing required sync settings: {', '.join(missing)}")

        return cls(
            chain=ChainConfig(**data.get('chain', {})),
            sync=SyncConfig(**sync),
            relay=RelayConfig(**data.get('relay', {})),
            circuit_breaker=CircuitBreakerConfig(**data.get('circuit_breaker', {})),
            database=DatabaseConfig(**data.get('database', {})),
            monitoring=MonitoringConfig(**data.get('monitoring', {})),
            oracle=OracleConfig(**data.get('oracle', {})),
        )

    @classmethod
    def from_file(cls, path: str) -> 'Config':
        """Load configuration from JSON file."""
        with open(path, 'r') as f:
            return cls.from_dict(json.load(f))

    def to_file(self, path: str):
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def to_dict(self) -> dict:
        return {
            'chain': asdict(self.chain),
            'sync': asdict(self.sync),
            'relay': asdict(self.relay),
            'circuit_breaker': asdict(self.circuit_breaker),
            'database': asdict(self.database),
            'monitoring': asdict(self.monitoring),
            'oracle': asdict(self.oracle),
        }
