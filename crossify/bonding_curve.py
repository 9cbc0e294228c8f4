"""
Deterministic bonding-curve pricing.

Every replica of a token prices trades with these functions, so the
arithmetic is integer-only: floor division everywhere and every
intermediate checked against the unsigned 64-bit range the token programs
use on-chain. Overflow raises instead of wrapping or saturating.

The exponential and Bancor curves are fixed approximations, not the
textbook continuous formulas. Replicas only agree if they all run the same
approximation, so do not change the math here without a compatibility
decision across every deployed chain.
"""
from enum import IntEnum

from crossify.errors import ArithmeticOverflow, InvalidParameter

U64_MAX = 2 ** 64 - 1

# Exponential curve slope scale
SCALE = 10_000

# reserve_ratio is expressed in parts per 1000
RESERVE_RATIO_DENOMINATOR = 1000


class CurveType(IntEnum):
    LINEAR = 0
    EXPONENTIAL = 1
    BANCOR = 2


class BondingCurveParams:
    """
    Bonding curve configuration of a token.

    A token starts with a disabled curve; the first configuration call
    enables it and later calls overwrite it.
    """

    def __init__(self, data: dict = None):
        if data is None:
            data = {
                'curve_type': CurveType.LINEAR,
                'base_price': 0,
                'slope': 0,
                'reserve_ratio': 0,
                'enabled': False,
            }

        self.curve_type = int(data['curve_type'])
        self.base_price = int(data['base_price'])
        self.slope = int(data['slope'])
        self.reserve_ratio = int(data['reserve_ratio'])
        self.enabled = bool(data.get('enabled', True))

    @classmethod
    def create(cls, curve_type: int, base_price: int, slope: int = 0,
               reserve_ratio: int = 0) -> 'BondingCurveParams':
        """Build an enabled, validated parameter set."""
        params = cls({
            'curve_type': curve_type,
            'base_price': base_price,
            'slope': slope,
            'reserve_ratio': reserve_ratio,
            'enabled': True,
        })
        validate_params(params)
        return params

    def to_dict(self) -> dict:
        return {
            'curve_type': self.curve_type,
            'base_price': self.base_price,
            'slope': self.slope,
            'reserve_ratio': self.reserve_ratio,
            'enabled': self.enabled,
        }

    def __eq__(self, other) -> bool:
        if not isinstance(other, BondingCurveParams):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        try:
            name = CurveType(self.curve_type).name
        except ValueError:
            name = str(self.curve_type)
        return (
            f"BondingCurveParams("
            f"curve={name}, "
            f"base_price={self.base_price}, "
            f"slope={self.slope}, "
            f"reserve_ratio={self.reserve_ratio}, "
            f"enabled={self.enabled})"
        )


def _check_u64(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParameter(f"{field} must be an integer, got {type(value).__name__}", field=field)
    if value < 0 or value > U64_MAX:
        raise InvalidParameter(f"{field} out of range: {value}", field=field)
    return value


def _mul(a: int, b: int, operation: str) -> int:
    result = a * b
    if result > U64_MAX:
        raise ArithmeticOverflow(f"Overflow in {operation}: {a} * {b}", field=operation)
    return result


def _add(a: int, b: int, operation: str) -> int:
    result = a + b
    if result > U64_MAX:
        raise ArithmeticOverflow(f"Overflow in {operation}: {a} + {b}", field=operation)
    return result


def validate_params(params: BondingCurveParams) -> None:
    """Raise InvalidParameter if the configuration can't be priced."""
    if params.curve_type not in (CurveType.LINEAR, CurveType.EXPONENTIAL, CurveType.BANCOR):
        raise InvalidParameter(f"Invalid curve type: {params.curve_type}", field='curve_type')
    if params.reserve_ratio < 0 or params.reserve_ratio > RESERVE_RATIO_DENOMINATOR:
        raise InvalidParameter(
            f"Invalid reserve ratio: {params.reserve_ratio} (max {RESERVE_RATIO_DENOMINATOR})",
            field='reserve_ratio'
        )
    _check_u64(params.base_price, 'base_price')
    _check_u64(params.slope, 'slope')


def _linear(supply: int, amount: int, base_price: int, slope: int) -> int:
    # P = base_price + slope * supply
    unit_price = _add(base_price, _mul(slope, supply, 'slope*supply'), 'unit_price')
    return _mul(unit_price, amount, 'unit_price*amount')


def _exponential(supply: int, amount: int, base_price: int, slope: int) -> int:
    # Approximates base_price * (1 + slope)^supply
    exponent = _mul(slope, supply, 'slope*supply') // SCALE
    growth = _mul(base_price, exponent, 'base_price*exponent') // 100
    unit_price = _add(base_price, growth, 'unit_price')
    return _mul(unit_price, amount, 'unit_price*amount')


def _bancor(supply: int, amount: int, base_price: int, reserve_ratio: int) -> int:
    # Approximates base_price * (supply / 1000)^((1 / reserve_ratio) - 1)
    ratio_factor = (RESERVE_RATIO_DENOMINATOR - reserve_ratio) // RESERVE_RATIO_DENOMINATOR
    supply_factor = max(1, supply // RESERVE_RATIO_DENOMINATOR)

    power = 1
    for _ in range(ratio_factor):
        power = _mul(power, supply_factor, 'supply_factor^ratio_factor')

    unit_price = _mul(base_price, power, 'base_price*power')
    return _mul(unit_price, amount, 'unit_price*amount')


def calculate_price(supply: int, amount: int, params: BondingCurveParams) -> int:
    """
    Price of buying `amount` tokens at the current `supply`.

    Pure function: identical inputs give identical integer output on every
    replica.

    Raises:
        InvalidParameter: unknown curve type, reserve ratio above 1000, or
            inputs outside the unsigned 64-bit range
        ArithmeticOverflow: any intermediate leaves the 64-bit range
    """
    validate_params(params)
    _check_u64(supply, 'supply')
    _check_u64(amount, 'amount')

    if params.curve_type == CurveType.LINEAR:
        return _linear(supply, amount, params.base_price, params.slope)
    if params.curve_type == CurveType.EXPONENTIAL:
        return _exponential(supply, amount, params.base_price, params.slope)
    return _bancor(supply, amount, params.base_price, params.reserve_ratio)


def unit_price(supply: int, params: BondingCurveParams) -> int:
    """Price of a single token at `supply`."""
    return calculate_price(supply, 1, params)
