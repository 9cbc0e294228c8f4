"""
Error taxonomy for the cross-chain pricing core.

Every error raised by the core derives from ValidationError so that
network-facing callbacks can catch one type, log it and keep running.
"""
from typing import Optional


class ValidationError(Exception):
    """Raised when validation fails."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    @property
    def kind(self) -> str:
        return type(self).__name__


# Pricing
class InvalidParameter(ValidationError):
    pass


class ArithmeticOverflow(ValidationError):
    pass


class BondingCurveNotEnabled(ValidationError):
    pass


# Codec
class MalformedMessage(ValidationError):
    pass


class UnknownMessageType(ValidationError):
    pass


# Trust and ordering
class UntrustedSource(ValidationError):
    pass


class StaleOrDuplicateMessage(ValidationError):
    pass


class ClosedWindowViolation(ValidationError):
    pass


# Authorization
class ChainNotSupported(ValidationError):
    pass


class Unauthorized(ValidationError):
    pass


class TokenNotFound(ValidationError):
    pass


# Anomalies
class CorridorViolation(ValidationError):
    pass


class CircuitHalted(ValidationError):
    pass


class TransportError(Exception):
    """Raised by a transport when a publish attempt fails."""
    pass
