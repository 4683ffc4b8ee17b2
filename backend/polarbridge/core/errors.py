"""
Polar Bridge - Error Taxonomy

Every failure carries an ErrorKind so callers branch on a typed decision:

    TRANSIENT  -> retry with bounded exponential backoff
    PERMANENT  -> reject immediately, never retry
    FATAL      -> halt the affected loop, fail the health check,
                  advance no cursor or checkpoint
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    FATAL = "fatal"


class BridgeError(Exception):
    """Base error. Subclasses pin `kind` and a stable `code`."""

    kind: ErrorKind = ErrorKind.PERMANENT
    code: str = "bridge_error"

    def __init__(self, message: str = "", *, loan_id: Optional[str] = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.loan_id = loan_id


# =============================================================================
# PERMANENT / VALIDATION
# =============================================================================

class InvalidLtv(BridgeError):
    code = "invalid_ltv"


class InsufficientRepayment(BridgeError):
    code = "insufficient_repayment"


class AlreadyTerminal(BridgeError):
    code = "already_terminal"


class InvalidAmount(BridgeError):
    code = "invalid_amount"


class InvalidDuration(BridgeError):
    code = "invalid_duration"


class LoanNotFound(BridgeError):
    code = "loan_not_found"


class SettlementNotFound(BridgeError):
    code = "settlement_not_found"


class EventNotFound(BridgeError):
    code = "event_not_found"


class AccrualOutOfOrder(BridgeError):
    """Accrual dates must be applied one after another, never skipped."""
    code = "accrual_out_of_order"


class InvalidAddress(BridgeError):
    code = "invalid_address"


class MalformedEvent(BridgeError):
    """A chain event of a known topic whose payload cannot be settled."""
    code = "malformed_event"

    def __init__(self, message: str = "", *, code: Optional[str] = None) -> None:
        super().__init__(message)
        if code:
            self.code = code


class ChainCallFailed(BridgeError):
    """A chain gateway call failed; `kind` comes from the gateway result."""
    code = "chain_call_failed"

    def __init__(self, message: str = "", *, kind: ErrorKind = ErrorKind.TRANSIENT) -> None:
        super().__init__(message)
        self.kind = kind


class InvalidTransition(BridgeError):
    code = "invalid_transition"


# =============================================================================
# TRANSIENT
# =============================================================================

class PriceUnavailable(BridgeError):
    kind = ErrorKind.TRANSIENT
    code = "price_unavailable"


class VersionConflict(BridgeError):
    """Optimistic version check lost against a concurrent writer."""
    kind = ErrorKind.TRANSIENT
    code = "version_conflict"


class InsufficientLiquidity(BridgeError):
    """Destination pool cannot cover a release yet."""
    kind = ErrorKind.TRANSIENT
    code = "insufficient_liquidity"


# =============================================================================
# FATAL
# =============================================================================

class FatalError(BridgeError):
    kind = ErrorKind.FATAL
    code = "fatal"


class StoreUnavailable(FatalError):
    code = "store_unavailable"


class SigningUnavailable(FatalError):
    code = "signing_unavailable"


__all__ = [
    "ErrorKind",
    "BridgeError",
    "InvalidLtv",
    "InsufficientRepayment",
    "AlreadyTerminal",
    "InvalidAmount",
    "InvalidDuration",
    "LoanNotFound",
    "SettlementNotFound",
    "EventNotFound",
    "AccrualOutOfOrder",
    "InvalidTransition",
    "InvalidAddress",
    "MalformedEvent",
    "ChainCallFailed",
    "PriceUnavailable",
    "VersionConflict",
    "InsufficientLiquidity",
    "FatalError",
    "StoreUnavailable",
    "SigningUnavailable",
]
