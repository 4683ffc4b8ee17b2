"""
Polar Bridge - Pydantic Schemas
Domain entities shared by the watcher, dispatcher and loan ledger.

RULE: No floats allowed for amounts, prices or rates.
      Amounts use UnitAmount (int smallest units), prices/rates use Decimal.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field

from polarbridge.core.errors import ErrorKind
from polarbridge.core.types import Price, Rate, Ratio, UnitAmount


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# CHAIN EVENTS
# =============================================================================

class CanonicalEventType(str, Enum):
    """Domain events the dispatcher knows how to settle."""
    LOCKED = "Locked"
    PAID_BACK = "PaidBack"
    RELEASE_REQUESTED = "ReleaseRequested"


class RawChainEvent(BaseModel):
    """Contract event as returned by a chain gateway, before mapping."""
    id: str
    topic: str
    ledger: int
    tx_ref: Optional[str] = None
    cursor: str
    data: dict = Field(default_factory=dict)


class CanonicalEvent(BaseModel):
    """
    Canonical event handed to the Settlement Dispatcher.

    Locked     -> collateral locked in the source vault
    PaidBack   -> borrowed asset paid back into the destination pool
    ReleaseRequested -> ledger-initiated release (repayment, liquidation)
    """
    model_config = ConfigDict(frozen=True)

    event_type: CanonicalEventType
    source_chain: str
    source_event_id: str = Field(..., min_length=1)
    source_tx_ref: Optional[str] = None
    amount: UnitAmount = Field(..., gt=0)
    asset: str
    source_address: Optional[str] = None
    dest_address: Optional[str] = None
    ledger_cursor: Optional[str] = None
    observed_at: datetime = Field(default_factory=utc_now)

    # Memo terms carried by the lock / payback
    loan_id: Optional[str] = None
    duration_days: Optional[int] = None
    ltv: Optional[Rate] = None

    # Release requests only
    target_chain: Optional[str] = None
    purpose: Optional[str] = None

    @property
    def key(self) -> str:
        return self.source_event_id


# Aliases for the two observed event shapes
LockEvent = CanonicalEvent
PaybackEvent = CanonicalEvent


class TxStatus(str, Enum):
    PENDING = "pending"
    FINAL = "final"
    FAILED = "failed"
    NOT_FOUND = "not_found"


# =============================================================================
# SETTLEMENT
# =============================================================================

class SettlementStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class SettlementAction(BaseModel):
    """Destination-side effect of a settlement."""
    chain: Optional[str] = None  # None -> internal ledger action
    address: Optional[str] = None
    amount: UnitAmount = 0
    asset: str


class LoanTerms(BaseModel):
    """Loan terms planned once per lock event and replayed on confirmation."""
    loan_id: Optional[str] = None
    borrower: str
    collateral_asset: str
    collateral_amount: UnitAmount
    borrowed_asset: str
    borrowed_amount: UnitAmount
    duration_days: int
    interest_rate_apy: Rate
    price: Price
    return_address: Optional[str] = None
    destination_address: Optional[str] = None


class SettlementRecord(BaseModel):
    """Exactly one record per source event id."""
    model_config = ConfigDict(from_attributes=True)

    source_event_id: str
    event: Optional[CanonicalEvent] = None
    # Kept instead of `event` when a chain event could not be mapped
    raw_event: Optional[RawChainEvent] = None
    status: SettlementStatus = SettlementStatus.PENDING
    action: Optional[SettlementAction] = None
    terms: Optional[LoanTerms] = None
    dest_tx_ref: Optional[str] = None
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    outcome: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = 0

    # Forward-only; failed -> pending only through a manual retry
    VALID_TRANSITIONS: ClassVar[dict[SettlementStatus, set[SettlementStatus]]] = {
        SettlementStatus.PENDING: {SettlementStatus.SUBMITTED, SettlementStatus.FAILED},
        SettlementStatus.SUBMITTED: {SettlementStatus.CONFIRMED, SettlementStatus.FAILED},
        SettlementStatus.CONFIRMED: set(),
        SettlementStatus.FAILED: {SettlementStatus.PENDING},
    }

    def can_transition(self, target: SettlementStatus) -> bool:
        return target in self.VALID_TRANSITIONS.get(self.status, set())

    @property
    def event_type(self) -> str:
        if self.event is not None:
            return self.event.event_type.value
        return self.raw_event.topic if self.raw_event else "unknown"


class LedgerCredit(BaseModel):
    """Internal balance credit, idempotent by reference."""
    reference: str
    account: str
    asset: str
    amount: UnitAmount
    created_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# LOANS
# =============================================================================

class LoanStatus(str, Enum):
    ACTIVE = "active"
    OVERDUE = "overdue"
    REPAID = "repaid"
    LIQUIDATED = "liquidated"


TERMINAL_LOAN_STATUSES = frozenset({LoanStatus.REPAID, LoanStatus.LIQUIDATED})
OPEN_LOAN_STATUSES = frozenset({LoanStatus.ACTIVE, LoanStatus.OVERDUE})


class HealthStatus(str, Enum):
    SAFE = "safe"
    MODERATE = "moderate"
    DANGER = "danger"
    LIQUIDATABLE = "liquidatable"


class LiquidationReason(str, Enum):
    HEALTH_FACTOR = "health_factor"
    DEADLINE = "deadline"


class AccrualCheckpoint(BaseModel):
    """Last date whose interest / late fee has been applied."""
    loan_id: str
    last_accrual_date: date


class LiquidationBreakdown(BaseModel):
    """Amounts settled by a liquidation (debt in borrowed units, collateral in collateral units)."""
    reason: LiquidationReason
    price: Price
    health_factor: Optional[Ratio] = None
    total_debt: UnitAmount
    penalty: UnitAmount
    protocol_fee: UnitAmount
    liquidator_fee: UnitAmount
    total_to_recover: UnitAmount
    collateral_value: UnitAmount
    collateral_seized: UnitAmount
    collateral_to_treasury: UnitAmount
    collateral_to_liquidator: UnitAmount
    collateral_returned: UnitAmount
    shortfall: UnitAmount

    @property
    def is_fully_recovered(self) -> bool:
        return self.shortfall == 0


class Loan(BaseModel):
    """Collateralized loan owned by the Loan Ledger."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    borrower: str
    source_event_id: Optional[str] = None

    collateral_asset: str
    collateral_amount: UnitAmount = Field(..., ge=0)
    collateral_value_at_origination: UnitAmount = Field(..., ge=0)
    borrowed_asset: str
    borrowed_amount: UnitAmount = Field(..., ge=0)

    origination_time: datetime
    duration_days: int
    interest_rate_apy: Rate
    deadline: datetime
    status: LoanStatus = LoanStatus.ACTIVE

    accrued_interest: UnitAmount = 0
    late_fee: UnitAmount = 0
    debt_at_deadline: Optional[UnitAmount] = None
    force_liquidation: bool = False

    health_factor: Optional[Ratio] = None
    last_price: Optional[Price] = None
    health_checked_at: Optional[datetime] = None

    checkpoint: AccrualCheckpoint

    return_address: Optional[str] = None
    destination_address: Optional[str] = None

    repaid_at: Optional[datetime] = None
    repayment_ref: Optional[str] = None
    amount_repaid: Optional[UnitAmount] = None
    liquidated_at: Optional[datetime] = None
    liquidation: Optional[LiquidationBreakdown] = None

    # Collateral top-ups already applied, by settlement key
    applied_references: list[str] = Field(default_factory=list)
    # Set once the release requests of a terminal loan are recorded
    releases_issued: bool = False

    version: int = 0

    VALID_TRANSITIONS: ClassVar[dict[LoanStatus, set[LoanStatus]]] = {
        LoanStatus.ACTIVE: {LoanStatus.OVERDUE, LoanStatus.REPAID, LoanStatus.LIQUIDATED},
        LoanStatus.OVERDUE: {LoanStatus.REPAID, LoanStatus.LIQUIDATED},
        LoanStatus.REPAID: set(),
        LoanStatus.LIQUIDATED: set(),
    }

    @property
    def total_debt(self) -> int:
        return self.borrowed_amount + self.accrued_interest + self.late_fee

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_LOAN_STATUSES

    def can_transition(self, target: LoanStatus) -> bool:
        return target in self.VALID_TRANSITIONS.get(self.status, set())


class PriceQuote(BaseModel):
    asset: str
    price: Price
    as_of: datetime
    stale: bool = False


class LoanPreview(BaseModel):
    """Loan terms computed without creating anything."""
    borrowed_asset: str
    borrowed_amount: UnitAmount
    collateral_asset: str
    collateral_needed: UnitAmount
    collateral_value: UnitAmount
    ltv: Rate
    max_ltv: Rate
    duration_days: int
    interest_rate_apy: Rate
    interest_estimate: UnitAmount
    total_to_repay: UnitAmount
    health_factor: Ratio
    liquidation_price: Ratio
    price: Price
    price_stale: bool = False
    deadline: datetime


class BorrowerSummary(BaseModel):
    """Totals over a borrower's open loans."""
    borrower: str
    loan_count: int = 0
    collateral_asset: str
    total_collateral: UnitAmount = 0
    borrowed_asset: str
    total_borrowed: UnitAmount = 0
    total_debt: UnitAmount = 0
