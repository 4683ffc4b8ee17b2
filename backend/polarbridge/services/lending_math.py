"""
Polar Bridge - Lending Policy Math

Pure functions over LendingPolicy data. No I/O, no clock reads.

Conventions:
    - debt / fee amounts are int smallest units of the borrowed asset
    - collateral amounts are int smallest units of the collateral asset
    - price is Decimal borrowed-asset per one whole collateral unit
    - health factor / LTV are Decimal ratios
"""

from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from polarbridge.core.config import LendingPolicy
from polarbridge.core.errors import InvalidAmount, InvalidDuration, InvalidLtv
from polarbridge.core.types import Units
from polarbridge.models.schemas import (
    HealthStatus,
    LiquidationBreakdown,
    LiquidationReason,
    Loan,
    LoanStatus,
)


DAYS_PER_YEAR = Decimal("365")
HEALTH_FACTOR_PLACES = Decimal("0.000001")
NO_DEBT_HEALTH_FACTOR = Decimal("999.99")


# =============================================================================
# TERMS
# =============================================================================

def rate_for_duration(policy: LendingPolicy, duration_days: int) -> Decimal:
    """APY for a duration: first bracket whose length covers it, else the longest bracket."""
    rates = policy.rates_by_duration
    if not rates:
        return policy.base_apy

    durations = sorted(rates)
    for days in durations:
        if duration_days <= days:
            return rates[days]
    return rates[durations[-1]]


def max_ltv_for_duration(policy: LendingPolicy, duration_days: int) -> Decimal:
    """Preset tier maximum when the duration matches a tier, otherwise the global maximum."""
    for tier in policy.tiers.values():
        if tier.duration_days == duration_days:
            return min(tier.max_ltv, policy.max_ltv)
    return policy.max_ltv


def validate_duration(policy: LendingPolicy, duration_days: int) -> None:
    if duration_days < policy.min_duration_days or duration_days > policy.max_duration_days:
        raise InvalidDuration(
            f"Duration must be between {policy.min_duration_days} and "
            f"{policy.max_duration_days} days, got {duration_days}"
        )


def validate_ltv(policy: LendingPolicy, ltv: Decimal, duration_days: int) -> Decimal:
    """Raise InvalidLtv when `ltv` exceeds the duration tier's maximum. Returns the maximum."""
    max_ltv = max_ltv_for_duration(policy, duration_days)
    if ltv <= 0:
        raise InvalidLtv(f"LTV must be positive, got {ltv}")
    if ltv > max_ltv:
        raise InvalidLtv(
            f"LTV {ltv:.4f} exceeds maximum {max_ltv} for {duration_days}-day loans"
        )
    return max_ltv


def validate_borrow(policy: LendingPolicy, borrowed_amount: int, borrowed_scale: int) -> None:
    minimum = Units.from_decimal(policy.min_borrow, borrowed_scale)
    if borrowed_amount <= 0 or borrowed_amount < minimum:
        raise InvalidAmount(
            f"Minimum borrow amount is {policy.min_borrow}, got "
            f"{Units.to_decimal(borrowed_amount, borrowed_scale)}"
        )


def validate_collateral_value(policy: LendingPolicy, value: int, borrowed_scale: int) -> None:
    """Raise InvalidAmount when collateral worth `value` (borrowed units) is outside policy bounds."""
    minimum = Units.from_decimal(policy.min_collateral_value, borrowed_scale)
    maximum = Units.from_decimal(policy.max_collateral_value, borrowed_scale)
    if value < minimum or value > maximum:
        raise InvalidAmount(
            f"Collateral value must be between {policy.min_collateral_value} and "
            f"{policy.max_collateral_value}, got {Units.to_decimal(value, borrowed_scale)}"
        )


# =============================================================================
# VALUATION
# =============================================================================

def collateral_value(
    collateral_amount: int,
    price: Decimal,
    collateral_scale: int,
    borrowed_scale: int,
) -> int:
    """Collateral value in borrowed-asset smallest units (rounded down)."""
    value = Decimal(collateral_amount) / collateral_scale * price * borrowed_scale
    return Units.floor(value)


def collateral_for_value(
    value: Decimal | int,
    price: Decimal,
    collateral_scale: int,
    borrowed_scale: int,
) -> int:
    """Collateral units worth at least `value` borrowed units (rounded up)."""
    units = Decimal(value) / borrowed_scale / price * collateral_scale
    return Units.ceil(units)


def loan_to_value(borrowed_amount: int, value: int) -> Decimal:
    if value <= 0:
        return Decimal("Infinity")
    return Decimal(borrowed_amount) / Decimal(value)


def health_factor(
    collateral_amount: int,
    price: Decimal,
    total_debt: int,
    liquidation_threshold: Decimal,
    collateral_scale: int,
    borrowed_scale: int,
) -> Decimal:
    """(collateral_amount x price x liquidation_threshold) / total_debt."""
    if total_debt <= 0:
        return NO_DEBT_HEALTH_FACTOR
    weighted = Decimal(collateral_amount) / collateral_scale * price * liquidation_threshold
    debt = Decimal(total_debt) / borrowed_scale
    return (weighted / debt).quantize(HEALTH_FACTOR_PLACES, rounding=ROUND_HALF_UP)


def liquidation_price(
    total_debt: int,
    collateral_amount: int,
    liquidation_threshold: Decimal,
    collateral_scale: int,
    borrowed_scale: int,
) -> Decimal:
    """Collateral price at which the health factor reaches 1.0."""
    if collateral_amount <= 0:
        return Decimal("0")
    debt = Decimal(total_debt) / borrowed_scale
    weighted = Decimal(collateral_amount) / collateral_scale * liquidation_threshold
    return (debt / weighted).quantize(HEALTH_FACTOR_PLACES, rounding=ROUND_HALF_UP)


def health_status(policy: LendingPolicy, factor: Decimal) -> HealthStatus:
    if factor > policy.safe_health_factor:
        return HealthStatus.SAFE
    if factor > policy.warning_health_factor:
        return HealthStatus.MODERATE
    if factor >= policy.min_health_factor:
        return HealthStatus.DANGER
    return HealthStatus.LIQUIDATABLE


# =============================================================================
# ACCRUAL
# =============================================================================

def daily_interest(borrowed_amount: int, interest_rate_apy: Decimal) -> int:
    """borrowed_amount x apy / 365, half-up to whole units."""
    return Units.multiply(borrowed_amount, interest_rate_apy / DAYS_PER_YEAR)


def interest_estimate(borrowed_amount: int, interest_rate_apy: Decimal, days: int) -> int:
    return daily_interest(borrowed_amount, interest_rate_apy) * days


def late_fee_for_day(debt_at_deadline: int, late_fee_per_day: Decimal) -> int:
    return Units.multiply(debt_at_deadline, late_fee_per_day)


def days_past_deadline(deadline: datetime, on: date) -> int:
    return max(0, (on - deadline.date()).days)


def days_until_deadline(deadline: datetime, on: date) -> int:
    return (deadline.date() - on).days


def in_grace_period(policy: LendingPolicy, deadline: datetime, on: date) -> bool:
    late = days_past_deadline(deadline, on)
    return 0 < late <= policy.grace_period_days


# =============================================================================
# LIQUIDATION
# =============================================================================

def liquidation_breakdown(
    policy: LendingPolicy,
    loan: Loan,
    price: Decimal,
    reason: LiquidationReason,
    collateral_scale: int,
    borrowed_scale: int,
    factor: Optional[Decimal] = None,
) -> LiquidationBreakdown:
    """
    Split a liquidation into debt, penalty and collateral movements.

    The liquidator fee is the exact remainder of the penalty after the
    protocol fee, so protocol_fee + liquidator_fee == penalty always.
    """
    total_debt = loan.total_debt
    penalty = Units.multiply(total_debt, policy.liquidation_penalty)
    protocol_fee = Units.multiply(penalty, policy.protocol_share)
    liquidator_fee = penalty - protocol_fee
    total_to_recover = total_debt + penalty

    value = collateral_value(loan.collateral_amount, price, collateral_scale, borrowed_scale)
    needed = collateral_for_value(total_to_recover, price, collateral_scale, borrowed_scale)
    seized = min(needed, loan.collateral_amount)
    returned = loan.collateral_amount - seized

    to_liquidator = min(
        seized,
        collateral_for_value(liquidator_fee, price, collateral_scale, borrowed_scale),
    )
    to_treasury = seized - to_liquidator

    return LiquidationBreakdown(
        reason=reason,
        price=price,
        health_factor=factor,
        total_debt=total_debt,
        penalty=penalty,
        protocol_fee=protocol_fee,
        liquidator_fee=liquidator_fee,
        total_to_recover=total_to_recover,
        collateral_value=value,
        collateral_seized=seized,
        collateral_to_treasury=to_treasury,
        collateral_to_liquidator=to_liquidator,
        collateral_returned=returned,
        shortfall=max(0, total_to_recover - value),
    )


def liquidation_reason(
    policy: LendingPolicy, loan: Loan, on: date
) -> Optional[LiquidationReason]:
    """Why an open loan must be liquidated on `on`, or None when it may stay open."""
    if loan.is_terminal:
        return None
    if loan.force_liquidation:
        return LiquidationReason.DEADLINE
    if (
        loan.status == LoanStatus.OVERDUE
        and days_past_deadline(loan.deadline, on) >= policy.max_late_days
    ):
        return LiquidationReason.DEADLINE
    if loan.health_factor is not None and loan.health_factor < policy.min_health_factor:
        return LiquidationReason.HEALTH_FACTOR
    return None
