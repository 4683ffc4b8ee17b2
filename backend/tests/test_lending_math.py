"""
Polar Bridge - Lending Policy Math Tests

Pure functions only: no store, no oracle, no clock.
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from polarbridge.core.config import LendingPolicy
from polarbridge.core.errors import InvalidAmount, InvalidDuration, InvalidLtv
from polarbridge.models.schemas import (
    AccrualCheckpoint,
    HealthStatus,
    LiquidationReason,
    Loan,
    LoanStatus,
)
from polarbridge.services import lending_math

XLM = 10_000_000
PINR = 1_000_000

POLICY = LendingPolicy()
ORIGINATED = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
DEADLINE = datetime(2026, 1, 31, 12, 0, tzinfo=timezone.utc)


def make_loan(collateral=100 * XLM, borrowed=500 * PINR, **fields) -> Loan:
    values = dict(
        id="loan-1",
        borrower="GBORROWER",
        collateral_asset="XLM",
        collateral_amount=collateral,
        collateral_value_at_origination=1000 * PINR,
        borrowed_asset="PINR",
        borrowed_amount=borrowed,
        origination_time=ORIGINATED,
        duration_days=30,
        interest_rate_apy=Decimal("0.08"),
        deadline=DEADLINE,
        checkpoint=AccrualCheckpoint(loan_id="loan-1", last_accrual_date=ORIGINATED.date()),
    )
    values.update(fields)
    return Loan(**values)


class TestPolicyConfiguration:
    """Policy is pure data with a validated fee split."""

    def test_default_shares_sum_to_one(self):
        assert POLICY.protocol_share + POLICY.liquidator_share == Decimal("1")

    def test_shares_not_summing_to_one_rejected(self):
        with pytest.raises(ValidationError):
            LendingPolicy(protocol_share=Decimal("0.6"), liquidator_share=Decimal("0.3"))

    def test_inverted_collateral_bounds_rejected(self):
        with pytest.raises(ValidationError):
            LendingPolicy(min_collateral_value=Decimal("500"), max_collateral_value=Decimal("100"))

    def test_float_rate_rejected(self):
        with pytest.raises(ValidationError):
            LendingPolicy(max_ltv=0.75)

    def test_policy_is_immutable(self):
        with pytest.raises(ValidationError):
            POLICY.max_ltv = Decimal("0.9")


class TestTerms:
    """Rate and LTV lookup by duration."""

    @pytest.mark.parametrize("days,rate", [
        (7, "0.12"),
        (10, "0.10"),
        (30, "0.08"),
        (45, "0.07"),
        (90, "0.06"),
        (180, "0.055"),
    ])
    def test_rate_for_duration(self, days, rate):
        assert lending_math.rate_for_duration(POLICY, days) == Decimal(rate)

    def test_rate_beyond_longest_bracket_uses_longest(self):
        assert lending_math.rate_for_duration(POLICY, 365) == Decimal("0.055")

    def test_rate_without_brackets_uses_base(self):
        policy = LendingPolicy(rates_by_duration={})
        assert lending_math.rate_for_duration(policy, 30) == policy.base_apy

    def test_tier_max_ltv(self):
        assert lending_math.max_ltv_for_duration(POLICY, 7) == Decimal("0.70")
        assert lending_math.max_ltv_for_duration(POLICY, 90) == Decimal("0.65")

    def test_non_tier_duration_uses_global_max(self):
        assert lending_math.max_ltv_for_duration(POLICY, 45) == POLICY.max_ltv

    def test_ltv_above_tier_max_rejected(self):
        with pytest.raises(InvalidLtv):
            lending_math.validate_ltv(POLICY, Decimal("0.71"), 7)

    def test_ltv_at_max_accepted(self):
        assert lending_math.validate_ltv(POLICY, Decimal("0.75"), 30) == Decimal("0.75")

    def test_non_positive_ltv_rejected(self):
        with pytest.raises(InvalidLtv):
            lending_math.validate_ltv(POLICY, Decimal("0"), 30)

    @pytest.mark.parametrize("days", [0, 6, 181])
    def test_duration_outside_bounds_rejected(self, days):
        with pytest.raises(InvalidDuration):
            lending_math.validate_duration(POLICY, days)

    def test_borrow_below_minimum_rejected(self):
        with pytest.raises(InvalidAmount):
            lending_math.validate_borrow(POLICY, 49 * PINR, PINR)
        lending_math.validate_borrow(POLICY, 50 * PINR, PINR)

    @pytest.mark.parametrize("value", [99 * PINR, 1_000_000 * PINR + 1])
    def test_collateral_value_outside_bounds_rejected(self, value):
        with pytest.raises(InvalidAmount):
            lending_math.validate_collateral_value(POLICY, value, PINR)

    def test_collateral_value_bounds_inclusive(self):
        lending_math.validate_collateral_value(POLICY, 100 * PINR, PINR)
        lending_math.validate_collateral_value(POLICY, 1_000_000 * PINR, PINR)


class TestValuation:
    """Collateral value, health factor and liquidation price."""

    def test_collateral_value_rounds_down(self):
        # 1 stroop at 10 PINR/XLM is worth 1 micro-PINR
        assert lending_math.collateral_value(100 * XLM, Decimal("10"), XLM, PINR) == 1000 * PINR
        assert lending_math.collateral_value(15, Decimal("0.1"), XLM, PINR) == 0

    def test_collateral_for_value_rounds_up(self):
        assert lending_math.collateral_for_value(550 * PINR, Decimal("7.5"), XLM, PINR) == 733_333_334

    def test_health_factor_formula(self):
        factor = lending_math.health_factor(
            100 * XLM, Decimal("10"), 500 * PINR, POLICY.liquidation_threshold, XLM, PINR
        )
        # collateral_value * threshold / debt
        assert factor == Decimal("1.700000")

    def test_health_factor_without_debt(self):
        factor = lending_math.health_factor(
            100 * XLM, Decimal("10"), 0, POLICY.liquidation_threshold, XLM, PINR
        )
        assert factor == Decimal("999.99")

    def test_liquidation_price_gives_unit_health(self):
        price = lending_math.liquidation_price(
            500 * PINR, 100 * XLM, POLICY.liquidation_threshold, XLM, PINR
        )
        assert price == Decimal("5.882353")
        factor = lending_math.health_factor(
            100 * XLM, price, 500 * PINR, POLICY.liquidation_threshold, XLM, PINR
        )
        assert abs(factor - Decimal("1")) < Decimal("0.00001")

    @pytest.mark.parametrize("factor,expected", [
        ("2.0", HealthStatus.SAFE),
        ("1.5", HealthStatus.MODERATE),
        ("1.3", HealthStatus.MODERATE),
        ("1.2", HealthStatus.DANGER),
        ("1.0", HealthStatus.DANGER),
        ("0.99", HealthStatus.LIQUIDATABLE),
    ])
    def test_health_status_bands(self, factor, expected):
        assert lending_math.health_status(POLICY, Decimal(factor)) == expected


class TestAccrual:
    """Daily simple interest and late fees."""

    def test_scenario_a_interest_over_ten_days(self):
        """500 borrowed at 8% APY for 10 days accrues ~1.0959."""
        daily = lending_math.daily_interest(500 * PINR, Decimal("0.08"))
        assert daily == 109_589
        assert daily * 10 == 1_095_890
        assert lending_math.interest_estimate(500 * PINR, Decimal("0.08"), 10) == 1_095_890

    def test_scenario_c_late_fee_over_five_days(self):
        """2% per day on a 540 debt snapshot for 5 days is 54.0."""
        fee = lending_math.late_fee_for_day(540 * PINR, Decimal("0.02"))
        assert fee == 10_800_000
        assert fee * 5 == 54 * PINR

    def test_days_past_deadline_uses_calendar_dates(self):
        assert lending_math.days_past_deadline(DEADLINE, date(2026, 1, 31)) == 0
        assert lending_math.days_past_deadline(DEADLINE, date(2026, 2, 1)) == 1
        assert lending_math.days_past_deadline(DEADLINE, date(2026, 1, 20)) == 0

    def test_days_until_deadline(self):
        assert lending_math.days_until_deadline(DEADLINE, date(2026, 1, 24)) == 7
        assert lending_math.days_until_deadline(DEADLINE, date(2026, 1, 31)) == 0
        assert lending_math.days_until_deadline(DEADLINE, date(2026, 2, 2)) == -2

    def test_grace_period_window(self):
        assert not lending_math.in_grace_period(POLICY, DEADLINE, date(2026, 1, 31))
        assert lending_math.in_grace_period(POLICY, DEADLINE, date(2026, 2, 3))
        assert not lending_math.in_grace_period(POLICY, DEADLINE, date(2026, 2, 4))


class TestLiquidationBreakdown:
    """Penalty split and collateral movements."""

    def test_partial_seizure_returns_remainder(self):
        loan = make_loan()
        breakdown = lending_math.liquidation_breakdown(
            POLICY, loan, Decimal("10"), LiquidationReason.DEADLINE, XLM, PINR
        )

        assert breakdown.total_debt == 500 * PINR
        assert breakdown.penalty == 50 * PINR
        assert breakdown.protocol_fee == 35 * PINR
        assert breakdown.liquidator_fee == 15 * PINR
        assert breakdown.protocol_fee + breakdown.liquidator_fee == breakdown.penalty
        assert breakdown.total_to_recover == 550 * PINR
        assert breakdown.collateral_seized == 55 * XLM
        assert breakdown.collateral_to_liquidator == 15_000_000
        assert breakdown.collateral_to_treasury == 55 * XLM - 15_000_000
        assert breakdown.collateral_returned == 45 * XLM
        assert breakdown.shortfall == 0
        assert breakdown.is_fully_recovered

    def test_underwater_loan_seizes_everything(self):
        loan = make_loan(collateral=70 * XLM)
        breakdown = lending_math.liquidation_breakdown(
            POLICY, loan, Decimal("7.5"), LiquidationReason.HEALTH_FACTOR, XLM, PINR
        )

        assert breakdown.collateral_seized == 70 * XLM
        assert breakdown.collateral_returned == 0
        assert breakdown.collateral_value == 525 * PINR
        assert breakdown.shortfall == 25 * PINR
        assert not breakdown.is_fully_recovered

    def test_recovered_includes_interest_and_late_fee(self):
        loan = make_loan(accrued_interest=1_095_890, late_fee=54 * PINR)
        breakdown = lending_math.liquidation_breakdown(
            POLICY, loan, Decimal("10"), LiquidationReason.DEADLINE, XLM, PINR
        )
        assert breakdown.total_debt == 500 * PINR + 1_095_890 + 54 * PINR
        assert breakdown.total_to_recover == breakdown.total_debt + breakdown.penalty


class TestLiquidationReason:
    """When an open loan must be liquidated."""

    def test_healthy_loan_stays_open(self):
        loan = make_loan(health_factor=Decimal("1.7"))
        assert lending_math.liquidation_reason(POLICY, loan, date(2026, 1, 10)) is None

    def test_health_below_minimum(self):
        loan = make_loan(health_factor=Decimal("0.99"))
        assert lending_math.liquidation_reason(POLICY, loan, date(2026, 1, 10)) == LiquidationReason.HEALTH_FACTOR

    def test_health_at_minimum_is_not_liquidated(self):
        loan = make_loan(health_factor=Decimal("1.0"))
        assert lending_math.liquidation_reason(POLICY, loan, date(2026, 1, 10)) is None

    def test_forced_flag(self):
        loan = make_loan(health_factor=Decimal("1.7"), force_liquidation=True)
        assert lending_math.liquidation_reason(POLICY, loan, date(2026, 1, 10)) == LiquidationReason.DEADLINE

    def test_overdue_past_max_late_days(self):
        loan = make_loan(health_factor=Decimal("1.7"), status=LoanStatus.OVERDUE)
        assert lending_math.liquidation_reason(POLICY, loan, date(2026, 2, 6)) is None
        assert lending_math.liquidation_reason(POLICY, loan, date(2026, 2, 7)) == LiquidationReason.DEADLINE

    def test_terminal_loan_never_liquidated(self):
        loan = make_loan(health_factor=Decimal("0.5"), status=LoanStatus.REPAID)
        assert lending_math.liquidation_reason(POLICY, loan, date(2026, 1, 10)) is None
