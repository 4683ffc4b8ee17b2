"""
Polar Bridge - Loan Ledger Tests

Origination, accrual checkpoints, late fees, repayment, top-ups,
liquidation and the release outbox.
"""

import logging
from datetime import date, timedelta
from decimal import Decimal

import pytest

from conftest import BORROWER, DESTINATION, PINR, XLM, originate
from polarbridge.core.errors import (
    AccrualOutOfOrder,
    AlreadyTerminal,
    InsufficientRepayment,
    InvalidAmount,
    InvalidDuration,
    InvalidLtv,
    LoanNotFound,
    PriceUnavailable,
)
from polarbridge.models.schemas import (
    LiquidationReason,
    LoanStatus,
    SettlementStatus,
)
from polarbridge.services import lending_math
from polarbridge.services.loan_ledger import loan_id_for_event

START = date(2026, 1, 1)


async def accrue_through(ledger, loan_id, last_day: date):
    loan = await ledger.get_loan(loan_id)
    day = loan.checkpoint.last_accrual_date + timedelta(days=1)
    while day <= last_day:
        loan = await ledger.accrue_one_day(loan_id, day)
        day += timedelta(days=1)
    return loan


class TestOrigination:
    """originate() and preview()."""

    @pytest.mark.asyncio
    async def test_originate_computes_terms(self, ledger, clock):
        loan = await originate(ledger)

        assert loan.status == LoanStatus.ACTIVE
        assert loan.version == 1
        assert loan.interest_rate_apy == Decimal("0.08")
        assert loan.deadline == clock() + timedelta(days=30)
        assert loan.health_factor == Decimal("1.700000")
        assert loan.collateral_value_at_origination == 1000 * PINR
        assert loan.checkpoint.last_accrual_date == START
        assert loan.return_address == BORROWER
        assert loan.destination_address == DESTINATION

    @pytest.mark.asyncio
    async def test_originate_idempotent_on_loan_id(self, ledger, store):
        first = await originate(ledger, loan_id="loan-a")
        second = await originate(ledger, loan_id="loan-a", borrowed=600 * PINR)

        assert second.id == first.id
        assert second.borrowed_amount == 500 * PINR
        assert len(await store.list_loans()) == 1

    @pytest.mark.asyncio
    async def test_ltv_above_tier_max_rejected(self, ledger):
        with pytest.raises(InvalidLtv):
            await originate(ledger, borrowed=800 * PINR)

    @pytest.mark.asyncio
    async def test_short_tier_has_lower_max(self, ledger):
        with pytest.raises(InvalidLtv):
            await originate(ledger, borrowed=720 * PINR, duration_days=7)

    @pytest.mark.asyncio
    async def test_duration_and_amount_validation(self, ledger):
        with pytest.raises(InvalidDuration):
            await originate(ledger, duration_days=3)
        with pytest.raises(InvalidAmount):
            await originate(ledger, borrowed=10 * PINR)
        with pytest.raises(InvalidAmount):
            await originate(ledger, collateral=0)

    @pytest.mark.asyncio
    async def test_originate_requires_fresh_price(self, ledger, prices, clock):
        await ledger.oracle.get_price("XLM")
        prices.set_price("XLM", None)
        clock.advance(minutes=5)

        with pytest.raises(PriceUnavailable):
            await originate(ledger)

    @pytest.mark.asyncio
    async def test_preview(self, ledger):
        preview = await ledger.preview(500 * PINR, Decimal("0.5"), 30)

        assert preview.collateral_needed == 100 * XLM
        assert preview.collateral_value == 1000 * PINR
        assert preview.interest_rate_apy == Decimal("0.08")
        assert preview.interest_estimate == 109_589 * 30
        assert preview.total_to_repay == 500 * PINR + 109_589 * 30
        assert preview.health_factor == Decimal("1.700000")
        assert preview.liquidation_price == Decimal("5.882353")
        assert preview.max_ltv == Decimal("0.75")
        assert not preview.price_stale

    @pytest.mark.asyncio
    async def test_preview_defaults_to_tier_max(self, ledger):
        preview = await ledger.preview(700 * PINR, duration_days=7)
        assert preview.ltv == Decimal("0.70")
        assert preview.collateral_needed == 100 * XLM

    @pytest.mark.asyncio
    async def test_preview_rejects_excessive_ltv(self, ledger):
        with pytest.raises(InvalidLtv):
            await ledger.preview(500 * PINR, Decimal("0.8"), 30)

    @pytest.mark.asyncio
    async def test_terms_for_uses_floor_of_value(self, ledger):
        terms = await ledger.terms_for(BORROWER, 100 * XLM, DESTINATION, loan_id="loan-x")
        assert terms.borrowed_amount == 750 * PINR
        assert terms.duration_days == 30
        assert terms.price == Decimal("10")
        assert terms.loan_id == "loan-x"

    @pytest.mark.asyncio
    async def test_collateral_value_bounds(self, ledger):
        with pytest.raises(InvalidAmount, match="Collateral value"):
            await ledger.terms_for(BORROWER, 9 * XLM, DESTINATION)
        with pytest.raises(InvalidAmount, match="Collateral value"):
            await ledger.terms_for(BORROWER, 200_000 * XLM, DESTINATION)
        with pytest.raises(InvalidAmount, match="Collateral value"):
            await ledger.preview(60 * PINR, Decimal("0.75"), 30)

        terms = await ledger.terms_for(BORROWER, 10 * XLM, DESTINATION, ltv=Decimal("0.5"))
        assert terms.borrowed_amount == 50 * PINR

    def test_loan_id_is_deterministic(self):
        assert loan_id_for_event("stellar:evt-1") == loan_id_for_event("stellar:evt-1")
        assert loan_id_for_event("stellar:evt-1") != loan_id_for_event("stellar:evt-2")


class TestAccrual:
    """accrue_one_day() checkpoints and late fees."""

    @pytest.mark.asyncio
    async def test_scenario_a_ten_days_of_interest(self, ledger):
        loan = await originate(ledger)
        loan = await accrue_through(ledger, loan.id, START + timedelta(days=10))

        assert loan.accrued_interest == 1_095_890
        assert loan.checkpoint.last_accrual_date == START + timedelta(days=10)
        assert loan.total_debt == 500 * PINR + 1_095_890

    @pytest.mark.asyncio
    async def test_same_date_twice_changes_nothing(self, ledger):
        loan = await originate(ledger)
        first = await ledger.accrue_one_day(loan.id, START + timedelta(days=1))
        again = await ledger.accrue_one_day(loan.id, START + timedelta(days=1))

        assert again.accrued_interest == first.accrued_interest == 109_589
        assert again.version == first.version

    @pytest.mark.asyncio
    async def test_origination_date_is_already_checkpointed(self, ledger):
        loan = await originate(ledger)
        unchanged = await ledger.accrue_one_day(loan.id, START)
        assert unchanged.accrued_interest == 0
        assert unchanged.version == loan.version

    @pytest.mark.asyncio
    async def test_gap_rejected(self, ledger):
        loan = await originate(ledger)
        with pytest.raises(AccrualOutOfOrder):
            await ledger.accrue_one_day(loan.id, START + timedelta(days=2))

    @pytest.mark.asyncio
    async def test_unknown_loan(self, ledger):
        with pytest.raises(LoanNotFound):
            await ledger.accrue_one_day("missing", START)

    @pytest.mark.asyncio
    async def test_deadline_reminders(self, ledger, caplog):
        loan = await originate(ledger)
        with caplog.at_level(logging.WARNING, logger="polarbridge.services.loan_ledger"):
            await accrue_through(ledger, loan.id, START + timedelta(days=30))

        reminders = [r.getMessage() for r in caplog.records if "due in" in r.getMessage()]
        assert [m.split("due in ")[1].split(" ")[0] for m in reminders] == ["7", "3", "1"]
        assert all(loan.id in m and "2026-01-31" in m for m in reminders)

    @pytest.mark.asyncio
    async def test_late_fees_from_deadline_snapshot(self, ledger):
        loan = await originate(ledger, duration_days=7)
        daily = lending_math.daily_interest(500 * PINR, Decimal("0.12"))

        # Deadline day itself is not late
        loan = await accrue_through(ledger, loan.id, START + timedelta(days=7))
        assert loan.status == LoanStatus.ACTIVE
        assert loan.late_fee == 0
        assert loan.debt_at_deadline is None

        loan = await ledger.accrue_one_day(loan.id, START + timedelta(days=8))
        snapshot = 500 * PINR + 7 * daily
        fee = lending_math.late_fee_for_day(snapshot, Decimal("0.02"))
        assert loan.status == LoanStatus.OVERDUE
        assert loan.debt_at_deadline == snapshot
        assert loan.late_fee == fee
        assert loan.accrued_interest == 8 * daily
        assert not loan.force_liquidation

    @pytest.mark.asyncio
    async def test_late_fee_capped_and_flagged(self, ledger):
        loan = await originate(ledger, duration_days=7)
        loan = await accrue_through(ledger, loan.id, START + timedelta(days=13))
        assert not loan.force_liquidation

        loan = await ledger.accrue_one_day(loan.id, START + timedelta(days=14))
        fee = lending_math.late_fee_for_day(loan.debt_at_deadline, Decimal("0.02"))
        assert loan.force_liquidation
        assert loan.late_fee == 7 * fee

        loan = await ledger.accrue_one_day(loan.id, START + timedelta(days=15))
        assert loan.late_fee == 7 * fee
        assert loan.status == LoanStatus.OVERDUE

    @pytest.mark.asyncio
    async def test_accrual_refreshes_health_with_last_price(self, ledger):
        loan = await originate(ledger)
        loan = await ledger.accrue_one_day(loan.id, START + timedelta(days=1))
        assert loan.health_factor == ledger.health_factor_for(loan, Decimal("10"))
        assert loan.health_factor < Decimal("1.700000")


class TestRepayment:
    """repay() and the repayment outbox."""

    @pytest.mark.asyncio
    async def test_insufficient_repayment(self, ledger):
        loan = await originate(ledger)
        await ledger.accrue_one_day(loan.id, START + timedelta(days=1))

        with pytest.raises(InsufficientRepayment):
            await ledger.repay(loan.id, 500 * PINR, reference="pay-1")
        assert (await ledger.get_loan(loan.id)).status == LoanStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_repay_releases_collateral(self, ledger, dispatcher, store, source):
        loan = await originate(ledger)
        repaid = await ledger.repay(loan.id, 500 * PINR, reference="pay-1")
        await dispatcher.drain()

        assert repaid.status == LoanStatus.REPAID
        assert repaid.releases_issued
        assert repaid.repayment_ref == "pay-1"

        record = await store.get_settlement(f"repay:{loan.id}:collateral")
        assert record.status == SettlementStatus.CONFIRMED
        assert record.event.amount == 100 * XLM
        transfers = source.transfers_for(f"repay:{loan.id}:collateral")
        assert len(transfers) == 1
        assert transfers[0]["to"] == BORROWER

    @pytest.mark.asyncio
    async def test_overpayment_credited(self, ledger, dispatcher, store):
        loan = await originate(ledger)
        await ledger.repay(loan.id, 600 * PINR, reference="pay-1")
        await dispatcher.drain()

        credits = await store.list_credits(BORROWER)
        assert [(c.reference, c.amount) for c in credits] == [
            (f"repay:{loan.id}:overpayment", 100 * PINR)
        ]

    @pytest.mark.asyncio
    async def test_repeat_with_same_reference_is_idempotent(self, ledger, dispatcher, source):
        loan = await originate(ledger)
        first = await ledger.repay(loan.id, 500 * PINR, reference="pay-1")
        again = await ledger.repay(loan.id, 500 * PINR, reference="pay-1")
        await dispatcher.drain()

        assert again.version == first.version
        assert len(source.transfers_for(f"repay:{loan.id}:collateral")) == 1

    @pytest.mark.asyncio
    async def test_repay_terminal_loan(self, ledger):
        loan = await originate(ledger)
        await ledger.repay(loan.id, 500 * PINR, reference="pay-1")

        with pytest.raises(AlreadyTerminal):
            await ledger.repay(loan.id, 500 * PINR, reference="pay-2")

    @pytest.mark.asyncio
    async def test_repay_overdue_loan_includes_late_fee(self, ledger):
        loan = await originate(ledger, duration_days=7)
        loan = await accrue_through(ledger, loan.id, START + timedelta(days=9))
        assert loan.status == LoanStatus.OVERDUE

        with pytest.raises(InsufficientRepayment):
            await ledger.repay(loan.id, loan.borrowed_amount + loan.accrued_interest)
        repaid = await ledger.repay(loan.id, loan.total_debt, reference="pay-1")
        assert repaid.status == LoanStatus.REPAID

    @pytest.mark.asyncio
    async def test_non_positive_amount(self, ledger):
        loan = await originate(ledger)
        with pytest.raises(InvalidAmount):
            await ledger.repay(loan.id, 0)


class TestCollateral:
    """add_collateral() never touches debt."""

    @pytest.mark.asyncio
    async def test_top_up_raises_health(self, ledger):
        loan = await originate(ledger)
        topped = await ledger.add_collateral(loan.id, 50 * XLM, reference="lock-2")

        assert topped.collateral_amount == 150 * XLM
        assert topped.health_factor == Decimal("2.550000")
        assert topped.total_debt == loan.total_debt

    @pytest.mark.asyncio
    async def test_same_reference_applied_once(self, ledger):
        loan = await originate(ledger)
        await ledger.add_collateral(loan.id, 50 * XLM, reference="lock-2")
        again = await ledger.add_collateral(loan.id, 50 * XLM, reference="lock-2")
        assert again.collateral_amount == 150 * XLM

    @pytest.mark.asyncio
    async def test_top_up_with_stale_price(self, ledger, prices, clock):
        loan = await originate(ledger)
        prices.set_price("XLM", None)
        clock.advance(minutes=5)

        topped = await ledger.add_collateral(loan.id, 50 * XLM)
        assert topped.collateral_amount == 150 * XLM
        assert topped.last_price == Decimal("10")

    @pytest.mark.asyncio
    async def test_top_up_terminal_loan(self, ledger):
        loan = await originate(ledger)
        await ledger.repay(loan.id, 500 * PINR)
        with pytest.raises(AlreadyTerminal):
            await ledger.add_collateral(loan.id, 50 * XLM)


class TestLiquidation:
    """liquidate() and its release legs."""

    @pytest.mark.asyncio
    async def test_liquidation_releases(self, ledger, dispatcher, store, source, settings):
        loan = await originate(ledger)
        liquidated = await ledger.liquidate(loan.id, reason=LiquidationReason.DEADLINE)
        await dispatcher.drain()

        breakdown = liquidated.liquidation
        assert liquidated.status == LoanStatus.LIQUIDATED
        assert liquidated.releases_issued
        assert breakdown.total_to_recover == breakdown.total_debt + breakdown.penalty

        legs = {
            "treasury": (settings.TREASURY_ADDRESS, breakdown.collateral_to_treasury),
            "liquidator": (settings.LIQUIDATOR_ADDRESS, breakdown.collateral_to_liquidator),
            "borrower": (BORROWER, breakdown.collateral_returned),
        }
        for leg, (address, amount) in legs.items():
            transfers = source.transfers_for(f"liquidation:{loan.id}:{leg}")
            assert [(t["to"], t["amount"]) for t in transfers] == [(address, amount)]
        assert sum(amount for _, amount in legs.values()) == 100 * XLM

    @pytest.mark.asyncio
    async def test_liquidator_share_to_treasury_without_address(self, ledger, dispatcher, source):
        ledger.liquidator_address = None
        loan = await originate(ledger)
        liquidated = await ledger.liquidate(loan.id)
        await dispatcher.drain()

        breakdown = liquidated.liquidation
        assert source.transfers_for(f"liquidation:{loan.id}:liquidator") == []
        treasury = source.transfers_for(f"liquidation:{loan.id}:treasury")
        assert treasury[0]["amount"] == breakdown.collateral_seized

    @pytest.mark.asyncio
    async def test_default_reason_is_health_factor_for_active_loan(self, ledger):
        loan = await originate(ledger)
        liquidated = await ledger.liquidate(loan.id)
        assert liquidated.liquidation.reason == LiquidationReason.HEALTH_FACTOR

    @pytest.mark.asyncio
    async def test_liquidate_twice(self, ledger):
        loan = await originate(ledger)
        await ledger.liquidate(loan.id)
        with pytest.raises(AlreadyTerminal):
            await ledger.liquidate(loan.id)

    @pytest.mark.asyncio
    async def test_stale_price_blocks_liquidation(self, ledger, prices, clock):
        loan = await originate(ledger)
        prices.set_price("XLM", None)
        clock.advance(minutes=5)

        with pytest.raises(PriceUnavailable):
            await ledger.liquidate(loan.id)
        assert (await ledger.get_loan(loan.id)).status == LoanStatus.ACTIVE


class TestReleaseOutbox:
    """Terminal loans whose releases were never issued are finished at startup."""

    @pytest.mark.asyncio
    async def test_reconcile_issues_missing_releases(self, ledger, dispatcher, store, source):
        settlements = ledger.settlements
        ledger.settlements = None
        loan = await originate(ledger)
        repaid = await ledger.repay(loan.id, 500 * PINR, reference="pay-1")
        assert not repaid.releases_issued
        assert await store.get_settlement(f"repay:{loan.id}:collateral") is None

        ledger.settlements = settlements
        assert await ledger.reconcile_releases() == 1
        await dispatcher.drain()

        assert (await ledger.get_loan(loan.id)).releases_issued
        assert len(source.transfers_for(f"repay:{loan.id}:collateral")) == 1
        assert await ledger.reconcile_releases() == 0
