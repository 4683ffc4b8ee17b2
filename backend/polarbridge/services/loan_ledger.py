"""
Polar Bridge - Loan Ledger

Owns every Loan mutation:

    active -> overdue -> liquidated
    active -> repaid | liquidated
    overdue -> repaid

Writes are read-modify-write against the store's version check, retried a
bounded number of times on conflict. Collateral movements never happen
here directly: a terminal loan is saved first, then its release requests
are handed to the Settlement Dispatcher under deterministic keys and the
loan is flagged `releases_issued`. reconcile_releases() finishes any loan
that stopped between the two steps.
"""

import logging
import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterable, Optional, Protocol

from polarbridge.core.config import LendingPolicy
from polarbridge.core.errors import (
    AccrualOutOfOrder,
    AlreadyTerminal,
    InsufficientRepayment,
    InvalidAddress,
    InvalidAmount,
    InvalidTransition,
    LoanNotFound,
    PriceUnavailable,
    VersionConflict,
)
from polarbridge.core.types import Units
from polarbridge.models.schemas import (
    AccrualCheckpoint,
    BorrowerSummary,
    CanonicalEvent,
    LiquidationReason,
    Loan,
    LoanPreview,
    LoanStatus,
    LoanTerms,
    OPEN_LOAN_STATUSES,
    TERMINAL_LOAN_STATUSES,
    utc_now,
)
from polarbridge.services import lending_math
from polarbridge.services.oracle import PriceOracle

logger = logging.getLogger(__name__)

LOAN_ID_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "polarbridge:loans")
MAX_CONFLICT_RETRIES = 5


def loan_id_for_event(source_event_id: str) -> str:
    """Deterministic loan id for the lock event that funds it."""
    return str(uuid.uuid5(LOAN_ID_NAMESPACE, source_event_id))


class SettlementGateway(Protocol):
    """The part of the Settlement Dispatcher the ledger is allowed to use."""

    async def request_release(
        self,
        key: str,
        chain: str,
        address: str,
        amount: int,
        asset: str,
        purpose: str,
        loan_id: Optional[str] = None,
    ): ...

    async def credit(self, reference: str, account: str, asset: str, amount: int): ...


class LoanLedger:

    def __init__(
        self,
        store,
        oracle: PriceOracle,
        policy: LendingPolicy,
        asset_scales: dict[str, int],
        collateral_asset: str,
        borrowed_asset: str,
        source_chain: str,
        treasury_address: str = "",
        liquidator_address: Optional[str] = None,
        settlements: Optional[SettlementGateway] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.oracle = oracle
        self.policy = policy
        self.collateral_asset = collateral_asset
        self.borrowed_asset = borrowed_asset
        self.collateral_scale = asset_scales[collateral_asset]
        self.borrowed_scale = asset_scales[borrowed_asset]
        self.source_chain = source_chain
        self.treasury_address = treasury_address
        self.liquidator_address = liquidator_address
        self.settlements = settlements
        self.clock = clock

    # =========================================================================
    # READS
    # =========================================================================

    async def get_loan(self, loan_id: str) -> Loan:
        loan = await self.store.get_loan(loan_id)
        if loan is None:
            raise LoanNotFound(f"Loan {loan_id} not found", loan_id=loan_id)
        return loan

    async def list_loans(
        self,
        borrower: Optional[str] = None,
        statuses: Optional[Iterable[LoanStatus]] = None,
    ) -> list[Loan]:
        return await self.store.list_loans(borrower=borrower, statuses=statuses)

    def health_factor_for(self, loan: Loan, price: Decimal) -> Decimal:
        return lending_math.health_factor(
            loan.collateral_amount,
            price,
            loan.total_debt,
            self.policy.liquidation_threshold,
            self.collateral_scale,
            self.borrowed_scale,
        )

    async def _price(self, require_fresh: bool = False) -> Decimal:
        quote = await self.oracle.get_price(self.collateral_asset)
        if require_fresh and quote.stale:
            raise PriceUnavailable(
                f"{self.collateral_asset} price is stale (as of {quote.as_of.isoformat()})"
            )
        return quote.price

    # =========================================================================
    # TERMS
    # =========================================================================

    async def preview(
        self,
        borrowed_amount: int,
        ltv: Optional[Decimal] = None,
        duration_days: Optional[int] = None,
    ) -> LoanPreview:
        """Terms for borrowing `borrowed_amount` at `ltv`. Creates nothing."""
        policy = self.policy
        duration = duration_days or policy.default_duration_days
        lending_math.validate_duration(policy, duration)
        max_ltv = lending_math.max_ltv_for_duration(policy, duration)
        ltv = ltv if ltv is not None else max_ltv
        lending_math.validate_ltv(policy, ltv, duration)
        lending_math.validate_borrow(policy, borrowed_amount, self.borrowed_scale)

        quote = await self.oracle.get_price(self.collateral_asset)
        rate = lending_math.rate_for_duration(policy, duration)

        collateral_needed = lending_math.collateral_for_value(
            Decimal(borrowed_amount) / ltv, quote.price, self.collateral_scale, self.borrowed_scale
        )
        value = lending_math.collateral_value(
            collateral_needed, quote.price, self.collateral_scale, self.borrowed_scale
        )
        lending_math.validate_collateral_value(policy, value, self.borrowed_scale)
        interest = lending_math.interest_estimate(borrowed_amount, rate, duration)

        return LoanPreview(
            borrowed_asset=self.borrowed_asset,
            borrowed_amount=borrowed_amount,
            collateral_asset=self.collateral_asset,
            collateral_needed=collateral_needed,
            collateral_value=value,
            ltv=ltv,
            max_ltv=max_ltv,
            duration_days=duration,
            interest_rate_apy=rate,
            interest_estimate=interest,
            total_to_repay=borrowed_amount + interest,
            health_factor=lending_math.health_factor(
                collateral_needed,
                quote.price,
                borrowed_amount,
                policy.liquidation_threshold,
                self.collateral_scale,
                self.borrowed_scale,
            ),
            liquidation_price=lending_math.liquidation_price(
                borrowed_amount,
                collateral_needed,
                policy.liquidation_threshold,
                self.collateral_scale,
                self.borrowed_scale,
            ),
            price=quote.price,
            price_stale=quote.stale,
            deadline=self.clock() + timedelta(days=duration),
        )

    async def plan_terms(self, event: CanonicalEvent) -> LoanTerms:
        """
        Price a lock event into loan terms. Called once per lock; the
        dispatcher persists the result so replays reuse the same snapshot.
        """
        if not event.source_address:
            raise InvalidAddress(f"Lock {event.key} has no borrower address")
        return await self.terms_for(
            borrower=event.source_address,
            collateral_amount=event.amount,
            destination_address=event.dest_address,
            ltv=event.ltv,
            duration_days=event.duration_days,
            loan_id=loan_id_for_event(event.key),
        )

    async def terms_for(
        self,
        borrower: str,
        collateral_amount: int,
        destination_address: Optional[str],
        ltv: Optional[Decimal] = None,
        duration_days: Optional[int] = None,
        loan_id: Optional[str] = None,
    ) -> LoanTerms:
        """Borrowable amount for `collateral_amount` at `ltv` (default: tier maximum)."""
        if not destination_address:
            raise InvalidAddress(f"No destination address for {borrower}")
        if collateral_amount <= 0:
            raise InvalidAmount(f"Collateral must be positive, got {collateral_amount}")

        policy = self.policy
        duration = duration_days or policy.default_duration_days
        lending_math.validate_duration(policy, duration)
        if ltv is None:
            ltv = lending_math.max_ltv_for_duration(policy, duration)
        lending_math.validate_ltv(policy, ltv, duration)

        price = await self._price(require_fresh=True)
        value = lending_math.collateral_value(
            collateral_amount, price, self.collateral_scale, self.borrowed_scale
        )
        lending_math.validate_collateral_value(policy, value, self.borrowed_scale)
        borrowed = Units.floor(Decimal(value) * ltv)
        lending_math.validate_borrow(policy, borrowed, self.borrowed_scale)

        return LoanTerms(
            loan_id=loan_id,
            borrower=borrower,
            collateral_asset=self.collateral_asset,
            collateral_amount=collateral_amount,
            borrowed_asset=self.borrowed_asset,
            borrowed_amount=borrowed,
            duration_days=duration,
            interest_rate_apy=lending_math.rate_for_duration(policy, duration),
            price=price,
            return_address=borrower,
            destination_address=destination_address,
        )

    # =========================================================================
    # ORIGINATION
    # =========================================================================

    async def originate(
        self,
        borrower: str,
        collateral_amount: int,
        borrowed_amount: int,
        duration_days: int,
        rate_apy: Optional[Decimal] = None,
        *,
        loan_id: Optional[str] = None,
        price: Optional[Decimal] = None,
        source_event_id: Optional[str] = None,
        return_address: Optional[str] = None,
        destination_address: Optional[str] = None,
    ) -> Loan:
        """Create an active loan. Idempotent on `loan_id`."""
        if loan_id:
            existing = await self.store.get_loan(loan_id)
            if existing:
                logger.info(f"[LEDGER] Loan {loan_id} already originated")
                return existing

        policy = self.policy
        if collateral_amount <= 0:
            raise InvalidAmount(f"Collateral must be positive, got {collateral_amount}")
        lending_math.validate_duration(policy, duration_days)
        lending_math.validate_borrow(policy, borrowed_amount, self.borrowed_scale)

        if price is None:
            price = await self._price(require_fresh=True)
        value = lending_math.collateral_value(
            collateral_amount, price, self.collateral_scale, self.borrowed_scale
        )
        ltv = lending_math.loan_to_value(borrowed_amount, value)
        lending_math.validate_ltv(policy, ltv, duration_days)

        rate = rate_apy if rate_apy is not None else lending_math.rate_for_duration(policy, duration_days)
        now = self.clock()
        loan_id = loan_id or str(uuid.uuid4())

        loan = Loan(
            id=loan_id,
            borrower=borrower,
            source_event_id=source_event_id,
            collateral_asset=self.collateral_asset,
            collateral_amount=collateral_amount,
            collateral_value_at_origination=value,
            borrowed_asset=self.borrowed_asset,
            borrowed_amount=borrowed_amount,
            origination_time=now,
            duration_days=duration_days,
            interest_rate_apy=rate,
            deadline=now + timedelta(days=duration_days),
            health_factor=lending_math.health_factor(
                collateral_amount,
                price,
                borrowed_amount,
                policy.liquidation_threshold,
                self.collateral_scale,
                self.borrowed_scale,
            ),
            last_price=price,
            health_checked_at=now,
            checkpoint=AccrualCheckpoint(loan_id=loan_id, last_accrual_date=now.date()),
            return_address=return_address or borrower,
            destination_address=destination_address,
        )

        stored, created = await self.store.create_loan(loan)
        if created:
            logger.info(
                f"[LEDGER] Originated loan {stored.id} for {borrower}: "
                f"{Units.to_decimal(borrowed_amount, self.borrowed_scale)} {self.borrowed_asset} "
                f"against {Units.to_decimal(collateral_amount, self.collateral_scale)} "
                f"{self.collateral_asset} (LTV {ltv:.4f}, HF {stored.health_factor}, "
                f"due {stored.deadline.date().isoformat()})"
            )
        return stored

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def _update(self, loan_id: str, mutate: Callable[[Loan], Optional[dict]]) -> Loan:
        """
        Apply `mutate` under the store's version check.

        `mutate` returns the field updates to write, or None for a no-op.
        It may raise to reject the change.
        """
        for _ in range(MAX_CONFLICT_RETRIES):
            loan = await self.get_loan(loan_id)
            updates = mutate(loan)
            if updates is None:
                return loan

            status = updates.get("status")
            if status is not None and status != loan.status and not loan.can_transition(status):
                raise InvalidTransition(
                    f"Loan {loan_id}: {loan.status.value} -> {status.value} not allowed",
                    loan_id=loan_id,
                )
            try:
                return await self.store.save_loan(loan.model_copy(update=updates))
            except VersionConflict:
                logger.debug(f"[LEDGER] Version conflict on loan {loan_id}, retrying")
        raise VersionConflict(
            f"Loan {loan_id} still contended after {MAX_CONFLICT_RETRIES} attempts",
            loan_id=loan_id,
        )

    async def accrue_one_day(self, loan_id: str, on: date) -> Loan:
        """
        Apply interest (and late fee) for the day ending at `on`.

        No-op for a date already checkpointed or a terminal loan. Dates
        must follow the checkpoint one by one.
        """
        policy = self.policy

        def mutate(loan: Loan) -> Optional[dict]:
            if loan.status in TERMINAL_LOAN_STATUSES:
                return None
            last = loan.checkpoint.last_accrual_date
            if on <= last:
                return None
            if on != last + timedelta(days=1):
                raise AccrualOutOfOrder(
                    f"Loan {loan.id}: next accrual date is {last + timedelta(days=1)}, got {on}",
                    loan_id=loan.id,
                )

            updates: dict = {
                "accrued_interest": loan.accrued_interest
                + lending_math.daily_interest(loan.borrowed_amount, loan.interest_rate_apy),
                "checkpoint": AccrualCheckpoint(loan_id=loan.id, last_accrual_date=on),
            }

            remaining = lending_math.days_until_deadline(loan.deadline, on)
            if remaining in policy.warning_days:
                logger.warning(
                    f"[LEDGER] Loan {loan.id} due in {remaining} days "
                    f"(deadline {loan.deadline.date()}), {loan.total_debt} {loan.borrowed_asset} owed"
                )

            late = lending_math.days_past_deadline(loan.deadline, on)
            if late > 0:
                snapshot = loan.debt_at_deadline
                if snapshot is None:
                    snapshot = loan.borrowed_amount + loan.accrued_interest
                    updates["debt_at_deadline"] = snapshot
                if loan.status == LoanStatus.ACTIVE:
                    updates["status"] = LoanStatus.OVERDUE
                    logger.warning(f"[LEDGER] Loan {loan.id} is overdue (deadline {loan.deadline.date()})")
                if late <= policy.max_late_days:
                    updates["late_fee"] = loan.late_fee + lending_math.late_fee_for_day(
                        snapshot, policy.late_fee_per_day
                    )
                if late <= policy.grace_period_days:
                    logger.warning(
                        f"[LEDGER] Loan {loan.id} in grace period: day {late} of "
                        f"{policy.grace_period_days}"
                    )
                if late >= policy.max_late_days and not loan.force_liquidation:
                    updates["force_liquidation"] = True
                    logger.warning(
                        f"[LEDGER] Loan {loan.id} is {late} days past deadline, flagged for liquidation"
                    )

            if loan.last_price is not None:
                projected = loan.model_copy(update=updates)
                updates["health_factor"] = self.health_factor_for(projected, loan.last_price)
            return updates

        return await self._update(loan_id, mutate)

    async def refresh_health(self, loan_id: str, price: Decimal) -> Loan:
        now = self.clock()

        def mutate(loan: Loan) -> Optional[dict]:
            if loan.is_terminal:
                return None
            return {
                "health_factor": self.health_factor_for(loan, price),
                "last_price": price,
                "health_checked_at": now,
            }

        return await self._update(loan_id, mutate)

    async def add_collateral(
        self, loan_id: str, amount: int, reference: Optional[str] = None
    ) -> Loan:
        """Increase collateral and recompute health. Never touches debt."""
        if amount <= 0:
            raise InvalidAmount(f"Collateral top-up must be positive, got {amount}")

        try:
            price: Optional[Decimal] = await self._price()
        except PriceUnavailable as e:
            logger.warning(f"[LEDGER] Top-up on {loan_id} without fresh price: {e}")
            price = None

        def mutate(loan: Loan) -> Optional[dict]:
            if reference and reference in loan.applied_references:
                return None
            if loan.is_terminal:
                raise AlreadyTerminal(f"Loan {loan.id} is {loan.status.value}", loan_id=loan.id)
            updates: dict = {"collateral_amount": loan.collateral_amount + amount}
            if reference:
                updates["applied_references"] = [*loan.applied_references, reference]
            mark = price if price is not None else loan.last_price
            if mark is not None:
                projected = loan.model_copy(update=updates)
                updates["health_factor"] = self.health_factor_for(projected, mark)
                updates["last_price"] = mark
            return updates

        loan = await self._update(loan_id, mutate)
        logger.info(
            f"[LEDGER] Loan {loan_id} collateral now "
            f"{Units.to_decimal(loan.collateral_amount, self.collateral_scale)} {self.collateral_asset}, "
            f"HF {loan.health_factor}"
        )
        return loan

    async def repay(
        self, loan_id: str, amount_paid: int, reference: Optional[str] = None
    ) -> Loan:
        """Close the loan when `amount_paid` covers principal, interest and late fee."""
        if amount_paid <= 0:
            raise InvalidAmount(f"Repayment must be positive, got {amount_paid}")
        now = self.clock()

        def mutate(loan: Loan) -> Optional[dict]:
            if loan.is_terminal:
                if loan.status == LoanStatus.REPAID and reference and loan.repayment_ref == reference:
                    return None
                raise AlreadyTerminal(f"Loan {loan.id} is {loan.status.value}", loan_id=loan.id)
            if amount_paid < loan.total_debt:
                raise InsufficientRepayment(
                    f"Loan {loan.id} needs {Units.to_decimal(loan.total_debt, self.borrowed_scale)} "
                    f"{self.borrowed_asset}, got {Units.to_decimal(amount_paid, self.borrowed_scale)}",
                    loan_id=loan.id,
                )
            return {
                "status": LoanStatus.REPAID,
                "repaid_at": now,
                "repayment_ref": reference,
                "amount_repaid": amount_paid,
            }

        loan = await self._update(loan_id, mutate)
        logger.info(f"[LEDGER] Loan {loan_id} repaid ({reference or 'direct'})")
        return await self._issue_releases(loan)

    async def liquidate(
        self,
        loan_id: str,
        reason: Optional[LiquidationReason] = None,
        price: Optional[Decimal] = None,
    ) -> Loan:
        """Seize collateral worth debt + penalty and close the loan."""
        if price is None:
            price = await self._price(require_fresh=True)
        now = self.clock()

        def mutate(loan: Loan) -> Optional[dict]:
            if loan.is_terminal:
                raise AlreadyTerminal(f"Loan {loan.id} is {loan.status.value}", loan_id=loan.id)
            why = reason
            if why is None:
                why = (
                    LiquidationReason.DEADLINE
                    if loan.force_liquidation or loan.status == LoanStatus.OVERDUE
                    else LiquidationReason.HEALTH_FACTOR
                )
            factor = self.health_factor_for(loan, price)
            breakdown = lending_math.liquidation_breakdown(
                self.policy,
                loan,
                price,
                why,
                self.collateral_scale,
                self.borrowed_scale,
                factor=factor,
            )
            return {
                "status": LoanStatus.LIQUIDATED,
                "liquidated_at": now,
                "liquidation": breakdown,
                "health_factor": factor,
                "last_price": price,
                "health_checked_at": now,
            }

        loan = await self._update(loan_id, mutate)
        breakdown = loan.liquidation
        logger.warning(
            f"[LEDGER] Liquidated loan {loan_id} ({breakdown.reason.value}): "
            f"debt {breakdown.total_debt}, penalty {breakdown.penalty}, "
            f"seized {breakdown.collateral_seized}, returned {breakdown.collateral_returned}"
        )
        if not breakdown.is_fully_recovered:
            logger.error(f"[LEDGER] Loan {loan_id} liquidated with shortfall {breakdown.shortfall}")
        return await self._issue_releases(loan)

    # =========================================================================
    # RELEASES (outbox)
    # =========================================================================

    async def _issue_releases(self, loan: Loan) -> Loan:
        if loan.releases_issued or not loan.is_terminal:
            return loan
        if self.settlements is None:
            logger.warning(f"[LEDGER] No settlement dispatcher bound; releases for {loan.id} deferred")
            return loan

        borrower_address = loan.return_address or loan.borrower

        if loan.status == LoanStatus.REPAID:
            if loan.collateral_amount > 0:
                await self.settlements.request_release(
                    key=f"repay:{loan.id}:collateral",
                    chain=self.source_chain,
                    address=borrower_address,
                    amount=loan.collateral_amount,
                    asset=loan.collateral_asset,
                    purpose="repayment",
                    loan_id=loan.id,
                )
            overpayment = (loan.amount_repaid or 0) - loan.total_debt
            if overpayment > 0:
                await self.settlements.credit(
                    reference=f"repay:{loan.id}:overpayment",
                    account=loan.borrower,
                    asset=loan.borrowed_asset,
                    amount=overpayment,
                )
        else:
            breakdown = loan.liquidation
            to_treasury = breakdown.collateral_to_treasury
            to_liquidator = breakdown.collateral_to_liquidator
            if not self.liquidator_address:
                to_treasury += to_liquidator
                to_liquidator = 0

            legs = [
                ("treasury", self.treasury_address, to_treasury),
                ("liquidator", self.liquidator_address, to_liquidator),
                ("borrower", borrower_address, breakdown.collateral_returned),
            ]
            for leg, address, amount in legs:
                if amount <= 0:
                    continue
                await self.settlements.request_release(
                    key=f"liquidation:{loan.id}:{leg}",
                    chain=self.source_chain,
                    address=address,
                    amount=amount,
                    asset=loan.collateral_asset,
                    purpose=f"liquidation_{leg}",
                    loan_id=loan.id,
                )

        return await self._update(
            loan.id, lambda current: None if current.releases_issued else {"releases_issued": True}
        )

    async def reconcile_releases(self) -> int:
        """Issue releases for terminal loans that never got them. Returns the count handled."""
        handled = 0
        for loan in await self.store.list_loans(statuses=TERMINAL_LOAN_STATUSES):
            if loan.releases_issued:
                continue
            await self._issue_releases(loan)
            handled += 1
        if handled:
            logger.info(f"[LEDGER] Reconciled releases for {handled} terminal loans")
        return handled

    async def open_loans(self) -> list[Loan]:
        return await self.store.list_loans(statuses=OPEN_LOAN_STATUSES)

    async def borrower_summary(self, borrower: str) -> BorrowerSummary:
        loans = await self.store.list_loans(borrower=borrower, statuses=OPEN_LOAN_STATUSES)
        return BorrowerSummary(
            borrower=borrower,
            loan_count=len(loans),
            collateral_asset=self.collateral_asset,
            total_collateral=sum(loan.collateral_amount for loan in loans),
            borrowed_asset=self.borrowed_asset,
            total_borrowed=sum(loan.borrowed_amount for loan in loans),
            total_debt=sum(loan.total_debt for loan in loans),
        )
