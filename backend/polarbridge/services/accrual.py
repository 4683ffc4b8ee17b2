"""
Polar Bridge - Accrual Scheduler

Applies interest and late fees exactly once per loan per date. Each run
catches every open loan up from its checkpoint to `today`, one date at a
time, so downtime never skips or doubles a day.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Callable, Optional

from pydantic import BaseModel, Field

from polarbridge.core.errors import BridgeError, FatalError
from polarbridge.models.schemas import utc_now
from polarbridge.services.loan_ledger import LoanLedger

logger = logging.getLogger(__name__)


class AccrualSummary(BaseModel):
    run_date: date
    loans: int = 0
    days_applied: int = 0
    failures: list[str] = Field(default_factory=list)


class AccrualScheduler:

    def __init__(self, ledger: LoanLedger, clock: Callable[[], datetime] = utc_now):
        self.ledger = ledger
        self.clock = clock

    async def run(self, today: Optional[date] = None) -> AccrualSummary:
        today = today or self.clock().date()
        summary = AccrualSummary(run_date=today)

        for loan in await self.ledger.open_loans():
            summary.loans += 1
            day = loan.checkpoint.last_accrual_date + timedelta(days=1)
            while day <= today:
                try:
                    loan = await self.ledger.accrue_one_day(loan.id, day)
                except FatalError:
                    raise
                except BridgeError as e:
                    logger.error(f"[ACCRUAL] Loan {loan.id} failed on {day}: {e.code}: {e.message}")
                    summary.failures.append(loan.id)
                    break
                except Exception:
                    logger.exception(f"[ACCRUAL] Loan {loan.id} failed on {day}")
                    summary.failures.append(loan.id)
                    break
                summary.days_applied += 1
                if loan.is_terminal:
                    break
                day += timedelta(days=1)

        if summary.days_applied or summary.failures:
            logger.info(
                f"[ACCRUAL] {today}: {summary.loans} loans, {summary.days_applied} loan-days applied, "
                f"{len(summary.failures)} failures"
            )
        return summary
