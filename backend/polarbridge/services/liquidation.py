"""
Polar Bridge - Liquidation Scanner

Evaluates every open loan against the latest price. A loan is liquidated
when its health factor drops below the minimum, when it was flagged at the
late-day limit, or when it has been overdue for max_late_days.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from polarbridge.core.errors import AlreadyTerminal, BridgeError, FatalError, PriceUnavailable
from polarbridge.models.schemas import utc_now
from polarbridge.services import lending_math
from polarbridge.services.loan_ledger import LoanLedger
from polarbridge.services.oracle import PriceOracle

logger = logging.getLogger(__name__)


class LiquidationScanner:

    def __init__(
        self,
        ledger: LoanLedger,
        oracle: PriceOracle,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.ledger = ledger
        self.oracle = oracle
        self.clock = clock

    async def scan(self, now: Optional[datetime] = None) -> list[str]:
        """Returns the ids of loans liquidated by this scan."""
        now = now or self.clock()
        loans = await self.ledger.open_loans()
        if not loans:
            return []

        try:
            quote = await self.oracle.get_price(self.ledger.collateral_asset)
        except PriceUnavailable as e:
            logger.warning(f"[LIQUIDATION] Scan skipped, no price: {e}")
            return []
        if quote.stale:
            logger.warning(
                f"[LIQUIDATION] Scan skipped, {quote.asset} price stale since {quote.as_of.isoformat()}"
            )
            return []

        liquidated = []
        for loan in loans:
            try:
                loan = await self.ledger.refresh_health(loan.id, quote.price)
                reason = lending_math.liquidation_reason(self.ledger.policy, loan, now.date())
                if reason is None:
                    continue
                logger.warning(
                    f"[LIQUIDATION] Loan {loan.id} eligible ({reason.value}, HF {loan.health_factor})"
                )
                await self.ledger.liquidate(loan.id, reason=reason, price=quote.price)
                liquidated.append(loan.id)
            except AlreadyTerminal:
                continue
            except FatalError:
                raise
            except BridgeError as e:
                logger.error(f"[LIQUIDATION] Loan {loan.id} not processed: {e.code}: {e.message}")
            except Exception:
                logger.exception(f"[LIQUIDATION] Loan {loan.id} not processed")

        if liquidated:
            logger.info(f"[LIQUIDATION] Liquidated {len(liquidated)} of {len(loans)} open loans")
        return liquidated
