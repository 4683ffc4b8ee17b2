"""
Polar Bridge - In-Memory Store

Development and test implementation of BridgeStore. Every read and write
hands out deep copies so callers can never mutate stored state in place.
"""

import asyncio
from typing import Iterable, Optional

from polarbridge.core.errors import LoanNotFound, SettlementNotFound, VersionConflict
from polarbridge.models.schemas import (
    LedgerCredit,
    Loan,
    LoanStatus,
    SettlementRecord,
    SettlementStatus,
    utc_now,
)


class MemoryStore:

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._loans: dict[str, Loan] = {}
        self._settlements: dict[str, SettlementRecord] = {}
        self._cursors: dict[str, str] = {}
        self._credits: dict[str, LedgerCredit] = {}

    # -------------------------------------------------------------------------
    # Loans
    # -------------------------------------------------------------------------

    async def get_loan(self, loan_id: str) -> Optional[Loan]:
        async with self._lock:
            loan = self._loans.get(loan_id)
            return loan.model_copy(deep=True) if loan else None

    async def create_loan(self, loan: Loan) -> tuple[Loan, bool]:
        async with self._lock:
            existing = self._loans.get(loan.id)
            if existing:
                return existing.model_copy(deep=True), False
            stored = loan.model_copy(deep=True, update={"version": 1})
            self._loans[loan.id] = stored
            return stored.model_copy(deep=True), True

    async def save_loan(self, loan: Loan) -> Loan:
        async with self._lock:
            current = self._loans.get(loan.id)
            if current is None:
                raise LoanNotFound(f"Loan {loan.id} not found", loan_id=loan.id)
            if current.version != loan.version:
                raise VersionConflict(
                    f"Loan {loan.id} is at version {current.version}, write based on {loan.version}",
                    loan_id=loan.id,
                )
            stored = loan.model_copy(deep=True, update={"version": loan.version + 1})
            self._loans[loan.id] = stored
            return stored.model_copy(deep=True)

    async def list_loans(
        self,
        borrower: Optional[str] = None,
        statuses: Optional[Iterable[LoanStatus]] = None,
    ) -> list[Loan]:
        wanted = set(statuses) if statuses is not None else None
        async with self._lock:
            loans = [
                loan.model_copy(deep=True)
                for loan in self._loans.values()
                if (borrower is None or loan.borrower == borrower)
                and (wanted is None or loan.status in wanted)
            ]
        return sorted(loans, key=lambda loan: (loan.origination_time, loan.id))

    # -------------------------------------------------------------------------
    # Settlement records
    # -------------------------------------------------------------------------

    async def get_settlement(self, key: str) -> Optional[SettlementRecord]:
        async with self._lock:
            record = self._settlements.get(key)
            return record.model_copy(deep=True) if record else None

    async def create_settlement(self, record: SettlementRecord) -> tuple[SettlementRecord, bool]:
        async with self._lock:
            existing = self._settlements.get(record.source_event_id)
            if existing:
                return existing.model_copy(deep=True), False
            stored = record.model_copy(deep=True, update={"version": 1})
            self._settlements[record.source_event_id] = stored
            return stored.model_copy(deep=True), True

    async def save_settlement(self, record: SettlementRecord) -> SettlementRecord:
        async with self._lock:
            current = self._settlements.get(record.source_event_id)
            if current is None:
                raise SettlementNotFound(f"Settlement {record.source_event_id} not found")
            if current.version != record.version:
                raise VersionConflict(
                    f"Settlement {record.source_event_id} is at version {current.version}, "
                    f"write based on {record.version}"
                )
            stored = record.model_copy(
                deep=True,
                update={"version": record.version + 1, "updated_at": utc_now()},
            )
            self._settlements[record.source_event_id] = stored
            return stored.model_copy(deep=True)

    async def list_settlements(
        self,
        statuses: Optional[Iterable[SettlementStatus]] = None,
        limit: Optional[int] = None,
    ) -> list[SettlementRecord]:
        wanted = set(statuses) if statuses is not None else None
        async with self._lock:
            records = [
                r.model_copy(deep=True)
                for r in self._settlements.values()
                if wanted is None or r.status in wanted
            ]
        records.sort(key=lambda r: r.created_at)
        return records[:limit] if limit is not None else records

    # -------------------------------------------------------------------------
    # Cursors & credits
    # -------------------------------------------------------------------------

    async def get_cursor(self, chain: str) -> Optional[str]:
        async with self._lock:
            return self._cursors.get(chain)

    async def save_cursor(self, chain: str, cursor: str) -> None:
        async with self._lock:
            self._cursors[chain] = cursor

    async def add_credit(self, credit: LedgerCredit) -> tuple[LedgerCredit, bool]:
        async with self._lock:
            existing = self._credits.get(credit.reference)
            if existing:
                return existing.model_copy(deep=True), False
            self._credits[credit.reference] = credit.model_copy(deep=True)
            return credit.model_copy(deep=True), True

    async def list_credits(self, account: Optional[str] = None) -> list[LedgerCredit]:
        async with self._lock:
            return [
                c.model_copy(deep=True)
                for c in self._credits.values()
                if account is None or c.account == account
            ]

    async def close(self) -> None:
        return None
