"""
Polar Bridge - SQL Store

Async SQLAlchemy implementation of BridgeStore.

- Unique keys (loan id, source event id, credit reference) enforced by the
  database; a duplicate insert returns the existing row.
- Loan and settlement writes are UPDATE ... WHERE version = :expected.
- Connection / driver failures surface as StoreUnavailable (fatal).
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from polarbridge.core.errors import (
    LoanNotFound,
    SettlementNotFound,
    StoreUnavailable,
    VersionConflict,
)
from polarbridge.db.models import ChainCursorRow, LedgerCreditRow, LoanRow, SettlementRow
from polarbridge.models.schemas import (
    LedgerCredit,
    Loan,
    LoanStatus,
    SettlementRecord,
    SettlementStatus,
    utc_now,
)

logger = logging.getLogger(__name__)


def _loan_from_row(row: LoanRow) -> Loan:
    return Loan.model_validate({**row.document, "version": row.version})


def _settlement_from_row(row: SettlementRow) -> SettlementRecord:
    return SettlementRecord.model_validate({**row.document, "version": row.version})


def _loan_columns(loan: Loan) -> dict:
    return {
        "borrower": loan.borrower,
        "status": loan.status.value,
        "origination_time": loan.origination_time,
        "deadline": loan.deadline,
        "last_accrual_date": loan.checkpoint.last_accrual_date,
        "version": loan.version,
        "document": loan.model_dump(mode="json"),
    }


def _settlement_columns(record: SettlementRecord) -> dict:
    return {
        "event_type": record.event_type,
        "status": record.status.value,
        "attempts": record.attempts,
        "next_attempt_at": record.next_attempt_at,
        "dest_tx_ref": record.dest_tx_ref,
        "last_error": record.last_error,
        "version": record.version,
        "document": record.model_dump(mode="json"),
    }


class SqlStore:

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_maker() as session:
                yield session
        except IntegrityError:
            raise
        except (DBAPIError, OSError) as e:
            logger.error(f"[STORE] Database unavailable: {e}")
            raise StoreUnavailable(f"Database unavailable: {e}")

    # -------------------------------------------------------------------------
    # Loans
    # -------------------------------------------------------------------------

    async def get_loan(self, loan_id: str) -> Optional[Loan]:
        async with self._session() as session:
            row = await session.get(LoanRow, loan_id)
            return _loan_from_row(row) if row else None

    async def create_loan(self, loan: Loan) -> tuple[Loan, bool]:
        stored = loan.model_copy(update={"version": 1})
        try:
            async with self._session() as session:
                session.add(LoanRow(
                    id=stored.id,
                    source_event_id=stored.source_event_id,
                    **_loan_columns(stored),
                ))
                await session.commit()
            return stored, True
        except IntegrityError:
            existing = await self.get_loan(loan.id)
            if existing is None and loan.source_event_id:
                async with self._session() as session:
                    result = await session.execute(
                        select(LoanRow).where(LoanRow.source_event_id == loan.source_event_id)
                    )
                    row = result.scalar_one_or_none()
                    existing = _loan_from_row(row) if row else None
            if existing is None:
                raise
            return existing, False

    async def save_loan(self, loan: Loan) -> Loan:
        stored = loan.model_copy(update={"version": loan.version + 1})
        async with self._session() as session:
            result = await session.execute(
                update(LoanRow)
                .where(LoanRow.id == loan.id, LoanRow.version == loan.version)
                .values(**_loan_columns(stored))
            )
            if result.rowcount == 0:
                await session.rollback()
                if await session.get(LoanRow, loan.id) is None:
                    raise LoanNotFound(f"Loan {loan.id} not found", loan_id=loan.id)
                raise VersionConflict(
                    f"Loan {loan.id} changed since version {loan.version}", loan_id=loan.id
                )
            await session.commit()
        return stored

    async def list_loans(
        self,
        borrower: Optional[str] = None,
        statuses: Optional[Iterable[LoanStatus]] = None,
    ) -> list[Loan]:
        query = select(LoanRow)
        if borrower is not None:
            query = query.where(LoanRow.borrower == borrower)
        if statuses is not None:
            query = query.where(LoanRow.status.in_([s.value for s in statuses]))
        query = query.order_by(LoanRow.origination_time, LoanRow.id)
        async with self._session() as session:
            result = await session.execute(query)
            return [_loan_from_row(row) for row in result.scalars().all()]

    # -------------------------------------------------------------------------
    # Settlement records
    # -------------------------------------------------------------------------

    async def get_settlement(self, key: str) -> Optional[SettlementRecord]:
        async with self._session() as session:
            row = await session.get(SettlementRow, key)
            return _settlement_from_row(row) if row else None

    async def create_settlement(self, record: SettlementRecord) -> tuple[SettlementRecord, bool]:
        stored = record.model_copy(update={"version": 1})
        try:
            async with self._session() as session:
                session.add(SettlementRow(
                    source_event_id=stored.source_event_id,
                    created_at=stored.created_at,
                    **_settlement_columns(stored),
                ))
                await session.commit()
            return stored, True
        except IntegrityError:
            existing = await self.get_settlement(record.source_event_id)
            if existing is None:
                raise
            return existing, False

    async def save_settlement(self, record: SettlementRecord) -> SettlementRecord:
        stored = record.model_copy(update={"version": record.version + 1, "updated_at": utc_now()})
        async with self._session() as session:
            result = await session.execute(
                update(SettlementRow)
                .where(
                    SettlementRow.source_event_id == record.source_event_id,
                    SettlementRow.version == record.version,
                )
                .values(**_settlement_columns(stored))
            )
            if result.rowcount == 0:
                await session.rollback()
                if await session.get(SettlementRow, record.source_event_id) is None:
                    raise SettlementNotFound(f"Settlement {record.source_event_id} not found")
                raise VersionConflict(
                    f"Settlement {record.source_event_id} changed since version {record.version}"
                )
            await session.commit()
        return stored

    async def list_settlements(
        self,
        statuses: Optional[Iterable[SettlementStatus]] = None,
        limit: Optional[int] = None,
    ) -> list[SettlementRecord]:
        query = select(SettlementRow)
        if statuses is not None:
            query = query.where(SettlementRow.status.in_([s.value for s in statuses]))
        query = query.order_by(SettlementRow.created_at)
        if limit is not None:
            query = query.limit(limit)
        async with self._session() as session:
            result = await session.execute(query)
            return [_settlement_from_row(row) for row in result.scalars().all()]

    # -------------------------------------------------------------------------
    # Cursors & credits
    # -------------------------------------------------------------------------

    async def get_cursor(self, chain: str) -> Optional[str]:
        async with self._session() as session:
            row = await session.get(ChainCursorRow, chain)
            return row.cursor if row else None

    async def save_cursor(self, chain: str, cursor: str) -> None:
        async with self._session() as session:
            row = await session.get(ChainCursorRow, chain)
            if row is None:
                session.add(ChainCursorRow(chain=chain, cursor=cursor))
            else:
                row.cursor = cursor
            await session.commit()

    async def add_credit(self, credit: LedgerCredit) -> tuple[LedgerCredit, bool]:
        try:
            async with self._session() as session:
                session.add(LedgerCreditRow(**credit.model_dump()))
                await session.commit()
            return credit, True
        except IntegrityError:
            async with self._session() as session:
                row = await session.get(LedgerCreditRow, credit.reference)
            if row is None:
                raise
            return LedgerCredit(
                reference=row.reference,
                account=row.account,
                asset=row.asset,
                amount=row.amount,
                created_at=row.created_at,
            ), False

    async def list_credits(self, account: Optional[str] = None) -> list[LedgerCredit]:
        query = select(LedgerCreditRow).order_by(LedgerCreditRow.created_at)
        if account is not None:
            query = query.where(LedgerCreditRow.account == account)
        async with self._session() as session:
            result = await session.execute(query)
            return [
                LedgerCredit(
                    reference=row.reference,
                    account=row.account,
                    asset=row.asset,
                    amount=row.amount,
                    created_at=row.created_at,
                )
                for row in result.scalars().all()
            ]

    async def close(self) -> None:
        return None
