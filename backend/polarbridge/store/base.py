"""
Polar Bridge - Store Contract

Strong read-after-write consistency is assumed. Writes to loans and
settlement records are compare-and-set on `version`: the caller passes the
model it read (with its version), the store rejects the write with
VersionConflict when someone else saved first, and returns the stored copy
with the version bumped.
"""

from typing import Iterable, Optional, Protocol

from polarbridge.models.schemas import (
    LedgerCredit,
    Loan,
    LoanStatus,
    SettlementRecord,
    SettlementStatus,
)


class BridgeStore(Protocol):

    # Loans
    async def get_loan(self, loan_id: str) -> Optional[Loan]: ...

    async def create_loan(self, loan: Loan) -> tuple[Loan, bool]:
        """Insert; on duplicate id return (existing, False)."""
        ...

    async def save_loan(self, loan: Loan) -> Loan: ...

    async def list_loans(
        self,
        borrower: Optional[str] = None,
        statuses: Optional[Iterable[LoanStatus]] = None,
    ) -> list[Loan]: ...

    # Settlement records
    async def get_settlement(self, key: str) -> Optional[SettlementRecord]: ...

    async def create_settlement(self, record: SettlementRecord) -> tuple[SettlementRecord, bool]:
        """Insert; on duplicate source_event_id return (existing, False)."""
        ...

    async def save_settlement(self, record: SettlementRecord) -> SettlementRecord: ...

    async def list_settlements(
        self,
        statuses: Optional[Iterable[SettlementStatus]] = None,
        limit: Optional[int] = None,
    ) -> list[SettlementRecord]: ...

    # Chain cursors
    async def get_cursor(self, chain: str) -> Optional[str]: ...

    async def save_cursor(self, chain: str, cursor: str) -> None: ...

    # Ledger credits
    async def add_credit(self, credit: LedgerCredit) -> tuple[LedgerCredit, bool]:
        """Idempotent by reference."""
        ...

    async def list_credits(self, account: Optional[str] = None) -> list[LedgerCredit]: ...

    async def close(self) -> None: ...
