"""
Polar Bridge - Chain Mock Interface

In-memory chain gateway implementing the ChainClient contract.

This is a MOCK implementation used by tests and local development.
Configurable failures and finality for testing scenarios.
"""

from collections import deque
from typing import Optional

from polarbridge.bridges.chain import (
    BalanceResult,
    EventPage,
    EventResult,
    LockResult,
    SubmitResult,
    TxStatusResult,
)
from polarbridge.core.errors import ErrorKind
from polarbridge.models.schemas import RawChainEvent, TxStatus


class FakeChain:
    """
    Mock chain.

    - Every submit_transfer call is recorded in `transfers`, duplicates
      included, so tests can count real submissions.
    - Emitted events are paged by an integer cursor.
    - Transactions are final immediately unless `auto_finalize` is off.
    """

    def __init__(self, chain: str, sender: Optional[str] = None) -> None:
        self.chain = chain
        self.sender = sender
        self.events: list[RawChainEvent] = []
        self.transfers: list[dict] = []
        self.balances: dict[tuple[str, str], int] = {}
        self.tx_status: dict[str, TxStatus] = {}
        self.auto_finalize = True
        self._submit_failures: deque[tuple[ErrorKind, str]] = deque()
        self._query_failures: deque[tuple[ErrorKind, str]] = deque()
        self._status_failures: deque[tuple[ErrorKind, str]] = deque()
        self.query_calls = 0

    # -------------------------------------------------------------------------
    # Scenario setup
    # -------------------------------------------------------------------------

    def set_balance(self, address: str, asset: str, amount: int) -> None:
        self.balances[(address, asset)] = amount

    def fail_next_submit(self, kind: ErrorKind, error: str = "injected", times: int = 1) -> None:
        self._submit_failures.extend([(kind, error)] * times)

    def fail_next_query(self, kind: ErrorKind, error: str = "injected", times: int = 1) -> None:
        self._query_failures.extend([(kind, error)] * times)

    def fail_next_status(self, kind: ErrorKind, error: str = "injected", times: int = 1) -> None:
        self._status_failures.extend([(kind, error)] * times)

    def emit(
        self,
        topic: str,
        data: dict,
        event_id: Optional[str] = None,
        tx_ref: Optional[str] = None,
    ) -> RawChainEvent:
        ledger = len(self.events) + 1
        event = RawChainEvent(
            id=event_id or f"{self.chain}-evt-{ledger}",
            topic=topic,
            ledger=ledger,
            tx_ref=tx_ref or f"{self.chain}-tx-lock-{ledger}",
            cursor=str(ledger),
            data=data,
        )
        self.events.append(event)
        return event

    def finalize(self, tx_ref: str, status: TxStatus = TxStatus.FINAL) -> None:
        self.tx_status[tx_ref] = status

    def transfers_for(self, reference: str) -> list[dict]:
        return [t for t in self.transfers if t["reference"] == reference]

    # -------------------------------------------------------------------------
    # ChainClient
    # -------------------------------------------------------------------------

    async def submit_transfer(
        self, to: str, amount: int, asset: str, reference: str
    ) -> SubmitResult:
        if self._submit_failures:
            kind, error = self._submit_failures.popleft()
            return SubmitResult.failure(kind, error)

        tx_ref = f"{self.chain}-tx-{len(self.transfers) + 1}"
        self.transfers.append(
            {"to": to, "amount": amount, "asset": asset, "reference": reference, "tx_ref": tx_ref}
        )
        if self.sender:
            key = (self.sender, asset)
            self.balances[key] = self.balances.get(key, 0) - amount
        self.balances[(to, asset)] = self.balances.get((to, asset), 0) + amount
        self.tx_status[tx_ref] = TxStatus.FINAL if self.auto_finalize else TxStatus.PENDING
        return SubmitResult(tx_ref=tx_ref)

    async def query_events(self, cursor: Optional[str], limit: int) -> EventPage:
        self.query_calls += 1
        if self._query_failures:
            kind, error = self._query_failures.popleft()
            return EventPage.failure(kind, error, cursor=cursor)

        start = int(cursor) if cursor else 0
        page = self.events[start:start + limit]
        new_cursor = page[-1].cursor if page else cursor
        return EventPage(events=page, cursor=new_cursor)

    async def get_event(self, event_id: str) -> EventResult:
        if self._query_failures:
            kind, error = self._query_failures.popleft()
            return EventResult.failure(kind, error)
        return EventResult(event=next((e for e in self.events if e.id == event_id), None))

    async def get_balance(self, address: str, asset: str) -> BalanceResult:
        return BalanceResult(balance=self.balances.get((address, asset), 0))

    async def get_transaction_status(self, tx_ref: str) -> TxStatusResult:
        if self._status_failures:
            kind, error = self._status_failures.popleft()
            return TxStatusResult.failure(kind, error)
        return TxStatusResult(status=self.tx_status.get(tx_ref, TxStatus.NOT_FOUND))

    async def lock(
        self, amount: int, asset: str, destination: str, memo: dict
    ) -> LockResult:
        event = self.emit(
            "lock",
            {
                "amount": str(amount),
                "asset": asset,
                "from": memo.get("borrower"),
                "to": destination,
                "memo": memo,
            },
        )
        return LockResult(source_event_id=event.id, tx_ref=event.tx_ref)

    async def aclose(self) -> None:
        return None
