"""
Polar Bridge - Settlement Dispatcher

Turns canonical events into exactly-once effects on the other side:

    Locked (new loan)     -> plan terms, release borrowed asset on destination,
                             originate loan on finality
    Locked (with loan_id) -> internal: add collateral to the loan
    PaidBack              -> internal: repay the loan, or credit the payer
    ReleaseRequested      -> release on the target chain

One SettlementRecord per source event id. Status moves forward only:

    pending -> submitted -> confirmed
    pending | submitted -> failed
    failed -> pending   (manual retry)

A submitted transfer is never re-issued: on a finality timeout the record
stays submitted and is re-checked by the retry sweep.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from polarbridge.bridges.chain import ChainClient
from polarbridge.core.config import Settings
from polarbridge.core.errors import (
    AlreadyTerminal,
    BridgeError,
    ChainCallFailed,
    ErrorKind,
    FatalError,
    InsufficientLiquidity,
    InsufficientRepayment,
    InvalidAddress,
    InvalidTransition,
    LoanNotFound,
    SettlementNotFound,
    SigningUnavailable,
    VersionConflict,
)
from polarbridge.models.schemas import (
    CanonicalEvent,
    CanonicalEventType,
    LedgerCredit,
    RawChainEvent,
    SettlementAction,
    SettlementRecord,
    SettlementStatus,
    TxStatus,
    utc_now,
)
from polarbridge.services.loan_ledger import LoanLedger

logger = logging.getLogger(__name__)

LEDGER_CHAIN = "ledger"


def backoff_delay(attempts: int, base: float, maximum: float) -> float:
    """min(base * 2^(attempts-1), maximum) seconds."""
    return min(base * (2 ** max(attempts - 1, 0)), maximum)


def _raise_for(result, what: str) -> None:
    if result.ok:
        return
    if result.error_kind == ErrorKind.FATAL:
        raise SigningUnavailable(f"{what}: {result.error}")
    raise ChainCallFailed(f"{what}: {result.error}", kind=result.error_kind or ErrorKind.TRANSIENT)


class SettlementDispatcher:

    def __init__(
        self,
        store,
        chains: dict[str, ChainClient],
        ledger: LoanLedger,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
        sleep=asyncio.sleep,
    ):
        self.store = store
        self.chains = chains
        self.ledger = ledger
        self.settings = settings
        self.clock = clock
        self.sleep = sleep

        self.max_attempts = settings.SETTLEMENT_MAX_ATTEMPTS
        self.backoff_base = settings.SETTLEMENT_BACKOFF_BASE_SECONDS
        self.backoff_max = settings.SETTLEMENT_BACKOFF_MAX_SECONDS
        self.finality_poll = settings.FINALITY_POLL_SECONDS
        poll = max(settings.FINALITY_POLL_SECONDS, 0.001)
        self.finality_checks = max(1, int(settings.FINALITY_TIMEOUT_SECONDS / poll))

        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}
        self._tasks: set[asyncio.Task] = set()
        self.last_fatal: Optional[BaseException] = None

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def record(self, event: CanonicalEvent) -> tuple[SettlementRecord, bool]:
        """Durably hand off an event. Returns (record, created)."""
        record, created = await self.store.create_settlement(
            SettlementRecord(source_event_id=event.key, event=event)
        )
        if created:
            logger.info(
                f"[DISPATCH] Recorded {event.event_type.value} {event.key} "
                f"({event.amount} {event.asset})"
            )
        return record, created

    async def quarantine(
        self, key: str, raw: RawChainEvent, error: BridgeError
    ) -> tuple[SettlementRecord, bool]:
        """Record a known-topic event that cannot be mapped as failed, for operator review."""
        record, created = await self.store.create_settlement(SettlementRecord(
            source_event_id=key,
            raw_event=raw,
            status=SettlementStatus.FAILED,
            last_error=f"{error.code}: {error.message}",
            error_kind=ErrorKind.PERMANENT,
        ))
        if created:
            logger.error(
                f"[DISPATCH] Quarantined malformed {raw.topic} {key} ({error.code}): {error.message}"
            )
        return record, created

    async def settle(self, event: CanonicalEvent) -> SettlementRecord:
        await self.record(event)
        return await self.settle_key(event.key)

    async def settle_key(self, key: str, now: Optional[datetime] = None) -> SettlementRecord:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                record = await self.store.get_settlement(key)
                if record is None:
                    raise SettlementNotFound(f"Settlement {key} not found")
                return await self._advance(record, now)
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    def spawn(self, event: CanonicalEvent) -> asyncio.Task:
        """Settle in the background. Tasks are tracked and cancelled on shutdown."""
        return self._track(asyncio.create_task(self.settle(event), name=f"settle:{event.key}"))

    def spawn_key(self, key: str) -> asyncio.Task:
        return self._track(asyncio.create_task(self.settle_key(key), name=f"settle:{key}"))

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, FatalError):
            self.last_fatal = exc
        logger.error(f"[DISPATCH] Background {task.get_name()} failed: {exc!r}")

    async def drain(self) -> None:
        """Wait for every background settlement currently in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info(f"[DISPATCH] Shutdown, cancelled {len(tasks)} in-flight settlements")

    async def retry_due(self, now: Optional[datetime] = None) -> list[SettlementRecord]:
        """Sweep pending records whose backoff elapsed and in-flight submitted records."""
        now = now or self.clock()
        records = await self.store.list_settlements(
            statuses=[SettlementStatus.PENDING, SettlementStatus.SUBMITTED]
        )
        results = []
        for record in records:
            if record.next_attempt_at and record.next_attempt_at > now:
                continue
            results.append(await self.settle_key(record.source_event_id, now))
        return results

    async def retry_failed(self, key: str) -> SettlementRecord:
        """Operator action: failed -> pending with a fresh attempt budget."""
        record = await self.store.get_settlement(key)
        if record is None:
            raise SettlementNotFound(f"Settlement {key} not found")
        if not (record.status == SettlementStatus.FAILED and record.can_transition(SettlementStatus.PENDING)):
            raise InvalidTransition(f"Settlement {key} is {record.status.value}, only failed can be retried")
        if record.event is None:
            raise InvalidTransition(f"Settlement {key} holds an unmappable chain event, resolve it by hand")

        record = await self.store.save_settlement(record.model_copy(update={
            "status": SettlementStatus.PENDING,
            "attempts": 0,
            "next_attempt_at": None,
            "last_error": None,
            "error_kind": None,
        }))
        logger.info(f"[DISPATCH] Manual retry of {key}")
        return record

    # =========================================================================
    # LEDGER CONTRACT
    # =========================================================================

    async def request_release(
        self,
        key: str,
        chain: str,
        address: str,
        amount: int,
        asset: str,
        purpose: str,
        loan_id: Optional[str] = None,
    ) -> SettlementRecord:
        event = CanonicalEvent(
            event_type=CanonicalEventType.RELEASE_REQUESTED,
            source_chain=LEDGER_CHAIN,
            source_event_id=key,
            amount=amount,
            asset=asset,
            dest_address=address,
            target_chain=chain,
            purpose=purpose,
            loan_id=loan_id,
        )
        record, created = await self.record(event)
        if created:
            self.spawn_key(key)
        return record

    async def credit(
        self, reference: str, account: str, asset: str, amount: int
    ) -> tuple[LedgerCredit, bool]:
        credit, created = await self.store.add_credit(
            LedgerCredit(reference=reference, account=account, asset=asset, amount=amount)
        )
        if created:
            logger.info(f"[DISPATCH] Credited {amount} {asset} to {account} ({reference})")
        return credit, created

    # =========================================================================
    # STATE MACHINE
    # =========================================================================

    async def _advance(
        self, record: SettlementRecord, now: Optional[datetime] = None
    ) -> SettlementRecord:
        if record.status in (SettlementStatus.CONFIRMED, SettlementStatus.FAILED) or record.event is None:
            return record
        if record.next_attempt_at and record.next_attempt_at > (now or self.clock()):
            return record

        try:
            if record.status == SettlementStatus.PENDING:
                record = await self._attempt(record)
            if record.status == SettlementStatus.SUBMITTED:
                record = await self._await_finality(record)
            return record
        except FatalError:
            logger.critical(f"[DISPATCH] Fatal error settling {record.source_event_id}, halting")
            raise
        except VersionConflict:
            # Another worker moved this record; its state wins
            latest = await self.store.get_settlement(record.source_event_id)
            return latest or record
        except BridgeError as e:
            # The attempt may have saved planned terms; build on the stored copy
            record = await self.store.get_settlement(record.source_event_id) or record
            if e.kind == ErrorKind.TRANSIENT:
                return await self._schedule_retry(record, e)
            return await self._fail(record, e.message, e.kind)

    async def _attempt(self, record: SettlementRecord) -> SettlementRecord:
        event = record.event

        if record.dest_tx_ref and record.action:
            return await self._submit(record, record.action)

        if event.event_type == CanonicalEventType.LOCKED and event.loan_id is None:
            if record.terms is None:
                terms = await self.ledger.plan_terms(event)
                record = await self.store.save_settlement(record.model_copy(update={"terms": terms}))
                logger.info(
                    f"[DISPATCH] Planned loan {terms.loan_id}: {terms.borrowed_amount} "
                    f"{terms.borrowed_asset} at price {terms.price}"
                )
            terms = record.terms
            action = SettlementAction(
                chain=self.settings.DESTINATION_CHAIN,
                address=terms.destination_address,
                amount=terms.borrowed_amount,
                asset=terms.borrowed_asset,
            )
            await self._check_liquidity(action)
            return await self._submit(record, action)

        if event.event_type == CanonicalEventType.RELEASE_REQUESTED:
            action = SettlementAction(
                chain=event.target_chain,
                address=event.dest_address,
                amount=event.amount,
                asset=event.asset,
            )
            return await self._submit(record, action)

        # Internal actions: no external transfer, confirm directly
        return await self._confirm(record)

    async def _check_liquidity(self, action: SettlementAction) -> None:
        client = self._client(action.chain)
        result = await client.get_balance(self.settings.POOL_ADDRESS, action.asset)
        _raise_for(result, f"balance check on {action.chain}")
        if result.balance < action.amount:
            raise InsufficientLiquidity(
                f"Pool holds {result.balance} {action.asset}, release needs {action.amount}"
            )

    def _client(self, chain: Optional[str]) -> ChainClient:
        client = self.chains.get(chain or "")
        if client is None:
            raise ChainCallFailed(f"No client for chain {chain}", kind=ErrorKind.PERMANENT)
        return client

    async def _submit(self, record: SettlementRecord, action: SettlementAction) -> SettlementRecord:
        if record.dest_tx_ref:
            # Transfer already issued before a manual retry; only finality is left
            return await self.store.save_settlement(record.model_copy(update={
                "status": SettlementStatus.SUBMITTED,
                "action": action,
            }))

        if not action.address:
            raise InvalidAddress(f"Settlement {record.source_event_id} has no destination address")

        client = self._client(action.chain)
        result = await client.submit_transfer(
            to=action.address,
            amount=action.amount,
            asset=action.asset,
            reference=record.source_event_id,
        )
        _raise_for(result, f"transfer on {action.chain}")

        record = await self.store.save_settlement(record.model_copy(update={
            "status": SettlementStatus.SUBMITTED,
            "action": action,
            "dest_tx_ref": result.tx_ref,
            "last_error": None,
            "error_kind": None,
        }))
        logger.info(
            f"[DISPATCH] Submitted {record.source_event_id} -> {action.chain} "
            f"{action.amount} {action.asset} to {action.address} (tx {result.tx_ref})"
        )
        return record

    async def _await_finality(self, record: SettlementRecord) -> SettlementRecord:
        client = self._client(record.action.chain if record.action else None)

        for check in range(self.finality_checks):
            result = await client.get_transaction_status(record.dest_tx_ref)
            if result.ok:
                if result.status == TxStatus.FINAL:
                    return await self._confirm(record)
                if result.status == TxStatus.FAILED:
                    # Reverted: safe to re-issue after a manual retry
                    record = record.model_copy(update={"dest_tx_ref": None})
                    return await self._fail(
                        record, f"transaction reverted on {record.action.chain}", ErrorKind.PERMANENT
                    )
            elif result.error_kind == ErrorKind.FATAL:
                raise SigningUnavailable(f"finality check: {result.error}")

            if check < self.finality_checks - 1:
                await self.sleep(self.finality_poll)

        logger.warning(
            f"[DISPATCH] {record.source_event_id} not final after {self.finality_checks} checks, "
            f"staying submitted (tx {record.dest_tx_ref})"
        )
        return record

    async def _confirm(self, record: SettlementRecord) -> SettlementRecord:
        outcome = await self._apply_side_effect(record)
        record = await self.store.save_settlement(record.model_copy(update={
            "status": SettlementStatus.CONFIRMED,
            "outcome": outcome,
            "next_attempt_at": None,
            "last_error": None,
            "error_kind": None,
        }))
        logger.info(f"[DISPATCH] Confirmed {record.source_event_id}: {outcome}")
        return record

    async def _apply_side_effect(self, record: SettlementRecord) -> str:
        """Idempotent effect of a final settlement. Returns a short outcome label."""
        event = record.event

        if event.event_type == CanonicalEventType.LOCKED and event.loan_id is None:
            terms = record.terms
            loan = await self.ledger.originate(
                borrower=terms.borrower,
                collateral_amount=terms.collateral_amount,
                borrowed_amount=terms.borrowed_amount,
                duration_days=terms.duration_days,
                rate_apy=terms.interest_rate_apy,
                loan_id=terms.loan_id,
                price=terms.price,
                source_event_id=record.source_event_id,
                return_address=terms.return_address,
                destination_address=terms.destination_address,
            )
            return f"originated loan {loan.id}"

        if event.event_type == CanonicalEventType.LOCKED:
            try:
                await self.ledger.add_collateral(event.loan_id, event.amount, reference=event.key)
                return f"collateral added to loan {event.loan_id}"
            except (LoanNotFound, AlreadyTerminal) as e:
                logger.warning(f"[DISPATCH] Top-up {event.key} rejected ({e.code}), refunding")
                await self.request_release(
                    key=f"refund:{event.key}",
                    chain=event.source_chain,
                    address=event.source_address,
                    amount=event.amount,
                    asset=event.asset,
                    purpose="refund",
                    loan_id=event.loan_id,
                )
                return f"refunded ({e.code})"

        if event.event_type == CanonicalEventType.PAID_BACK:
            if event.loan_id:
                try:
                    await self.ledger.repay(event.loan_id, event.amount, reference=event.key)
                    return f"repaid loan {event.loan_id}"
                except (InsufficientRepayment, AlreadyTerminal, LoanNotFound) as e:
                    logger.warning(f"[DISPATCH] Payback {event.key} not applied ({e.code}), crediting payer")
            await self.credit(
                reference=event.key,
                account=event.source_address,
                asset=event.asset,
                amount=event.amount,
            )
            return "credited payer"

        return f"released ({event.purpose or 'release'})"

    async def _schedule_retry(self, record: SettlementRecord, error: BridgeError) -> SettlementRecord:
        attempts = record.attempts + 1
        if attempts >= self.max_attempts:
            return await self._fail(
                record.model_copy(update={"attempts": attempts}),
                f"retries exhausted: {error.message}",
                error.kind,
            )

        delay = backoff_delay(attempts, self.backoff_base, self.backoff_max)
        record = await self.store.save_settlement(record.model_copy(update={
            "attempts": attempts,
            "next_attempt_at": self.clock() + timedelta(seconds=delay),
            "last_error": error.message,
            "error_kind": error.kind,
        }))
        logger.warning(
            f"[DISPATCH] {record.source_event_id} attempt {attempts}/{self.max_attempts} failed "
            f"({error.code}: {error.message}), retry in {delay:.1f}s"
        )
        return record

    async def _fail(self, record: SettlementRecord, error: str, kind: ErrorKind) -> SettlementRecord:
        if record.status == SettlementStatus.SUBMITTED and record.dest_tx_ref:
            action = record.action
            logger.error(
                f"[DISPATCH] {record.source_event_id}: transfer {record.dest_tx_ref} already moved "
                f"{action.amount if action else '?'} {action.asset if action else ''} on "
                f"{action.chain if action else '?'} but the settlement failed; "
                f"manual retry re-applies it without a second transfer"
            )
        record = await self.store.save_settlement(record.model_copy(update={
            "status": SettlementStatus.FAILED,
            "next_attempt_at": None,
            "last_error": error,
            "error_kind": kind,
        }))
        logger.error(f"[DISPATCH] {record.source_event_id} failed: {error}")
        return record
