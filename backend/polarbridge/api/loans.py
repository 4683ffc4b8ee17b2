"""
Polar Bridge - Loan API

Origination and collateral top-ups go through a source-chain lock: the
API only validates and submits the lock, the loan itself appears once the
Settlement Dispatcher confirms the lock event. Repayment works the same way
round: it settles a payback event found on the destination chain.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from polarbridge.bridges.chain import LockResult
from polarbridge.core.config import LendingPolicy
from polarbridge.core.errors import (
    AlreadyTerminal,
    BridgeError,
    ChainCallFailed,
    ErrorKind,
    InvalidAddress,
    MalformedEvent,
    PriceUnavailable,
    SigningUnavailable,
)
from polarbridge.core.types import Rate, Ratio, UnitAmount
from polarbridge.dependencies import get_ledger, get_runtime, http_error
from polarbridge.models.schemas import (
    BorrowerSummary,
    CanonicalEventType,
    HealthStatus,
    Loan,
    LoanPreview,
    LoanStatus,
    LoanTerms,
    SettlementRecord,
)
from polarbridge.services import lending_math
from polarbridge.services.loan_ledger import LoanLedger, loan_id_for_event
from polarbridge.services.runtime import BridgeRuntime

router = APIRouter(tags=["loans"])


class LendingConfigResponse(BaseModel):
    collateral_asset: str
    borrowed_asset: str
    asset_scales: dict[str, int]
    policy: LendingPolicy


class PreviewRequest(BaseModel):
    borrowed_amount: UnitAmount = Field(..., gt=0)
    ltv: Optional[Rate] = None
    duration_days: Optional[int] = None


class OriginateRequest(BaseModel):
    borrower: str = Field(..., min_length=1)
    collateral_amount: UnitAmount = Field(..., gt=0)
    destination_address: str = Field(..., min_length=1)
    ltv: Optional[Rate] = None
    duration_days: Optional[int] = None


class LockAccepted(BaseModel):
    """202 body: the lock is on chain, settlement is in progress."""
    source_event_id: str
    source_tx_ref: Optional[str] = None
    loan_id: Optional[str] = None
    terms: Optional[LoanTerms] = None


class RepayRequest(BaseModel):
    """Destination-chain payback event, with or without the chain prefix."""
    event_id: str = Field(..., min_length=1)


class RepayResponse(BaseModel):
    settlement: SettlementRecord
    loan: Loan


class PaybackInstructions(BaseModel):
    loan_id: str
    chain: str
    pool_address: str
    asset: str
    amount: UnitAmount
    memo: dict


class CollateralRequest(BaseModel):
    amount: UnitAmount = Field(..., gt=0)


class LoanView(BaseModel):
    """Loan with a live health view."""
    loan: Loan
    total_debt: UnitAmount
    health_factor: Optional[Ratio] = None
    health_status: Optional[HealthStatus] = None
    liquidation_price: Optional[Ratio] = None
    days_past_deadline: int = 0
    price_as_of: Optional[datetime] = None


def _lock_failure(result: LockResult) -> BridgeError:
    if result.error_kind == ErrorKind.FATAL:
        return SigningUnavailable(f"Lock rejected: {result.error}")
    return ChainCallFailed(
        f"Lock failed: {result.error}", kind=result.error_kind or ErrorKind.TRANSIENT
    )


async def _lock(runtime: BridgeRuntime, amount: int, destination: str, memo: dict) -> LockResult:
    settings = runtime.settings
    client = runtime.chains[settings.SOURCE_CHAIN]
    result = await client.lock(amount, settings.COLLATERAL_ASSET, destination, memo)
    if not result.ok or not result.source_event_id:
        raise _lock_failure(result)
    return result


@router.get("/lending/config", response_model=LendingConfigResponse)
async def get_lending_config(runtime: BridgeRuntime = Depends(get_runtime)):
    """Lending policy parameters."""
    settings = runtime.settings
    return LendingConfigResponse(
        collateral_asset=settings.COLLATERAL_ASSET,
        borrowed_asset=settings.BORROWED_ASSET,
        asset_scales=settings.ASSET_SCALES,
        policy=settings.LENDING,
    )


@router.post("/loans/preview", response_model=LoanPreview)
async def preview_loan(request: PreviewRequest, ledger: LoanLedger = Depends(get_ledger)):
    """Collateral, interest and health for a prospective loan. Creates nothing."""
    try:
        return await ledger.preview(request.borrowed_amount, request.ltv, request.duration_days)
    except BridgeError as e:
        raise http_error(e)


@router.post("/loans", response_model=LockAccepted, status_code=status.HTTP_202_ACCEPTED)
async def originate_loan(request: OriginateRequest, runtime: BridgeRuntime = Depends(get_runtime)):
    """
    Validate terms and lock collateral on the source chain.

    The memo carries the terms; the loan is created when the lock settles.
    """
    try:
        terms = await runtime.ledger.terms_for(
            borrower=request.borrower,
            collateral_amount=request.collateral_amount,
            destination_address=request.destination_address,
            ltv=request.ltv,
            duration_days=request.duration_days,
        )
        memo = {
            "borrower": request.borrower,
            "duration_days": terms.duration_days,
            "ltv": str(request.ltv) if request.ltv is not None else None,
        }
        result = await _lock(runtime, request.collateral_amount, request.destination_address, memo)
    except BridgeError as e:
        raise http_error(e)

    source_event_id = f"{runtime.settings.SOURCE_CHAIN}:{result.source_event_id}"
    return LockAccepted(
        source_event_id=source_event_id,
        source_tx_ref=result.tx_ref,
        loan_id=loan_id_for_event(source_event_id),
        terms=terms,
    )


@router.get("/loans/{loan_id}", response_model=LoanView)
async def get_loan(loan_id: str, ledger: LoanLedger = Depends(get_ledger)):
    """Loan with health recomputed at the current price (stored health if no price)."""
    try:
        loan = await ledger.get_loan(loan_id)
    except BridgeError as e:
        raise http_error(e)

    view = LoanView(
        loan=loan,
        total_debt=loan.total_debt,
        health_factor=loan.health_factor,
        days_past_deadline=lending_math.days_past_deadline(loan.deadline, ledger.clock().date()),
        price_as_of=loan.health_checked_at,
    )
    if loan.is_terminal:
        return view

    price: Optional[Decimal] = loan.last_price
    try:
        quote = await ledger.oracle.get_price(loan.collateral_asset)
        price = quote.price
        view.price_as_of = quote.as_of
    except PriceUnavailable:
        pass

    if price is not None:
        view.health_factor = ledger.health_factor_for(loan, price)
    if view.health_factor is not None:
        view.health_status = lending_math.health_status(ledger.policy, view.health_factor)
    view.liquidation_price = lending_math.liquidation_price(
        loan.total_debt,
        loan.collateral_amount,
        ledger.policy.liquidation_threshold,
        ledger.collateral_scale,
        ledger.borrowed_scale,
    )
    return view


@router.get("/loans", response_model=List[Loan])
async def list_loans(
    borrower: Optional[str] = Query(None),
    loan_status: Optional[LoanStatus] = Query(None, alias="status"),
    ledger: LoanLedger = Depends(get_ledger),
):
    statuses = [loan_status] if loan_status else None
    return await ledger.list_loans(borrower=borrower, statuses=statuses)


@router.get("/borrowers/{borrower}/summary", response_model=BorrowerSummary)
async def borrower_summary(borrower: str, ledger: LoanLedger = Depends(get_ledger)):
    """Loan count and totals over the borrower's open loans."""
    return await ledger.borrower_summary(borrower)


@router.get("/loans/{loan_id}/payback", response_model=PaybackInstructions)
async def payback_instructions(loan_id: str, runtime: BridgeRuntime = Depends(get_runtime)):
    """Where and how much to pay on the destination chain to close the loan."""
    try:
        loan = await runtime.ledger.get_loan(loan_id)
        if loan.is_terminal:
            raise AlreadyTerminal(f"Loan {loan_id} is {loan.status.value}", loan_id=loan_id)
    except BridgeError as e:
        raise http_error(e)

    settings = runtime.settings
    return PaybackInstructions(
        loan_id=loan_id,
        chain=settings.DESTINATION_CHAIN,
        pool_address=settings.POOL_ADDRESS,
        asset=loan.borrowed_asset,
        amount=loan.total_debt,
        memo={"loan_id": loan_id},
    )


@router.post("/loans/{loan_id}/repay", response_model=RepayResponse)
async def repay_loan(loan_id: str, request: RepayRequest, runtime: BridgeRuntime = Depends(get_runtime)):
    """
    Settle a payback already made on the destination chain.

    The event is looked up on chain and settled under its own key, the same
    way the watcher would; a short payment is credited and the loan stays open.
    """
    settings = runtime.settings
    chain = settings.DESTINATION_CHAIN
    event_id = request.event_id.removeprefix(f"{chain}:")
    try:
        await runtime.ledger.get_loan(loan_id)
        event = await runtime.watcher(chain).fetch(event_id)
        if event.event_type != CanonicalEventType.PAID_BACK:
            raise MalformedEvent(f"{event.key} is not a payback", code="not_a_payback")
        if event.loan_id != loan_id:
            raise MalformedEvent(
                f"{event.key} pays loan {event.loan_id}, not {loan_id}", code="payback_loan_mismatch"
            )
        if settings.POOL_ADDRESS and event.dest_address != settings.POOL_ADDRESS:
            raise InvalidAddress(f"{event.key} paid {event.dest_address}, not the pool")

        record = await runtime.dispatcher.settle(event)
        loan = await runtime.ledger.get_loan(loan_id)
    except BridgeError as e:
        raise http_error(e)

    return RepayResponse(settlement=record, loan=loan)


@router.post(
    "/loans/{loan_id}/collateral",
    response_model=LockAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def add_collateral(
    loan_id: str,
    request: CollateralRequest,
    runtime: BridgeRuntime = Depends(get_runtime),
):
    """Lock extra collateral for an open loan; applied when the lock settles."""
    try:
        loan = await runtime.ledger.get_loan(loan_id)
        if loan.is_terminal:
            raise AlreadyTerminal(f"Loan {loan_id} is {loan.status.value}", loan_id=loan_id)
        memo = {"borrower": loan.borrower, "loan_id": loan_id}
        result = await _lock(
            runtime, request.amount, loan.destination_address or loan.borrower, memo
        )
    except BridgeError as e:
        raise http_error(e)

    return LockAccepted(
        source_event_id=f"{runtime.settings.SOURCE_CHAIN}:{result.source_event_id}",
        source_tx_ref=result.tx_ref,
        loan_id=loan_id,
    )
