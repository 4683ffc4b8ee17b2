"""Dependency injection helpers for FastAPI."""

from fastapi import Depends, HTTPException, Request, status

from polarbridge.core.errors import (
    AlreadyTerminal,
    BridgeError,
    ChainCallFailed,
    ErrorKind,
    EventNotFound,
    InvalidTransition,
    LoanNotFound,
    PriceUnavailable,
    SettlementNotFound,
    VersionConflict,
)
from polarbridge.services.dispatcher import SettlementDispatcher
from polarbridge.services.loan_ledger import LoanLedger
from polarbridge.services.runtime import BridgeRuntime


def get_runtime(request: Request) -> BridgeRuntime:
    return request.app.state.runtime


def get_ledger(runtime: BridgeRuntime = Depends(get_runtime)) -> LoanLedger:
    return runtime.ledger


def get_dispatcher(runtime: BridgeRuntime = Depends(get_runtime)) -> SettlementDispatcher:
    return runtime.dispatcher


def http_error(e: BridgeError) -> HTTPException:
    """Map a domain error onto an HTTP status."""
    if isinstance(e, (LoanNotFound, SettlementNotFound, EventNotFound)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, (AlreadyTerminal, InvalidTransition, VersionConflict)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(e, PriceUnavailable) or e.kind == ErrorKind.FATAL:
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(e, ChainCallFailed):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    return HTTPException(status_code=code, detail={"error": e.code, "message": e.message})
