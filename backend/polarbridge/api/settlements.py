"""
Polar Bridge - Settlement Operator API

Read access to settlement records and the manual failed -> pending retry.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from polarbridge.core.errors import BridgeError
from polarbridge.dependencies import get_dispatcher, http_error
from polarbridge.models.schemas import SettlementRecord, SettlementStatus
from polarbridge.services.dispatcher import SettlementDispatcher

router = APIRouter(prefix="/settlements", tags=["settlements"])


@router.get("", response_model=List[SettlementRecord])
async def list_settlements(
    settlement_status: Optional[SettlementStatus] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=1000),
    dispatcher: SettlementDispatcher = Depends(get_dispatcher),
):
    statuses = [settlement_status] if settlement_status else None
    return await dispatcher.store.list_settlements(statuses=statuses, limit=limit)


@router.get("/{key}", response_model=SettlementRecord)
async def get_settlement(key: str, dispatcher: SettlementDispatcher = Depends(get_dispatcher)):
    record = await dispatcher.store.get_settlement(key)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "settlement_not_found", "message": f"Settlement {key} not found"},
        )
    return record


@router.post("/{key}/retry", response_model=SettlementRecord, status_code=status.HTTP_202_ACCEPTED)
async def retry_settlement(key: str, dispatcher: SettlementDispatcher = Depends(get_dispatcher)):
    """Reset a failed record to pending and settle it again in the background."""
    try:
        record = await dispatcher.retry_failed(key)
    except BridgeError as e:
        raise http_error(e)
    dispatcher.spawn_key(key)
    return record
