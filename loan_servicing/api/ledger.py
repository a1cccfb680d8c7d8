"""
External ledger dispatch endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends

from .dependencies import ServicingSystem, get_servicing_system
from .schemas import LedgerRetryRequest
from ..ledger_dispatch import DispatchStatus, LedgerEntryType


router = APIRouter()


@router.get("/dispatches")
def list_dispatches(
    status: Optional[str] = None,
    entry_type: Optional[str] = None,
    credit_id: Optional[str] = None,
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Dispatch log, oldest first"""
    try:
        dispatch_status = DispatchStatus(status) if status else None
        dispatch_type = LedgerEntryType(entry_type) if entry_type else None
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    records = system.ledger_dispatcher.list_records(
        status=dispatch_status, entry_type=dispatch_type, credit_id=credit_id
    )
    return {"dispatches": [r.to_dict() for r in records]}


@router.get("/dispatches/exhausted")
def list_exhausted(system: ServicingSystem = Depends(get_servicing_system)):
    """Failed dispatches that will not be retried automatically"""
    return {"dispatches": [r.to_dict() for r in system.ledger_dispatcher.list_exhausted()]}


@router.get("/dispatches/{record_id}")
def get_dispatch(
    record_id: str,
    system: ServicingSystem = Depends(get_servicing_system)
):
    record = system.ledger_dispatcher.get_record(record_id)
    if not record:
        raise HTTPException(status_code=404, detail="Dispatch record not found")
    return record.to_dict()


@router.post("/retry")
def retry_dispatches(
    request: LedgerRetryRequest,
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Run the retry sweep now"""
    return system.ledger_dispatcher.retry_failed(limit=request.limit, dry_run=request.dry_run)
