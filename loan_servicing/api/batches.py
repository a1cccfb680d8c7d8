"""
Payroll batch (planilla) endpoints
"""

import logging
from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import ServicingSystem, get_servicing_system, get_actor, to_http_error
from .schemas import BatchPreviewRequest, BatchCommitRequest, BatchVoidRequest, optional_date
from ..actors import Actor
from ..planilla import BatchState
from ..logging_config import log_action
from ..exceptions import ServicingError

logger = logging.getLogger("loansvc.api")

router = APIRouter()


@router.post("/preview")
def preview_batch(
    request: BatchPreviewRequest,
    system: ServicingSystem = Depends(get_servicing_system),
    actor: Actor = Depends(get_actor)
):
    """Classify every row of a payroll file without applying it"""
    try:
        return system.batches.preview(
            request.file_content(),
            file_name=request.file_name,
            processing_date=optional_date(request.processing_date),
            deductora_id=request.deductora_id,
            period=request.period,
            actor_id=actor.actor_id
        )
    except (ServicingError, ValueError) as e:
        raise to_http_error(e)


@router.post("/commit", status_code=status.HTTP_201_CREATED)
def commit_batch(
    request: BatchCommitRequest,
    system: ServicingSystem = Depends(get_servicing_system),
    actor: Actor = Depends(get_actor)
):
    """Apply a previewed payroll file"""
    try:
        batch = system.batches.commit(
            request.file_content(),
            request.token,
            file_name=request.file_name,
            processing_date=optional_date(request.processing_date),
            deductora_id=request.deductora_id,
            period=request.period,
            actor_id=actor.actor_id
        )
    except (ServicingError, ValueError) as e:
        raise to_http_error(e)
    log_action(logger, "info", "Batch committed", actor_id=actor.actor_id, action="batch_commit",
               extra={"batch_id": batch.id, "payments": batch.payment_count})
    return batch.to_dict()


@router.post("/{batch_id}/void")
def void_batch(
    batch_id: str,
    request: BatchVoidRequest,
    system: ServicingSystem = Depends(get_servicing_system),
    actor: Actor = Depends(get_actor)
):
    """Reverse a committed batch (privileged)"""
    try:
        batch = system.batches.void(batch_id, request.reason, actor)
    except (ServicingError, ValueError) as e:
        raise to_http_error(e)
    log_action(logger, "warning", "Batch voided", actor_id=actor.actor_id, action="batch_void",
               extra={"batch_id": batch.id, "reason": batch.void_reason})
    return batch.to_dict()


@router.get("")
def list_batches(
    deductora_id: Optional[str] = None,
    state: Optional[str] = None,
    system: ServicingSystem = Depends(get_servicing_system)
):
    """List committed batches"""
    try:
        batch_state = BatchState(state) if state else None
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    batches = system.batches.list_batches(deductora_id=deductora_id, state=batch_state)
    return {"batches": [b.to_dict() for b in batches]}


@router.get("/{batch_id}")
def get_batch(
    batch_id: str,
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Get batch details"""
    batch = system.batches.get_batch(batch_id)
    if not batch:
        raise HTTPException(status_code=404, detail="Batch not found")
    return batch.to_dict()
