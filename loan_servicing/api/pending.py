"""
Pending balance endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends

from .dependencies import ServicingSystem, get_servicing_system, get_actor, to_http_error
from .schemas import PendingToInstallmentRequest, PendingToPrincipalRequest, optional_date, optional_amount
from ..actors import Actor
from ..pending import PendingBalanceState
from ..extraordinary import ExtraordinaryStrategy
from ..exceptions import ServicingError


router = APIRouter()


@router.get("")
def list_pending_balances(
    state: Optional[str] = None,
    credit_id: Optional[str] = None,
    borrower_identity: Optional[str] = None,
    system: ServicingSystem = Depends(get_servicing_system)
):
    """List pending balances"""
    try:
        balance_state = PendingBalanceState(state) if state else None
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    balances = system.pending_queue.list(
        state=balance_state, credit_id=credit_id, borrower_identity=borrower_identity
    )
    return {"pending_balances": [b.to_dict() for b in balances]}


@router.get("/{pending_id}")
def get_pending_balance(
    pending_id: str,
    system: ServicingSystem = Depends(get_servicing_system)
):
    balance = system.pending_queue.get(pending_id)
    if not balance:
        raise HTTPException(status_code=404, detail="Pending balance not found")
    return balance.to_dict()


@router.post("/{pending_id}/apply-installment")
def apply_to_installment(
    pending_id: str,
    request: PendingToInstallmentRequest,
    system: ServicingSystem = Depends(get_servicing_system),
    actor: Actor = Depends(get_actor)
):
    """Apply a pending balance to the credit's next installments"""
    try:
        payment = system.pending_resolver.apply_to_installment(
            pending_id,
            amount=optional_amount(request.amount),
            credit_id=request.credit_id,
            target_installments=request.target_installments,
            payment_date=optional_date(request.payment_date),
            actor_id=actor.actor_id
        )
    except (ServicingError, ValueError) as e:
        raise to_http_error(e)
    return {
        "payment": payment.to_dict(),
        "pending_balance": system.pending_queue.get(pending_id).to_dict()
    }


@router.post("/{pending_id}/apply-principal")
def apply_to_principal(
    pending_id: str,
    request: PendingToPrincipalRequest,
    system: ServicingSystem = Depends(get_servicing_system),
    actor: Actor = Depends(get_actor)
):
    """Apply a pending balance directly to the credit's principal"""
    try:
        payment = system.pending_resolver.apply_to_principal(
            pending_id,
            amount=optional_amount(request.amount),
            credit_id=request.credit_id,
            strategy=ExtraordinaryStrategy(request.strategy),
            payment_date=optional_date(request.payment_date),
            actor_id=actor.actor_id
        )
    except (ServicingError, ValueError) as e:
        raise to_http_error(e)
    return {
        "payment": payment.to_dict(),
        "pending_balance": system.pending_queue.get(pending_id).to_dict()
    }
