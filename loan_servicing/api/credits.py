"""
Credit endpoints: registration, formalization, schedule, payments,
extraordinary payments and early payoff
"""

import logging
from datetime import date
from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, Query, status

from .dependencies import ServicingSystem, get_servicing_system, get_actor, to_http_error
from .schemas import (
    RegisterCreditRequest, FormalizeCreditRequest, SchedulePreviewRequest, PaymentRequest,
    ExtraordinaryPaymentRequest, PayoffRequest, optional_date, optional_amount
)
from ..actors import Actor
from ..credits import CreditStatus, PaymentSource
from ..extraordinary import ExtraordinaryStrategy
from ..money import to_decimal
from ..logging_config import log_action
from ..exceptions import ServicingError

logger = logging.getLogger("loansvc.api")

router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def register_credit(
    request: RegisterCreditRequest,
    system: ServicingSystem = Depends(get_servicing_system),
    actor: Actor = Depends(get_actor)
):
    """Register an approved credit"""
    try:
        credit = system.credit_manager.register_credit(
            borrower_identity=request.borrower_identity,
            principal=to_decimal(request.principal),
            annual_rate=to_decimal(request.annual_rate),
            term_months=request.term_months,
            start_date=date.fromisoformat(request.start_date),
            borrower_name=request.borrower_name,
            reference=request.reference,
            deductora_id=request.deductora_id,
            monthly_policy=to_decimal(request.monthly_policy),
            actor_id=actor.actor_id
        )
        return credit.to_dict()
    except (ServicingError, ValueError) as e:
        raise to_http_error(e)


@router.get("")
def list_credits(
    status_filter: Optional[str] = Query(None, alias="status"),
    system: ServicingSystem = Depends(get_servicing_system)
):
    """List credits, optionally by status"""
    try:
        credit_status = CreditStatus(status_filter) if status_filter else None
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"credits": [c.to_dict() for c in system.credit_manager.list_credits(credit_status)]}


@router.post("/simulate")
def simulate_schedule(
    request: SchedulePreviewRequest,
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Compute an amortization plan without storing it"""
    try:
        rows = system.schedule_generator.preview_schedule(
            to_decimal(request.principal), to_decimal(request.annual_rate),
            request.term_months, date.fromisoformat(request.start_date)
        )
    except (ServicingError, ValueError) as e:
        raise to_http_error(e)
    return {
        "installment_amount": str(rows[0].installment_amount) if rows else "0.00",
        "rows": [
            {
                "number": row.number,
                "due_date": row.due_date.isoformat(),
                "opening_balance": str(row.opening_balance),
                "installment_amount": str(row.installment_amount),
                "interest": str(row.interest),
                "principal": str(row.principal),
                "closing_balance": str(row.closing_balance)
            }
            for row in rows
        ]
    }


@router.get("/{credit_id}")
def get_credit(
    credit_id: str,
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Get credit details"""
    credit = system.credit_manager.get_credit(credit_id)
    if not credit:
        raise HTTPException(status_code=404, detail="Credit not found")
    return credit.to_dict()


@router.post("/{credit_id}/formalize")
def formalize_credit(
    credit_id: str,
    request: FormalizeCreditRequest,
    system: ServicingSystem = Depends(get_servicing_system),
    actor: Actor = Depends(get_actor)
):
    """Generate the installment plan and formalize the credit"""
    try:
        installments = system.schedule_generator.generate_schedule(
            credit_id,
            formalized_on=optional_date(request.formalized_on),
            actor_id=actor.actor_id
        )
    except (ServicingError, ValueError) as e:
        raise to_http_error(e)
    log_action(logger, "info", "Credit formalized", actor_id=actor.actor_id,
               action="formalize", credit_id=credit_id)
    credit = system.credit_manager.get_credit(credit_id)
    return {
        "credit": credit.to_dict(),
        "installments": [i.to_dict() for i in installments]
    }


@router.get("/{credit_id}/schedule")
def get_schedule(
    credit_id: str,
    include_initialization: bool = False,
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Installments of a credit ordered by number"""
    if not system.credit_manager.get_credit(credit_id):
        raise HTTPException(status_code=404, detail="Credit not found")
    installments = system.credit_manager.get_installments(credit_id, include_initialization)
    return {"credit_id": credit_id, "installments": [i.to_dict() for i in installments]}


@router.get("/{credit_id}/payments")
def get_payments(
    credit_id: str,
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Payment history of a credit"""
    if not system.credit_manager.get_credit(credit_id):
        raise HTTPException(status_code=404, detail="Credit not found")
    return {"credit_id": credit_id, "payments": [p.to_dict() for p in system.credit_manager.get_payments(credit_id)]}


@router.post("/{credit_id}/payments", status_code=status.HTTP_201_CREATED)
def apply_payment(
    credit_id: str,
    request: PaymentRequest,
    system: ServicingSystem = Depends(get_servicing_system),
    actor: Actor = Depends(get_actor)
):
    """Apply a manual or transfer payment"""
    try:
        source = PaymentSource(request.source)
        if source not in (PaymentSource.MANUAL, PaymentSource.TRANSFER):
            raise ValueError(f"Source {request.source} is not accepted on this endpoint")
        payment = system.allocator.apply_payment(
            credit_id,
            to_decimal(request.amount),
            payment_date=optional_date(request.payment_date),
            source=source,
            target_installments=request.target_installments,
            actor_id=actor.actor_id,
            reference=request.reference
        )
    except (ServicingError, ValueError) as e:
        raise to_http_error(e)
    log_action(logger, "info", "Payment applied", actor_id=actor.actor_id, action="payment",
               credit_id=credit_id, extra={"payment_id": payment.id, "amount": str(payment.amount)})
    return payment.to_dict()


@router.post("/{credit_id}/extraordinary/preview")
def preview_extraordinary(
    credit_id: str,
    request: ExtraordinaryPaymentRequest,
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Show the effect of an extraordinary payment without applying it"""
    try:
        return system.extraordinary.preview(
            credit_id,
            to_decimal(request.amount),
            ExtraordinaryStrategy(request.strategy),
            as_of=optional_date(request.payment_date)
        )
    except (ServicingError, ValueError) as e:
        raise to_http_error(e)


@router.post("/{credit_id}/extraordinary", status_code=status.HTTP_201_CREATED)
def apply_extraordinary(
    credit_id: str,
    request: ExtraordinaryPaymentRequest,
    system: ServicingSystem = Depends(get_servicing_system),
    actor: Actor = Depends(get_actor)
):
    """Apply an extraordinary (principal only) payment"""
    try:
        payment = system.extraordinary.apply_extraordinary(
            credit_id,
            to_decimal(request.amount),
            ExtraordinaryStrategy(request.strategy),
            payment_date=optional_date(request.payment_date),
            actor_id=actor.actor_id,
            reference=request.reference
        )
    except (ServicingError, ValueError) as e:
        raise to_http_error(e)
    credit = system.credit_manager.get_credit(credit_id)
    return {"payment": payment.to_dict(), "credit": credit.to_dict()}


@router.get("/{credit_id}/payoff")
def quote_payoff(
    credit_id: str,
    as_of: Optional[str] = None,
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Amount needed to cancel the credit"""
    try:
        return system.payoff.quote(credit_id, optional_date(as_of)).to_dict()
    except (ServicingError, ValueError) as e:
        raise to_http_error(e)


@router.post("/{credit_id}/payoff", status_code=status.HTTP_201_CREATED)
def commit_payoff(
    credit_id: str,
    request: PayoffRequest,
    system: ServicingSystem = Depends(get_servicing_system),
    actor: Actor = Depends(get_actor)
):
    """Cancel the credit early"""
    try:
        payment = system.payoff.commit_payoff(
            credit_id,
            amount=optional_amount(request.amount),
            payment_date=optional_date(request.payment_date),
            actor_id=actor.actor_id,
            reference=request.reference
        )
    except (ServicingError, ValueError) as e:
        raise to_http_error(e)
    log_action(logger, "info", "Credit paid off", actor_id=actor.actor_id, action="payoff",
               credit_id=credit_id, extra={"payment_id": payment.id, "amount": str(payment.amount)})
    credit = system.credit_manager.get_credit(credit_id)
    return {"payment": payment.to_dict(), "credit": credit.to_dict()}
