"""
Arrears Accrual Module

Periodic sweep over installments that are past due and not Pagado. Accrual is
keyed to month-end boundaries after the due date and each installment stores
the last boundary it was accrued for, so re-running a sweep for the same date
changes nothing.

At each boundary (the due date itself being the first):

- first boundary: the unpaid current interest moves to overdue interest
- later boundaries: a month of contractual interest on the unpaid principal
  is added to overdue interest
- every boundary, when the contractual rate is below the configured maximum,
  moratory interest at the headroom rate (max - contractual) on the unpaid
  principal
"""

from decimal import Decimal
from datetime import date
from typing import Any, Dict, List, Optional
import logging

from .money import ZERO, round_money, to_decimal, monthly_interest
from .credits import CreditManager, Installment, InstallmentState
from .schedule import month_end
from .audit import AuditTrail, AuditEventType

logger = logging.getLogger("loansvc.arrears")


def accrual_boundaries(installment: Installment, as_of: date) -> List[date]:
    """Month-end boundaries from the due date that have passed and are not yet accrued"""
    boundaries = []
    months = 0
    while True:
        boundary = month_end(installment.due_date, months)
        if boundary >= as_of:
            break
        if installment.last_accrued_date is None or boundary > installment.last_accrued_date:
            boundaries.append(boundary)
        months += 1
    return boundaries


def accrue_installment(installment: Installment, annual_rate: Decimal,
                       max_annual_rate: Decimal, as_of: date) -> Dict[str, Decimal]:
    """
    Bring one overdue installment's arrears up to ``as_of``.

    Returns:
        Amounts added by this call: moved_interest, overdue_interest, moratory_interest
    """
    added = {"moved_interest": ZERO, "overdue_interest": ZERO, "moratory_interest": ZERO}
    if installment.state == InstallmentState.PAID or installment.due_date >= as_of:
        return added

    installment.days_late = (as_of - installment.due_date).days
    headroom = to_decimal(max_annual_rate) - to_decimal(annual_rate)

    for boundary in accrual_boundaries(installment, as_of):
        if boundary == installment.due_date:
            moved = installment.outstanding("current_interest")
            if moved > ZERO:
                installment.current_interest = installment.paid_current_interest
                installment.overdue_interest = round_money(installment.overdue_interest + moved)
                added["moved_interest"] = round_money(added["moved_interest"] + moved)
        else:
            interest = monthly_interest(installment.unpaid_principal, annual_rate)
            installment.overdue_interest = round_money(installment.overdue_interest + interest)
            added["overdue_interest"] = round_money(added["overdue_interest"] + interest)

        if headroom > ZERO:
            moratory = monthly_interest(installment.unpaid_principal, headroom)
            installment.moratory_interest = round_money(installment.moratory_interest + moratory)
            added["moratory_interest"] = round_money(added["moratory_interest"] + moratory)

        installment.last_accrued_date = boundary

    installment.transition_to(InstallmentState.ARREARS)
    return added


class ArrearsAccrual:
    """
    Runs the arrears sweep, one credit transaction at a time.
    """

    def __init__(self, credit_manager: CreditManager, audit_trail: AuditTrail,
                 max_annual_rate: Decimal):
        self.credits = credit_manager
        self.audit_trail = audit_trail
        self.max_annual_rate = to_decimal(max_annual_rate)

    def accrue_credit(self, credit_id: str, as_of: date) -> Dict[str, Any]:
        """
        Accrue arrears for one credit.

        Returns:
            Per-credit result with the installments touched and amounts added
        """
        with self.credits.credit_transaction(credit_id):
            credit = self.credits.require_credit(credit_id)
            if not credit.is_payable:
                return {"credit_id": credit_id, "installments": 0}

            installments = self.credits.get_installments(credit_id)
            touched = []
            totals = {"moved_interest": ZERO, "overdue_interest": ZERO, "moratory_interest": ZERO}
            for installment in installments:
                if installment.state == InstallmentState.PAID or installment.due_date >= as_of:
                    continue
                before = (installment.state, installment.days_late, installment.last_accrued_date)
                added = accrue_installment(installment, credit.annual_rate, self.max_annual_rate, as_of)
                after = (installment.state, installment.days_late, installment.last_accrued_date)
                if before == after:
                    continue
                for key, value in added.items():
                    totals[key] = round_money(totals[key] + value)
                self.credits.save_installment(installment)
                touched.append(installment.number)

            if not touched:
                return {"credit_id": credit_id, "installments": 0}

            self.credits.refresh_status(credit, installments, as_of=as_of)
            self.credits.save_credit(credit)
            self.audit_trail.log_event(
                event_type=AuditEventType.ARREARS_ACCRUED,
                entity_type="credit",
                entity_id=credit.id,
                metadata={
                    "as_of": as_of,
                    "installments": touched,
                    **totals
                }
            )

        logger.info(f"Accrued arrears on {credit.reference} installments {touched} as of {as_of}")
        return {"credit_id": credit_id, "installments": len(touched), **{k: str(v) for k, v in totals.items()}}

    def run_sweep(self, as_of: Optional[date] = None) -> Dict[str, Any]:
        """
        Accrue arrears on every payable credit.

        A failure on one credit rolls back that credit only and is reported
        in the summary.
        """
        as_of = as_of or date.today()
        summary = {
            "as_of": as_of.isoformat(),
            "credits_processed": 0,
            "credits_updated": 0,
            "installments_updated": 0,
            "errors": []
        }
        payable = [c for c in self.credits.list_credits() if c.is_payable]
        for credit in payable:
            summary["credits_processed"] += 1
            try:
                result = self.accrue_credit(credit.id, as_of)
            except Exception as e:
                logger.exception(f"Arrears accrual failed for {credit.reference}")
                summary["errors"].append({"credit_id": credit.id, "error": str(e)})
                continue
            if result["installments"]:
                summary["credits_updated"] += 1
                summary["installments_updated"] += result["installments"]

        logger.info(f"Arrears sweep as of {as_of}: {summary['credits_updated']} credits updated")
        return summary
