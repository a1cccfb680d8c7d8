"""
Extraordinary Payment Processor Module

Principal-only contributions that restructure the rest of a credit's plan.
Only the trailing block of installments that are still Pendiente, untouched
and not yet due is rewritten; paid or already-due installments never change.

Strategies:
    reduce_amount: keep the remaining term, lower the installment
    reduce_term: keep the installment, drop trailing periods
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import logging
import uuid

from .money import ZERO, round_money, money_sum
from .credits import (
    CreditManager, Credit, Installment, InstallmentState, AllocationBreakdown,
    Payment, PaymentSource
)
from .schedule import (
    ScheduleRow, build_rows, build_rows_for_payment, validate_rows, rows_to_installments,
    check_credit_schedule, fixed_installment, month_end
)
from .ledger_dispatch import LedgerDispatcher, LedgerEntryType
from .audit import AuditTrail, AuditEventType
from .exceptions import ServicingValidationError

logger = logging.getLogger("loansvc.extraordinary")


class ExtraordinaryStrategy(Enum):
    REDUCE_AMOUNT = "reduce_amount"
    REDUCE_TERM = "reduce_term"


def current_installment_index(installments: List[Installment]) -> int:
    """Number of the highest Pagado installment, 0 when none is paid"""
    paid = [i.number for i in installments if i.number > 0 and i.state == InstallmentState.PAID]
    return max(paid) if paid else 0


def penalty_rows(installments: List[Installment], count: int) -> List[Installment]:
    """The next ``count`` unresolved installments after the current index"""
    index = current_installment_index(installments)
    upcoming = [
        i for i in sorted(installments, key=lambda row: row.number)
        if i.number > index and i.state != InstallmentState.PAID
    ]
    return upcoming[:count]


def rewritable_block(installments: List[Installment], as_of: date) -> List[Installment]:
    """Trailing installments that are Pendiente, untouched and due after ``as_of``"""
    block = []
    for installment in sorted(installments, key=lambda row: row.number, reverse=True):
        if (installment.state != InstallmentState.PENDING
                or installment.paid_total > ZERO
                or installment.due_date <= as_of):
            break
        block.append(installment)
    block.reverse()
    return block


@dataclass
class RestructurePlan:
    """Computed outcome of an extraordinary payment, before anything is stored"""
    strategy: ExtraordinaryStrategy
    amount: Decimal
    penalty: Decimal
    penalty_installments: List[int]
    net_principal: Decimal
    current_index: int
    base_principal: Decimal
    first_number: int
    replaced: List[Installment]
    rows: List[ScheduleRow] = field(default_factory=list)
    new_installment_amount: Decimal = ZERO
    new_term: int = 0

    def summary(self, credit: Credit) -> Dict[str, Any]:
        return {
            "credit_id": credit.id,
            "strategy": self.strategy.value,
            "amount": str(self.amount),
            "current_installment": self.current_index,
            "penalty_applies": self.penalty > ZERO,
            "penalty": str(self.penalty),
            "penalty_installments": self.penalty_installments,
            "net_principal": str(self.net_principal),
            "current_balance": str(credit.balance),
            "new_balance": str(round_money(credit.balance - self.net_principal)),
            "current_installment_amount": str(credit.installment_amount),
            "new_installment_amount": str(self.new_installment_amount),
            "current_term": credit.term_months,
            "new_term": self.new_term,
            "projected_rows": [
                {
                    "number": row.number,
                    "due_date": row.due_date.isoformat(),
                    "installment_amount": str(row.installment_amount),
                    "interest": str(row.interest),
                    "principal": str(row.principal),
                    "closing_balance": str(row.closing_balance)
                }
                for row in self.rows[:3]
            ]
        }


class ExtraordinaryPaymentProcessor:
    """
    Applies principal-only payments and rewrites the remaining plan.
    """

    def __init__(
        self,
        credit_manager: CreditManager,
        ledger_dispatcher: LedgerDispatcher,
        audit_trail: AuditTrail,
        penalty_threshold: int = 12,
        penalty_installments: int = 3,
        penalty_enabled: bool = True
    ):
        self.credits = credit_manager
        self.ledger = ledger_dispatcher
        self.audit_trail = audit_trail
        self.penalty_threshold = penalty_threshold
        self.penalty_installments = penalty_installments
        self.penalty_enabled = penalty_enabled

    def plan(self, credit: Credit, installments: List[Installment], amount: Decimal,
             strategy: ExtraordinaryStrategy, as_of: date,
             apply_penalty: bool = True) -> RestructurePlan:
        """
        Work out penalty, net principal and replacement rows.

        Raises:
            ServicingValidationError: If nothing can be restructured or the
                amount does not fit between the penalty and the remaining principal
        """
        amount = round_money(amount)
        if amount <= ZERO:
            raise ServicingValidationError("Extraordinary payment amount must be positive")

        block = rewritable_block(installments, as_of)
        if not block:
            raise ServicingValidationError(
                f"Credit {credit.reference} has no future installments to restructure"
            )
        base = money_sum(i.principal for i in block)
        first_number = block[0].number
        periods = len(block)

        index = current_installment_index(installments)
        penalty = ZERO
        penalized: List[int] = []
        if apply_penalty and self.penalty_enabled and index < self.penalty_threshold:
            rows = penalty_rows(installments, self.penalty_installments)
            penalty = money_sum(i.current_interest for i in rows)
            penalized = [i.number for i in rows]

        net = round_money(amount - penalty)
        if net <= ZERO:
            raise ServicingValidationError(
                f"Amount {amount} does not exceed the early repayment penalty {penalty}"
            )
        if net > base:
            raise ServicingValidationError(
                f"Net principal {net} exceeds the restructurable principal {base}"
            )

        new_base = round_money(base - net)
        due_date_for = lambda number: month_end(credit.start_date, number)
        if new_base == ZERO:
            rows = []
            new_installment = ZERO
        elif strategy == ExtraordinaryStrategy.REDUCE_AMOUNT:
            new_installment = fixed_installment(new_base, credit.annual_rate, periods)
            rows = build_rows(new_base, credit.annual_rate, periods, due_date_for,
                              first_number=first_number, payment=new_installment)
        else:
            new_installment = credit.installment_amount
            rows = build_rows_for_payment(new_base, credit.annual_rate, new_installment, due_date_for,
                                          first_number=first_number, max_periods=periods)
        validate_rows(rows, new_base)

        return RestructurePlan(
            strategy=strategy,
            amount=amount,
            penalty=penalty,
            penalty_installments=penalized,
            net_principal=net,
            current_index=index,
            base_principal=base,
            first_number=first_number,
            replaced=block,
            rows=rows,
            new_installment_amount=new_installment,
            new_term=first_number - 1 + len(rows)
        )

    def preview(self, credit_id: str, amount: Decimal,
                strategy: ExtraordinaryStrategy = ExtraordinaryStrategy.REDUCE_AMOUNT,
                as_of: Optional[date] = None) -> Dict[str, Any]:
        """Compute the restructuring without storing anything"""
        credit = self.credits.require_payable(credit_id)
        installments = self.credits.get_installments(credit_id)
        plan = self.plan(credit, installments, amount, strategy, as_of or date.today())
        return plan.summary(credit)

    def apply_extraordinary(
        self,
        credit_id: str,
        amount: Decimal,
        strategy: ExtraordinaryStrategy = ExtraordinaryStrategy.REDUCE_AMOUNT,
        payment_date: Optional[date] = None,
        actor_id: Optional[str] = None,
        reference: Optional[str] = None
    ) -> Payment:
        """
        Apply an extraordinary payment as one unit of work.

        Returns:
            The stored Payment (breakdown: principal and penalty)
        """
        with self.credits.credit_transaction(credit_id):
            credit = self.credits.require_payable(credit_id)
            payment, dispatch_ids, _ = self.restructure(
                credit, amount, strategy, payment_date or date.today(),
                actor_id=actor_id, reference=reference
            )

        self.ledger.dispatch_after_commit(dispatch_ids)
        return payment

    def restructure(
        self,
        credit: Credit,
        amount: Decimal,
        strategy: ExtraordinaryStrategy,
        payment_date: date,
        actor_id: Optional[str] = None,
        apply_penalty: bool = True,
        source: PaymentSource = PaymentSource.EXTRAORDINARY,
        reference: Optional[str] = None
    ) -> Tuple[Payment, List[str], RestructurePlan]:
        """Restructure inside the caller's credit transaction"""
        installments = self.credits.get_installments(credit.id)
        plan = self.plan(credit, installments, amount, strategy, payment_date,
                         apply_penalty=apply_penalty)

        for installment in plan.replaced:
            self.credits.delete_installment(installment.id)
        new_installments = rows_to_installments(credit, plan.rows)
        for installment in new_installments:
            self.credits.save_installment(installment)

        credit.balance = round_money(credit.balance - plan.net_principal)
        credit.extraordinary_principal = round_money(credit.extraordinary_principal + plan.net_principal)
        credit.term_months = plan.new_term
        if plan.rows:
            credit.installment_amount = plan.new_installment_amount

        kept = [i for i in installments if i.number < plan.first_number]
        remaining_plan = kept + new_installments
        check_credit_schedule(credit, remaining_plan)

        breakdown = AllocationBreakdown(principal=plan.net_principal, penalty=plan.penalty)
        now = datetime.now(timezone.utc)
        payment = Payment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            credit_id=credit.id,
            amount=plan.amount,
            payment_date=payment_date,
            source=source,
            breakdown=breakdown.to_dict(),
            installment_details=[
                {"installment_number": i.number, "replaced": True} for i in plan.replaced
            ],
            reference=reference,
            actor_id=actor_id
        )
        self.credits.save_payment(payment)

        self.credits.refresh_status(credit, remaining_plan, as_of=payment_date, actor_id=actor_id)
        self.credits.save_credit(credit)

        self.audit_trail.log_event(
            event_type=AuditEventType.EXTRAORDINARY_PAYMENT_APPLIED,
            entity_type="payment",
            entity_id=payment.id,
            metadata={
                "credit_id": credit.id,
                "amount": plan.amount,
                "penalty": plan.penalty,
                "net_principal": plan.net_principal,
                "strategy": strategy.value,
                "source": source.value
            },
            actor_id=actor_id
        )
        self.audit_trail.log_event(
            event_type=AuditEventType.SCHEDULE_RESTRUCTURED,
            entity_type="credit",
            entity_id=credit.id,
            metadata={
                "from_installment": plan.first_number,
                "replaced": len(plan.replaced),
                "new_rows": len(plan.rows),
                "installment_amount": credit.installment_amount,
                "term_months": credit.term_months
            },
            actor_id=actor_id
        )

        if source == PaymentSource.PENDING_BALANCE:
            entry_type, ledger_reference = LedgerEntryType.PENDING_BALANCE_APPLICATION, f"PAY-{payment.id}"
        else:
            entry_type, ledger_reference = LedgerEntryType.EXTRAORDINARY_PAYMENT, f"EXTRA-{payment.id}"
        record = self.ledger.enqueue(
            entry_type=entry_type,
            reference=ledger_reference,
            amount=plan.amount,
            breakdown=payment.breakdown,
            credit_id=credit.id,
            context={
                "credit_reference": credit.reference,
                "borrower_identity": credit.borrower_identity,
                "event_date": payment_date.isoformat(),
                "strategy": strategy.value
            }
        )

        logger.info(f"Extraordinary payment {plan.amount} on {credit.reference} ({strategy.value}): "
                    f"penalty {plan.penalty}, term {credit.term_months}, installment {credit.installment_amount}")
        return payment, [record.id] if record else [], plan
