"""
Payment Allocator Module

Distributes a payment over a credit's unresolved installments. Within each
installment the components are paid in a fixed priority:

    moratory interest -> overdue current interest -> current interest
    -> principal -> policy -> penalty

A fully covered installment becomes Pagado and the remainder cascades to the
next one by number. Whatever is left once every unresolved (or targeted)
installment is covered becomes a pending balance.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from typing import Any, Dict, List, Optional, Tuple
import logging
import uuid

from .money import ZERO, round_money, money_sum
from .credits import (
    CreditManager, Credit, CreditStatus, Installment, InstallmentState,
    AllocationBreakdown, Payment, PaymentSource, COMPONENTS
)
from .pending import PendingBalanceQueue, PendingBalanceOrigin
from .ledger_dispatch import LedgerDispatcher, LedgerEntryType
from .audit import AuditTrail, AuditEventType
from .exceptions import ScheduleIntegrityError, ServicingValidationError

logger = logging.getLogger("loansvc.payments")


SOURCE_ENTRY_TYPES = {
    PaymentSource.MANUAL: LedgerEntryType.TELLER_PAYMENT,
    PaymentSource.BATCH: LedgerEntryType.BATCH_PAYMENT,
    PaymentSource.TRANSFER: LedgerEntryType.GENERIC_PAYMENT,
    PaymentSource.PAYOFF: LedgerEntryType.EARLY_PAYOFF,
    PaymentSource.PENDING_BALANCE: LedgerEntryType.PENDING_BALANCE_APPLICATION,
}


def unresolved(installments: List[Installment]) -> List[Installment]:
    """Active installments not yet Pagado, by number"""
    return sorted(
        (i for i in installments if i.number > 0 and i.state != InstallmentState.PAID),
        key=lambda i: i.number
    )


def settle_installment(installment: Installment, amount: Decimal,
                       breakdown: AllocationBreakdown) -> Decimal:
    """
    Pay one installment's components in priority order.

    Returns:
        The part of ``amount`` that was not needed
    """
    remaining = round_money(amount)
    for component, paid_field in COMPONENTS:
        if remaining <= ZERO:
            break
        owed = installment.outstanding(component)
        if owed <= ZERO:
            continue
        take = min(owed, remaining)
        setattr(installment, paid_field, round_money(getattr(installment, paid_field) + take))
        breakdown.add(component, take)
        remaining = round_money(remaining - take)
    return remaining


class PaymentAllocator:
    """
    Applies payments to installments and records them.
    """

    def __init__(
        self,
        credit_manager: CreditManager,
        pending_queue: PendingBalanceQueue,
        ledger_dispatcher: LedgerDispatcher,
        audit_trail: AuditTrail
    ):
        self.credits = credit_manager
        self.pending = pending_queue
        self.ledger = ledger_dispatcher
        self.audit_trail = audit_trail

    def unresolved_total(self, credit_id: str) -> Decimal:
        """What a credit still owes on its unresolved installments"""
        return money_sum(i.remaining for i in unresolved(self.credits.get_installments(credit_id)))

    def apply_payment(
        self,
        credit_id: str,
        amount: Decimal,
        payment_date: Optional[date] = None,
        source: PaymentSource = PaymentSource.MANUAL,
        target_installments: Optional[List[int]] = None,
        actor_id: Optional[str] = None,
        reference: Optional[str] = None
    ) -> Payment:
        """
        Apply a payment to a credit as one unit of work.

        Args:
            credit_id: Credit receiving the payment
            amount: Amount received
            payment_date: Value date (defaults to today)
            source: Where the money came from
            target_installments: Restrict allocation to these installment numbers
            actor_id: Operator recording the payment
            reference: External receipt reference

        Returns:
            The stored Payment

        Raises:
            ServicingValidationError: If the amount, credit or targets are invalid
        """
        if source not in SOURCE_ENTRY_TYPES:
            raise ServicingValidationError(f"Source {source.value} cannot be applied as a regular payment")

        with self.credits.credit_transaction(credit_id):
            credit = self.credits.require_payable(credit_id)
            payment, dispatch_ids = self.allocate(
                credit, amount, payment_date or date.today(), source,
                target_installments=target_installments,
                actor_id=actor_id,
                reference=reference
            )

        self.ledger.dispatch_after_commit(dispatch_ids)
        return payment

    def allocate(
        self,
        credit: Credit,
        amount: Decimal,
        payment_date: date,
        source: PaymentSource,
        target_installments: Optional[List[int]] = None,
        batch_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        reference: Optional[str] = None
    ) -> Tuple[Payment, List[str]]:
        """
        Allocate inside the caller's credit transaction.

        Returns:
            (payment, ids of ledger dispatch records to send after commit)
        """
        amount = round_money(amount)
        if amount <= ZERO:
            raise ServicingValidationError("Payment amount must be positive")

        installments = self.credits.get_installments(credit.id)
        candidates = unresolved(installments)
        if target_installments:
            by_number = {i.number: i for i in installments}
            for number in target_installments:
                row = by_number.get(number)
                if row is None:
                    raise ServicingValidationError(
                        f"Credit {credit.reference} has no installment {number}"
                    )
                if row.state == InstallmentState.PAID:
                    raise ServicingValidationError(
                        f"Installment {number} of {credit.reference} is already paid"
                    )
            wanted = set(target_installments)
            candidates = [i for i in candidates if i.number in wanted]

        breakdown = AllocationBreakdown()
        details: List[Dict[str, Any]] = []
        remaining = amount
        for installment in candidates:
            if remaining <= ZERO:
                break
            before = breakdown.total()
            remaining = settle_installment(installment, remaining, breakdown)
            applied = round_money(breakdown.total() - before)

            if installment.remaining == ZERO:
                installment.transition_to(InstallmentState.PAID)
                installment.paid_date = payment_date
            elif installment.state == InstallmentState.PENDING:
                installment.transition_to(InstallmentState.PARTIAL)
            self.credits.save_installment(installment)

            details.append({
                "installment_number": installment.number,
                "amount": str(applied),
                "state": installment.state.value
            })

        credit.balance = round_money(credit.balance - breakdown.principal)
        if credit.balance < ZERO:
            raise ScheduleIntegrityError(f"Credit {credit.reference} balance went negative")

        now = datetime.now(timezone.utc)
        payment = Payment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            credit_id=credit.id,
            amount=amount,
            payment_date=payment_date,
            source=source,
            breakdown={},
            installment_details=details,
            batch_id=batch_id,
            reference=reference,
            actor_id=actor_id
        )

        if remaining > ZERO:
            breakdown.overflow = remaining
            origin = PendingBalanceOrigin.BATCH_OVERFLOW if batch_id else PendingBalanceOrigin.PAYMENT_OVERFLOW
            balance = self.pending.create_balance(
                borrower_identity=credit.borrower_identity,
                amount=remaining,
                origin=origin,
                origin_date=payment_date,
                credit_id=credit.id,
                origin_reference=payment.id,
                batch_id=batch_id,
                actor_id=actor_id
            )
            payment.pending_balance_id = balance.id

        if breakdown.total() != amount:
            raise ScheduleIntegrityError(
                f"Allocation {breakdown.total()} does not match payment {amount}"
            )
        payment.breakdown = breakdown.to_dict()
        self.credits.save_payment(payment)

        self.credits.refresh_status(credit, installments, as_of=payment_date, actor_id=actor_id)
        self.credits.save_credit(credit)

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_APPLIED,
            entity_type="payment",
            entity_id=payment.id,
            metadata={
                "credit_id": credit.id,
                "amount": amount,
                "source": source.value,
                "breakdown": payment.breakdown,
                "batch_id": batch_id
            },
            actor_id=actor_id
        )
        if credit.status == CreditStatus.CANCELLED:
            self.audit_trail.log_event(
                event_type=AuditEventType.CREDIT_PAID_OFF,
                entity_type="credit",
                entity_id=credit.id,
                metadata={"payment_id": payment.id, "closed_date": credit.closed_date},
                actor_id=actor_id
            )

        prefix = "PAYOFF" if source == PaymentSource.PAYOFF else "PAY"
        record = self.ledger.enqueue(
            entry_type=SOURCE_ENTRY_TYPES[source],
            reference=f"{prefix}-{payment.id}",
            amount=amount,
            breakdown=payment.breakdown,
            credit_id=credit.id,
            context={
                "credit_reference": credit.reference,
                "borrower_identity": credit.borrower_identity,
                "event_date": payment_date.isoformat(),
                "batch_id": batch_id
            }
        )

        logger.info(f"Applied {amount} to {credit.reference} ({source.value}), "
                    f"overflow {breakdown.overflow}")
        return payment, [record.id] if record else []
