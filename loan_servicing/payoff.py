"""
Early Payoff Calculator Module

Quotes what it takes to cancel a credit before term and commits the payoff
through the payment allocator.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import logging

from .money import ZERO, round_money, money_sum
from .credits import CreditManager, Credit, Installment, InstallmentState, Payment, PaymentSource
from .payments import PaymentAllocator, unresolved
from .extraordinary import current_installment_index, penalty_rows
from .schedule import month_end
from .audit import AuditTrail
from .exceptions import ServicingValidationError

logger = logging.getLogger("loansvc.payoff")


@dataclass
class PayoffQuote:
    """Amount needed to cancel a credit on a given date"""
    credit_id: str
    as_of: date
    current_installment: int
    principal: Decimal
    overdue_interest: Decimal
    moratory_interest: Decimal
    accrued_interest: Decimal
    policy: Decimal
    penalty: Decimal
    booked_penalty: Decimal
    total: Decimal
    penalty_installments: List[int] = field(default_factory=list)

    @property
    def penalty_applies(self) -> bool:
        return self.penalty > ZERO

    def to_dict(self) -> Dict[str, Any]:
        return {
            "credit_id": self.credit_id,
            "as_of": self.as_of.isoformat(),
            "current_installment": self.current_installment,
            "principal": str(self.principal),
            "overdue_interest": str(self.overdue_interest),
            "moratory_interest": str(self.moratory_interest),
            "accrued_interest": str(self.accrued_interest),
            "policy": str(self.policy),
            "penalty_applies": self.penalty_applies,
            "penalty": str(self.penalty),
            "penalty_installments": self.penalty_installments,
            "booked_penalty": str(self.booked_penalty),
            "total": str(self.total)
        }


def accrued_interest(credit: Credit, installment: Installment, as_of: date) -> Decimal:
    """
    Interest of the running period prorated by elapsed days, less what was
    already paid on it.
    """
    period_start = month_end(credit.start_date, installment.number - 1)
    period_days = (installment.due_date - period_start).days
    if period_days <= 0:
        return ZERO
    elapsed = min(max((as_of - period_start).days, 0), period_days)
    accrued = round_money(installment.current_interest * elapsed / period_days)
    return max(round_money(accrued - installment.paid_current_interest), ZERO)


class EarlyPayoffCalculator:
    """
    Computes payoff quotes and commits payoffs.
    """

    def __init__(
        self,
        credit_manager: CreditManager,
        allocator: PaymentAllocator,
        audit_trail: AuditTrail,
        penalty_threshold: int = 12,
        penalty_installments: int = 3
    ):
        self.credits = credit_manager
        self.allocator = allocator
        self.audit_trail = audit_trail
        self.penalty_threshold = penalty_threshold
        self.penalty_installments = penalty_installments

    def _quote(self, credit: Credit, installments: List[Installment],
               as_of: date) -> Tuple[PayoffQuote, Optional[Installment]]:
        open_rows = unresolved(installments)
        if not open_rows:
            raise ServicingValidationError(f"Credit {credit.reference} has nothing left to pay")

        due_rows = [i for i in open_rows if i.due_date <= as_of]
        future_rows = [i for i in open_rows if i.due_date > as_of]
        running = future_rows[0] if future_rows else None

        index = current_installment_index(installments)
        penalty = ZERO
        penalized: List[int] = []
        if index < self.penalty_threshold:
            rows = penalty_rows(installments, self.penalty_installments)
            penalty = money_sum(i.current_interest for i in rows)
            penalized = [i.number for i in rows]

        principal = money_sum(i.unpaid_principal for i in open_rows)
        overdue = money_sum(
            i.outstanding("overdue_interest") + i.outstanding("current_interest") for i in due_rows
        )
        moratory = money_sum(i.outstanding("moratory_interest") for i in open_rows)
        policy = money_sum(i.outstanding("policy") for i in due_rows)
        booked_penalty = money_sum(i.outstanding("penalty") for i in open_rows)
        accrued = accrued_interest(credit, running, as_of) if running else ZERO

        total = money_sum([principal, overdue, moratory, policy, accrued, penalty, booked_penalty])
        quote = PayoffQuote(
            credit_id=credit.id,
            as_of=as_of,
            current_installment=index,
            principal=principal,
            overdue_interest=overdue,
            moratory_interest=moratory,
            accrued_interest=accrued,
            policy=policy,
            penalty=penalty,
            booked_penalty=booked_penalty,
            total=total,
            penalty_installments=penalized
        )
        return quote, running

    def quote(self, credit_id: str, as_of: Optional[date] = None) -> PayoffQuote:
        """
        Payoff amount for a credit.

        Args:
            credit_id: Credit to quote
            as_of: Payoff date (defaults to today)

        Returns:
            PayoffQuote with principal, interest, penalty and total
        """
        credit = self.credits.require_payable(credit_id)
        installments = self.credits.get_installments(credit_id)
        quote, _ = self._quote(credit, installments, as_of or date.today())
        return quote

    def commit_payoff(
        self,
        credit_id: str,
        amount: Optional[Decimal] = None,
        payment_date: Optional[date] = None,
        actor_id: Optional[str] = None,
        reference: Optional[str] = None
    ) -> Payment:
        """
        Cancel a credit early.

        Future installments are restated to the accrued interest, their
        policy fees are dropped, and the penalty is booked on the running
        installment; the allocator then clears every installment.

        Raises:
            ServicingValidationError: If ``amount`` is below the quoted total
        """
        payment_date = payment_date or date.today()
        with self.credits.credit_transaction(credit_id):
            credit = self.credits.require_payable(credit_id)
            installments = self.credits.get_installments(credit_id)
            quote, running = self._quote(credit, installments, payment_date)

            amount = quote.total if amount is None else round_money(amount)
            if amount < quote.total:
                raise ServicingValidationError(
                    f"Payoff of {credit.reference} requires {quote.total}, received {amount}"
                )

            open_rows = unresolved(installments)
            future_rows = [i for i in open_rows if i.due_date > payment_date]
            for installment in future_rows:
                if installment is running:
                    installment.current_interest = round_money(
                        installment.paid_current_interest + quote.accrued_interest
                    )
                else:
                    installment.current_interest = installment.paid_current_interest
                installment.policy = installment.paid_policy

            penalty_holder = running or open_rows[-1]
            penalty_holder.penalty = round_money(penalty_holder.penalty + quote.penalty)

            for installment in open_rows:
                if installment.remaining == ZERO:
                    installment.transition_to(InstallmentState.PAID)
                    installment.paid_date = payment_date
                self.credits.save_installment(installment)

            payment, dispatch_ids = self.allocator.allocate(
                credit, amount, payment_date, PaymentSource.PAYOFF,
                actor_id=actor_id,
                reference=reference
            )

        self.allocator.ledger.dispatch_after_commit(dispatch_ids)
        logger.info(f"Credit {credit.reference} paid off with {amount} "
                    f"(penalty {quote.penalty}, accrued {quote.accrued_interest})")
        return payment
