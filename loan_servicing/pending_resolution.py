"""
Pending balance resolution: apply queued money to a credit's installments or
directly to its principal.
"""

from decimal import Decimal
from datetime import date
from typing import List, Optional
import logging

from .money import ZERO, round_money, money_sum
from .credits import CreditManager, Credit, Payment, PaymentSource
from .pending import PendingBalanceQueue, PendingBalance, PendingBalanceState
from .payments import PaymentAllocator, unresolved
from .extraordinary import ExtraordinaryPaymentProcessor, ExtraordinaryStrategy
from .exceptions import ServicingValidationError

logger = logging.getLogger("loansvc.pending")


class PendingBalanceResolver:
    """Explicit resolutions of pending balances"""

    def __init__(
        self,
        pending_queue: PendingBalanceQueue,
        credit_manager: CreditManager,
        allocator: PaymentAllocator,
        extraordinary: ExtraordinaryPaymentProcessor
    ):
        self.pending = pending_queue
        self.credits = credit_manager
        self.allocator = allocator
        self.extraordinary = extraordinary

    def _target_credit(self, balance: PendingBalance, credit_id: Optional[str]) -> Credit:
        target_id = credit_id or balance.credit_id
        if not target_id:
            raise ServicingValidationError(
                f"Pending balance {balance.id} is not tied to a credit; a credit must be given"
            )
        credit = self.credits.require_payable(target_id)
        if balance.borrower_identity and credit.borrower_identity != balance.borrower_identity:
            raise ServicingValidationError(
                f"Credit {credit.reference} does not belong to the borrower of pending balance {balance.id}"
            )
        return credit

    def _requested(self, balance: PendingBalance, amount: Optional[Decimal]) -> Decimal:
        if balance.state != PendingBalanceState.PENDING or balance.remaining <= ZERO:
            raise ServicingValidationError(f"Pending balance {balance.id} was already applied")
        if amount is None:
            return balance.remaining
        requested = round_money(amount)
        if requested <= ZERO:
            raise ServicingValidationError("Amount to apply must be positive")
        if requested > balance.remaining:
            raise ServicingValidationError(
                f"Requested {requested} but only {balance.remaining} remains on pending balance {balance.id}"
            )
        return requested

    def apply_to_installment(
        self,
        pending_id: str,
        amount: Optional[Decimal] = None,
        credit_id: Optional[str] = None,
        target_installments: Optional[List[int]] = None,
        payment_date: Optional[date] = None,
        actor_id: Optional[str] = None
    ) -> Payment:
        """
        Apply a pending balance through the payment allocator.

        The applied amount is capped at what the credit (or the targeted
        installments) still owe, so this never creates a new overflow.
        """
        payment_date = payment_date or date.today()
        credit = self._target_credit(self.pending.require(pending_id), credit_id)

        with self.credits.credit_transaction(credit.id, f"pending:{pending_id}"):
            balance = self.pending.require(pending_id)
            credit = self.credits.require_payable(credit.id)
            requested = self._requested(balance, amount)

            open_rows = unresolved(self.credits.get_installments(credit.id))
            if target_installments:
                open_rows = [i for i in open_rows if i.number in set(target_installments)]
            owed = money_sum(i.remaining for i in open_rows)
            if owed <= ZERO:
                raise ServicingValidationError(f"Credit {credit.reference} has nothing left to pay")
            applied = min(requested, owed)

            payment, dispatch_ids = self.allocator.allocate(
                credit, applied, payment_date, PaymentSource.PENDING_BALANCE,
                target_installments=target_installments,
                actor_id=actor_id,
                reference=f"PB-{balance.id}"
            )
            self.pending.consume(balance, applied, payment.id, payment_date, "installment", actor_id=actor_id)

        self.allocator.ledger.dispatch_after_commit(dispatch_ids)
        logger.info(f"Applied {applied} of pending balance {pending_id} to {credit.reference} installments")
        return payment

    def apply_to_principal(
        self,
        pending_id: str,
        amount: Optional[Decimal] = None,
        credit_id: Optional[str] = None,
        strategy: ExtraordinaryStrategy = ExtraordinaryStrategy.REDUCE_AMOUNT,
        payment_date: Optional[date] = None,
        actor_id: Optional[str] = None
    ) -> Payment:
        """
        Reduce principal directly with a pending balance. The remaining plan
        is rebuilt with the given strategy; no early repayment penalty applies.
        """
        payment_date = payment_date or date.today()
        credit = self._target_credit(self.pending.require(pending_id), credit_id)

        with self.credits.credit_transaction(credit.id, f"pending:{pending_id}"):
            balance = self.pending.require(pending_id)
            credit = self.credits.require_payable(credit.id)
            requested = self._requested(balance, amount)

            payment, dispatch_ids, _ = self.extraordinary.restructure(
                credit, requested, strategy, payment_date,
                actor_id=actor_id,
                apply_penalty=False,
                source=PaymentSource.PENDING_BALANCE,
                reference=f"PB-{balance.id}"
            )
            self.pending.consume(balance, requested, payment.id, payment_date, "principal", actor_id=actor_id)

        self.extraordinary.ledger.dispatch_after_commit(dispatch_ids)
        logger.info(f"Applied {requested} of pending balance {pending_id} to {credit.reference} principal")
        return payment
