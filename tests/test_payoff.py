"""
Test suite for early payoff

Quotes (principal, accrued interest, penalty) and committing a payoff that
cancels the credit.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.money import ZERO, money_sum, round_money
from loan_servicing.storage import InMemoryStorage
from loan_servicing.audit import AuditTrail, AuditEventType
from loan_servicing.credits import CreditManager, CreditStatus, InstallmentState, PaymentSource
from loan_servicing.ledger_dispatch import LedgerDispatcher, LedgerEntryType
from loan_servicing.schedule import ScheduleGenerator
from loan_servicing.pending import PendingBalanceQueue
from loan_servicing.payments import PaymentAllocator
from loan_servicing.arrears import ArrearsAccrual
from loan_servicing.payoff import EarlyPayoffCalculator
from loan_servicing.exceptions import ServicingValidationError


class TestEarlyPayoff:
    """Test payoff quotes and commits"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.ledger = LedgerDispatcher(self.storage, None, self.audit)
        self.credits = CreditManager(self.storage, self.audit)
        self.generator = ScheduleGenerator(self.credits, self.ledger, self.audit)
        self.pending = PendingBalanceQueue(self.storage, self.audit)
        self.allocator = PaymentAllocator(self.credits, self.pending, self.ledger, self.audit)
        self.payoff = EarlyPayoffCalculator(
            self.credits, self.allocator, self.audit, penalty_threshold=12, penalty_installments=3
        )

        self.credit = self.credits.register_credit(
            "909990999", Decimal("12000"), Decimal("24"), 12, date(2024, 1, 15)
        )
        self.installments = self.generator.generate_schedule(self.credit.id, formalized_on=date(2024, 1, 15))

    def test_quote_with_penalty(self):
        quote = self.payoff.quote(self.credit.id, date(2024, 2, 15))

        # Period 1 runs 2024-01-31 to 2024-02-29 (29 days); 15 have elapsed
        expected_accrued = round_money(Decimal("240.00") * 15 / 29)
        expected_penalty = money_sum(i.current_interest for i in self.installments[:3])

        assert quote.current_installment == 0
        assert quote.principal == Decimal("12000.00")
        assert quote.accrued_interest == expected_accrued
        assert quote.penalty_applies
        assert quote.penalty == expected_penalty
        assert quote.penalty_installments == [1, 2, 3]
        assert quote.total == money_sum([Decimal("12000.00"), expected_accrued, expected_penalty])

    def test_quote_after_threshold_has_no_penalty(self):
        long_credit = self.credits.register_credit("111", Decimal("24000"), Decimal("24"), 24, date(2024, 1, 15))
        rows = self.generator.generate_schedule(long_credit.id)
        for installment in rows[:12]:
            self.allocator.apply_payment(long_credit.id, installment.remaining, payment_date=installment.due_date)

        quote = self.payoff.quote(long_credit.id, date(2025, 2, 10))

        assert quote.current_installment == 12
        assert not quote.penalty_applies
        assert quote.penalty == ZERO
        assert quote.principal == self.credits.get_credit(long_credit.id).balance

    def test_quote_includes_overdue_amounts(self):
        ArrearsAccrual(self.credits, self.audit, Decimal("33.5")).accrue_credit(self.credit.id, date(2024, 3, 1))
        first = self.credits.get_installments(self.credit.id)[0]

        quote = self.payoff.quote(self.credit.id, date(2024, 3, 10))

        assert quote.overdue_interest == Decimal("240.00")
        assert quote.moratory_interest == first.moratory_interest
        assert quote.total == money_sum([
            quote.principal, quote.overdue_interest, quote.moratory_interest,
            quote.accrued_interest, quote.penalty, quote.policy
        ])

    def test_commit_payoff_cancels_credit(self):
        quote = self.payoff.quote(self.credit.id, date(2024, 2, 15))

        payment = self.payoff.commit_payoff(self.credit.id, payment_date=date(2024, 2, 15), reference="PO-1")

        credit = self.credits.get_credit(self.credit.id)
        assert credit.status == CreditStatus.CANCELLED
        assert credit.balance == ZERO
        assert credit.closed_date == date(2024, 2, 15)
        assert all(i.state == InstallmentState.PAID for i in self.credits.get_installments(self.credit.id))

        assert payment.source == PaymentSource.PAYOFF
        assert payment.amount == quote.total
        assert payment.allocation.principal == Decimal("12000.00")
        assert payment.allocation.current_interest == quote.accrued_interest
        assert payment.allocation.penalty == quote.penalty
        assert payment.pending_balance_id is None

        records = self.ledger.list_records(entry_type=LedgerEntryType.EARLY_PAYOFF)
        assert [r.reference for r in records] == [f"PAYOFF-{payment.id}"]
        assert self.audit.get_events_by_type(AuditEventType.CREDIT_PAID_OFF)

    def test_commit_below_quote_rejected(self):
        quote = self.payoff.quote(self.credit.id, date(2024, 2, 15))
        with pytest.raises(ServicingValidationError):
            self.payoff.commit_payoff(
                self.credit.id, amount=round_money(quote.total - Decimal("1")), payment_date=date(2024, 2, 15)
            )
        assert self.credits.get_credit(self.credit.id).status == CreditStatus.FORMALIZED
        assert self.credits.get_payments(self.credit.id) == []

    def test_commit_above_quote_leaves_pending_balance(self):
        quote = self.payoff.quote(self.credit.id, date(2024, 2, 15))
        payment = self.payoff.commit_payoff(
            self.credit.id, amount=round_money(quote.total + Decimal("40")), payment_date=date(2024, 2, 15)
        )
        assert payment.allocation.overflow == Decimal("40.00")
        assert self.pending.require(payment.pending_balance_id).amount == Decimal("40.00")

    def test_cancelled_credit_cannot_be_quoted(self):
        self.payoff.commit_payoff(self.credit.id, payment_date=date(2024, 2, 15))
        with pytest.raises(ServicingValidationError):
            self.payoff.quote(self.credit.id, date(2024, 2, 16))
