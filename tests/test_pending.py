"""
Test suite for pending balances

Creation from overpayments and their explicit resolution against
installments or principal.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.money import ZERO, round_money
from loan_servicing.storage import InMemoryStorage
from loan_servicing.audit import AuditTrail, AuditEventType
from loan_servicing.credits import CreditManager, CreditStatus, InstallmentState, PaymentSource
from loan_servicing.ledger_dispatch import LedgerDispatcher, LedgerEntryType
from loan_servicing.schedule import ScheduleGenerator
from loan_servicing.pending import PendingBalanceQueue, PendingBalanceOrigin, PendingBalanceState
from loan_servicing.payments import PaymentAllocator
from loan_servicing.extraordinary import ExtraordinaryPaymentProcessor
from loan_servicing.pending_resolution import PendingBalanceResolver
from loan_servicing.exceptions import RecordNotFoundError, ServicingValidationError


class TestPendingBalanceQueue:
    """Test queue bookkeeping"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.queue = PendingBalanceQueue(self.storage, self.audit)

    def test_create_and_list(self):
        balance = self.queue.create_balance(
            "1-2345-6789", Decimal("150.555"), PendingBalanceOrigin.BATCH_UNMATCHED, date(2024, 3, 1)
        )

        assert balance.borrower_identity == "123456789"
        assert balance.amount == Decimal("150.56")
        assert balance.remaining == Decimal("150.56")
        assert balance.state == PendingBalanceState.PENDING
        assert self.queue.list(borrower_identity="123456789")[0].id == balance.id
        assert self.queue.list(state=PendingBalanceState.APPLIED) == []
        assert self.audit.get_events_by_type(AuditEventType.PENDING_BALANCE_CREATED)

    def test_non_positive_amount_rejected(self):
        with pytest.raises(ServicingValidationError):
            self.queue.create_balance("1", ZERO, PendingBalanceOrigin.PAYMENT_OVERFLOW, date(2024, 3, 1))

    def test_consume_partially_then_fully(self):
        balance = self.queue.create_balance("1", Decimal("100"), PendingBalanceOrigin.PAYMENT_OVERFLOW, date(2024, 3, 1))

        self.queue.consume(balance, Decimal("40"), "p-1", date(2024, 3, 2), "installment")
        stored = self.queue.require(balance.id)
        assert stored.remaining == Decimal("60.00")
        assert stored.state == PendingBalanceState.PENDING

        self.queue.consume(stored, Decimal("60"), "p-2", date(2024, 3, 3), "principal")
        stored = self.queue.require(balance.id)
        assert stored.state == PendingBalanceState.APPLIED
        assert [a["payment_id"] for a in stored.applications] == ["p-1", "p-2"]

    def test_consume_more_than_remaining(self):
        balance = self.queue.create_balance("1", Decimal("100"), PendingBalanceOrigin.PAYMENT_OVERFLOW, date(2024, 3, 1))
        with pytest.raises(ServicingValidationError):
            self.queue.consume(balance, Decimal("100.01"), "p-1", date(2024, 3, 2), "installment")

    def test_require_missing(self):
        with pytest.raises(RecordNotFoundError):
            self.queue.require("missing")


class TestPendingBalanceResolver:
    """Test applying pending balances to credits"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.ledger = LedgerDispatcher(self.storage, None, self.audit)
        self.credits = CreditManager(self.storage, self.audit)
        self.generator = ScheduleGenerator(self.credits, self.ledger, self.audit)
        self.queue = PendingBalanceQueue(self.storage, self.audit)
        self.allocator = PaymentAllocator(self.credits, self.queue, self.ledger, self.audit)
        self.extraordinary = ExtraordinaryPaymentProcessor(self.credits, self.ledger, self.audit)
        self.resolver = PendingBalanceResolver(self.queue, self.credits, self.allocator, self.extraordinary)

        self.credit = self.credits.register_credit(
            "1-1111-1111", Decimal("12000"), Decimal("24"), 12, date(2024, 1, 15)
        )
        self.generator.generate_schedule(self.credit.id, formalized_on=date(2024, 1, 15))

    def overpay_first_installment(self, extra):
        first = self.credits.get_installments(self.credit.id)[0]
        payment = self.allocator.apply_payment(
            self.credit.id, round_money(first.remaining + extra),
            payment_date=date(2024, 1, 20), target_installments=[1]
        )
        return self.queue.require(payment.pending_balance_id)

    def test_targeted_overpayment_creates_pending_balance(self):
        balance = self.overpay_first_installment(Decimal("300"))

        assert balance.amount == Decimal("300.00")
        assert balance.origin == PendingBalanceOrigin.PAYMENT_OVERFLOW
        assert balance.credit_id == self.credit.id
        assert balance.borrower_identity == "111111111"
        # Installment 2 is untouched until the balance is resolved
        assert self.credits.get_installments(self.credit.id)[1].state == InstallmentState.PENDING

    def test_apply_to_installment(self):
        balance = self.overpay_first_installment(Decimal("300"))

        payment = self.resolver.apply_to_installment(balance.id, payment_date=date(2024, 1, 21))

        assert payment.source == PaymentSource.PENDING_BALANCE
        assert payment.reference == f"PB-{balance.id}"
        assert payment.amount == Decimal("300.00")
        assert payment.installment_details[0]["installment_number"] == 2
        assert self.credits.get_installments(self.credit.id)[1].state == InstallmentState.PARTIAL
        stored = self.queue.require(balance.id)
        assert stored.state == PendingBalanceState.APPLIED
        assert stored.applications[0]["payment_id"] == payment.id

        records = self.ledger.list_records(entry_type=LedgerEntryType.PENDING_BALANCE_APPLICATION)
        assert [r.reference for r in records] == [f"PAY-{payment.id}"]

    def test_partial_application_keeps_remainder(self):
        balance = self.overpay_first_installment(Decimal("300"))

        self.resolver.apply_to_installment(balance.id, amount=Decimal("120"), payment_date=date(2024, 1, 21))

        stored = self.queue.require(balance.id)
        assert stored.remaining == Decimal("180.00")
        assert stored.state == PendingBalanceState.PENDING

    def test_amount_above_remaining_rejected(self):
        balance = self.overpay_first_installment(Decimal("300"))
        with pytest.raises(ServicingValidationError):
            self.resolver.apply_to_installment(balance.id, amount=Decimal("300.01"))

    def test_already_applied_rejected(self):
        balance = self.overpay_first_installment(Decimal("300"))
        self.resolver.apply_to_installment(balance.id, payment_date=date(2024, 1, 21))
        with pytest.raises(ServicingValidationError):
            self.resolver.apply_to_installment(balance.id, payment_date=date(2024, 1, 22))

    def test_application_capped_at_amount_owed(self):
        balance = self.queue.create_balance(
            "111111111", Decimal("20000"), PendingBalanceOrigin.BATCH_UNMATCHED, date(2024, 1, 20)
        )
        owed = self.allocator.unresolved_total(self.credit.id)

        payment = self.resolver.apply_to_installment(
            balance.id, credit_id=self.credit.id, payment_date=date(2024, 1, 20)
        )

        assert payment.amount == owed
        assert payment.pending_balance_id is None
        assert self.queue.require(balance.id).remaining == round_money(Decimal("20000") - owed)
        assert self.credits.get_credit(self.credit.id).status == CreditStatus.CANCELLED

    def test_unmatched_balance_needs_credit(self):
        balance = self.queue.create_balance(
            "111111111", Decimal("50"), PendingBalanceOrigin.BATCH_UNMATCHED, date(2024, 1, 20)
        )
        with pytest.raises(ServicingValidationError):
            self.resolver.apply_to_installment(balance.id)

    def test_other_borrowers_credit_rejected(self):
        other = self.credits.register_credit("222222222", Decimal("5000"), Decimal("24"), 6, date(2024, 1, 15))
        self.generator.generate_schedule(other.id)
        balance = self.overpay_first_installment(Decimal("300"))

        with pytest.raises(ServicingValidationError):
            self.resolver.apply_to_installment(balance.id, credit_id=other.id)
        assert self.queue.require(balance.id).remaining == Decimal("300.00")

    def test_apply_to_principal(self):
        balance = self.overpay_first_installment(Decimal("300"))
        before = self.credits.get_credit(self.credit.id)

        payment = self.resolver.apply_to_principal(balance.id, payment_date=date(2024, 1, 21))

        credit = self.credits.get_credit(self.credit.id)
        assert payment.source == PaymentSource.PENDING_BALANCE
        assert payment.reference == f"PB-{balance.id}"
        assert payment.allocation.principal == Decimal("300.00")
        assert payment.allocation.penalty == ZERO
        assert credit.balance == round_money(before.balance - Decimal("300"))
        assert credit.installment_amount < before.installment_amount
        assert self.queue.require(balance.id).state == PendingBalanceState.APPLIED

        records = self.ledger.list_records(entry_type=LedgerEntryType.PENDING_BALANCE_APPLICATION)
        assert [r.reference for r in records] == [f"PAY-{payment.id}"]
