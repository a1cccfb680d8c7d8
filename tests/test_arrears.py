"""
Test suite for arrears accrual

Overdue and moratory interest at month-end boundaries, idempotency of the
sweep and credit status derivation.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.money import ZERO, monthly_interest, round_money
from loan_servicing.storage import InMemoryStorage
from loan_servicing.audit import AuditTrail, AuditEventType
from loan_servicing.credits import CreditManager, CreditStatus, InstallmentState
from loan_servicing.ledger_dispatch import LedgerDispatcher
from loan_servicing.schedule import ScheduleGenerator
from loan_servicing.arrears import ArrearsAccrual, accrual_boundaries, accrue_installment


class TestArrearsAccrual:
    """Test the accrual sweep"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.ledger = LedgerDispatcher(self.storage, None, self.audit)
        self.credits = CreditManager(self.storage, self.audit)
        self.generator = ScheduleGenerator(self.credits, self.ledger, self.audit)
        self.arrears = ArrearsAccrual(self.credits, self.audit, Decimal("33.5"))

        # 24% contractual leaves 9.5 points of moratory headroom
        self.credit = self.credits.register_credit(
            "303330333", Decimal("12000"), Decimal("24"), 12, date(2024, 1, 15)
        )
        self.generator.generate_schedule(self.credit.id, formalized_on=date(2024, 1, 15))

    def installment(self, number, credit_id=None):
        rows = self.credits.get_installments(credit_id or self.credit.id)
        return [i for i in rows if i.number == number][0]

    def test_nothing_due_yet(self):
        result = self.arrears.accrue_credit(self.credit.id, date(2024, 2, 29))
        assert result["installments"] == 0
        assert self.installment(1).state == InstallmentState.PENDING

    def test_first_boundary_moves_interest(self):
        first = self.installment(1)
        result = self.arrears.accrue_credit(self.credit.id, date(2024, 3, 1))

        updated = self.installment(1)
        assert result["installments"] == 1
        assert updated.state == InstallmentState.ARREARS
        assert updated.days_late == 1
        assert updated.current_interest == ZERO
        assert updated.overdue_interest == Decimal("240.00")
        assert updated.moratory_interest == monthly_interest(first.principal, Decimal("9.5"))
        assert updated.last_accrued_date == date(2024, 2, 29)
        assert updated.remaining == first.remaining + updated.moratory_interest
        assert self.credits.get_credit(self.credit.id).status == CreditStatus.IN_ARREARS

    def test_accrual_is_idempotent(self):
        self.arrears.accrue_credit(self.credit.id, date(2024, 3, 1))
        once = self.installment(1)

        result = self.arrears.accrue_credit(self.credit.id, date(2024, 3, 1))
        again = self.installment(1)

        assert result["installments"] == 0
        assert again.moratory_interest == once.moratory_interest
        assert again.overdue_interest == once.overdue_interest

    def test_later_boundary_adds_interest(self):
        first = self.installment(1)
        self.arrears.accrue_credit(self.credit.id, date(2024, 3, 1))
        self.arrears.accrue_credit(self.credit.id, date(2024, 4, 1))

        updated = self.installment(1)
        month_interest = monthly_interest(first.principal, Decimal("24"))
        month_moratory = monthly_interest(first.principal, Decimal("9.5"))
        assert updated.overdue_interest == round_money(Decimal("240.00") + month_interest)
        assert updated.moratory_interest == round_money(month_moratory * 2)
        assert updated.last_accrued_date == date(2024, 3, 31)
        assert updated.days_late == 32

        # Installment 2 fell due on 2024-03-31
        second = self.installment(2)
        assert second.state == InstallmentState.ARREARS
        assert second.overdue_interest == second.installment_amount - second.principal

    def test_skipped_cycles_catch_up(self):
        stepwise = self.credits.register_credit("404440444", Decimal("12000"), Decimal("24"), 12, date(2024, 1, 15))
        self.generator.generate_schedule(stepwise.id)

        self.arrears.accrue_credit(self.credit.id, date(2024, 5, 1))
        for as_of in (date(2024, 3, 1), date(2024, 4, 1), date(2024, 5, 1)):
            self.arrears.accrue_credit(stepwise.id, as_of)

        assert self.installment(1).moratory_interest == self.installment(1, stepwise.id).moratory_interest
        assert self.installment(1).overdue_interest == self.installment(1, stepwise.id).overdue_interest

    def test_rate_at_or_above_maximum_has_no_moratory(self):
        expensive = self.credits.register_credit("505550555", Decimal("12000"), Decimal("36"), 12, date(2024, 1, 15))
        self.generator.generate_schedule(expensive.id)

        self.arrears.accrue_credit(expensive.id, date(2024, 4, 1))

        updated = self.installment(1, expensive.id)
        assert updated.state == InstallmentState.ARREARS
        assert updated.moratory_interest == ZERO
        assert updated.overdue_interest > Decimal("360.00")

    def test_partial_installment_uses_unpaid_principal(self):
        first = self.installment(1)
        first.paid_current_interest = first.current_interest
        first.paid_principal = Decimal("500.00")
        first.state = InstallmentState.PARTIAL
        self.credits.save_installment(first)

        self.arrears.accrue_credit(self.credit.id, date(2024, 3, 1))

        updated = self.installment(1)
        assert updated.overdue_interest == ZERO
        assert updated.moratory_interest == monthly_interest(first.principal - Decimal("500.00"), Decimal("9.5"))
        assert updated.state == InstallmentState.ARREARS

    def test_paid_installments_untouched(self):
        first = self.installment(1)
        first.paid_current_interest = first.current_interest
        first.paid_principal = first.principal
        first.state = InstallmentState.PAID
        self.credits.save_installment(first)

        result = self.arrears.accrue_credit(self.credit.id, date(2024, 3, 1))
        assert result["installments"] == 0
        assert self.installment(1).moratory_interest == ZERO

    def test_sweep_summary(self):
        other = self.credits.register_credit("606660666", Decimal("5000"), Decimal("24"), 6, date(2024, 1, 15))
        self.generator.generate_schedule(other.id)
        self.credits.register_credit("707770777", Decimal("5000"), Decimal("24"), 6, date(2024, 1, 15))

        summary = self.arrears.run_sweep(date(2024, 3, 1))

        assert summary["credits_processed"] == 2
        assert summary["credits_updated"] == 2
        assert summary["installments_updated"] == 2
        assert summary["errors"] == []
        assert len(self.audit.get_events_by_type(AuditEventType.ARREARS_ACCRUED)) == 2

        rerun = self.arrears.run_sweep(date(2024, 3, 1))
        assert rerun["credits_updated"] == 0


class TestBoundaries:
    """Test boundary selection"""

    def test_boundaries_after_last_accrual(self):
        storage = InMemoryStorage()
        audit = AuditTrail(storage)
        credits = CreditManager(storage, audit)
        generator = ScheduleGenerator(credits, LedgerDispatcher(storage, None, audit), audit)
        credit = credits.register_credit("1", Decimal("1000"), Decimal("24"), 3, date(2024, 1, 15))
        first = generator.generate_schedule(credit.id)[0]

        assert accrual_boundaries(first, date(2024, 2, 29)) == []
        assert accrual_boundaries(first, date(2024, 4, 15)) == [date(2024, 2, 29), date(2024, 3, 31)]

        accrue_installment(first, Decimal("24"), Decimal("33.5"), date(2024, 3, 15))
        assert accrual_boundaries(first, date(2024, 4, 15)) == [date(2024, 3, 31)]
