"""
Schedule Generator Module

French (constant installment) amortization. The pure row builders are shared
with the extraordinary payment processor; ``ScheduleGenerator`` is the
explicit command the formalization workflow invokes once per credit.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Callable, List, Optional
import calendar
import logging
import uuid

from .money import ZERO, round_money, to_decimal, monthly_rate, monthly_interest, money_sum
from .credits import CreditManager, Credit, CreditStatus, Installment
from .audit import AuditTrail, AuditEventType
from .ledger_dispatch import LedgerDispatcher, LedgerEntryType
from .exceptions import ScheduleIntegrityError, ServicingValidationError

logger = logging.getLogger("loansvc.schedule")


@dataclass
class ScheduleRow:
    """One computed amortization row before it is persisted"""
    number: int
    due_date: date
    opening_balance: Decimal
    installment_amount: Decimal
    interest: Decimal
    principal: Decimal
    closing_balance: Decimal


def month_end(start: date, months: int) -> date:
    """Last day of the month ``months`` after ``start``"""
    month = start.month - 1 + months
    year = start.year + month // 12
    month = month % 12 + 1
    return date(year, month, calendar.monthrange(year, month)[1])


def fixed_installment(principal: Decimal, annual_rate: Decimal, periods: int) -> Decimal:
    """
    Constant installment A = P·i·(1+i)^n / ((1+i)^n − 1), or P/n without interest.

    Args:
        principal: Amount to amortize
        annual_rate: Annual percentage rate
        periods: Number of monthly installments

    Returns:
        Rounded installment amount
    """
    if periods < 1:
        raise ServicingValidationError("At least one period is required")
    principal = to_decimal(principal)
    rate = monthly_rate(annual_rate)
    if rate == ZERO:
        return round_money(principal / periods)
    factor = (1 + rate) ** periods
    return round_money(principal * rate * factor / (factor - 1))


def build_rows(
    principal: Decimal,
    annual_rate: Decimal,
    periods: int,
    due_date_for: Callable[[int], date],
    first_number: int = 1,
    payment: Optional[Decimal] = None
) -> List[ScheduleRow]:
    """
    Amortize ``principal`` over exactly ``periods`` rows.

    Every row's interest is the rounded monthly interest on the opening
    balance; the final row takes whatever principal is left so the closing
    balance is exactly zero.
    """
    if payment is None:
        payment = fixed_installment(principal, annual_rate, periods)
    balance = round_money(principal)
    rows = []
    for offset in range(periods):
        number = first_number + offset
        interest = monthly_interest(balance, annual_rate)
        if offset == periods - 1:
            principal_part = balance
        else:
            principal_part = min(max(round_money(payment - interest), ZERO), balance)
        closing = max(round_money(balance - principal_part), ZERO)
        rows.append(ScheduleRow(
            number=number,
            due_date=due_date_for(number),
            opening_balance=balance,
            installment_amount=round_money(principal_part + interest),
            interest=interest,
            principal=principal_part,
            closing_balance=closing
        ))
        balance = closing
    return rows


def build_rows_for_payment(
    principal: Decimal,
    annual_rate: Decimal,
    payment: Decimal,
    due_date_for: Callable[[int], date],
    first_number: int = 1,
    max_periods: Optional[int] = None
) -> List[ScheduleRow]:
    """
    Amortize ``principal`` with a fixed ``payment``, using the fewest rows.

    Raises:
        ServicingValidationError: If the payment does not cover the first
            period's interest, or the principal cannot be retired within
            ``max_periods``
    """
    balance = round_money(principal)
    payment = round_money(payment)
    if balance == ZERO:
        return []
    if payment <= monthly_interest(balance, annual_rate):
        raise ServicingValidationError("Installment amount does not cover the period interest")

    rows = []
    number = first_number
    while balance > ZERO:
        if max_periods is not None and len(rows) >= max_periods:
            raise ServicingValidationError(
                f"Principal cannot be amortized within {max_periods} periods at {payment}"
            )
        interest = monthly_interest(balance, annual_rate)
        principal_part = round_money(payment - interest)
        if principal_part >= balance:
            principal_part = balance
        closing = round_money(balance - principal_part)
        rows.append(ScheduleRow(
            number=number,
            due_date=due_date_for(number),
            opening_balance=balance,
            installment_amount=round_money(principal_part + interest),
            interest=interest,
            principal=principal_part,
            closing_balance=closing
        ))
        balance = closing
        number += 1
    return rows


def validate_rows(rows: List[ScheduleRow], expected_principal: Decimal) -> None:
    """
    Raises:
        ScheduleIntegrityError: If the rows do not amortize exactly the
            expected principal or any balance goes negative
    """
    expected_principal = round_money(expected_principal)
    total = money_sum(row.principal for row in rows)
    if total != expected_principal:
        raise ScheduleIntegrityError(
            f"Schedule principal {total} does not match {expected_principal}"
        )
    for row in rows:
        if row.closing_balance < ZERO or row.principal < ZERO:
            raise ScheduleIntegrityError(f"Row {row.number} has a negative amount")
    if rows and rows[-1].closing_balance != ZERO:
        raise ScheduleIntegrityError(
            f"Final balance is {rows[-1].closing_balance}, expected 0.00"
        )


def rows_to_installments(credit: Credit, rows: List[ScheduleRow]) -> List[Installment]:
    now = datetime.now(timezone.utc)
    return [
        Installment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            credit_id=credit.id,
            number=row.number,
            due_date=row.due_date,
            opening_balance=row.opening_balance,
            installment_amount=row.installment_amount,
            current_interest=row.interest,
            principal=row.principal,
            closing_balance=row.closing_balance,
            policy=credit.monthly_policy
        )
        for row in rows
    ]


def check_credit_schedule(credit: Credit, installments: List[Installment]) -> None:
    """
    Scheduled principal plus principal retired outside the schedule must
    equal the original principal.
    """
    scheduled = money_sum(i.principal for i in installments if i.number > 0)
    if round_money(scheduled + credit.extraordinary_principal) != credit.principal:
        raise ScheduleIntegrityError(
            f"Credit {credit.reference}: scheduled principal {scheduled} plus "
            f"extraordinary {credit.extraordinary_principal} != {credit.principal}"
        )


class ScheduleGenerator:
    """
    Generates a credit's installment plan exactly once, at formalization.
    """

    def __init__(self, credit_manager: CreditManager, ledger_dispatcher: LedgerDispatcher,
                 audit_trail: AuditTrail):
        self.credits = credit_manager
        self.ledger = ledger_dispatcher
        self.audit_trail = audit_trail

    def preview_schedule(self, principal: Decimal, annual_rate: Decimal, term_months: int,
                         start_date: date) -> List[ScheduleRow]:
        """Compute a plan without storing anything"""
        rows = build_rows(principal, annual_rate, term_months, lambda n: month_end(start_date, n))
        validate_rows(rows, principal)
        return rows

    def generate_schedule(self, credit_id: str, formalized_on: Optional[date] = None,
                          actor_id: Optional[str] = None) -> List[Installment]:
        """
        Generate and store the installment plan for a credit and formalize it.

        A no-op returning the existing plan when active rows already exist.

        Args:
            credit_id: Credit to formalize
            formalized_on: Formalization date (defaults to today)
            actor_id: Operator running the formalization

        Returns:
            Active installments ordered by number
        """
        dispatch_ids = []
        with self.credits.credit_transaction(credit_id):
            credit = self.credits.require_credit(credit_id)
            existing = self.credits.get_installments(credit_id)
            if existing:
                logger.info(f"Schedule for {credit.reference} already exists, skipping generation")
                return existing
            if credit.status != CreditStatus.APPROVED:
                raise ServicingValidationError(
                    f"Credit {credit.reference} is {credit.status.value}; only approved credits can be formalized"
                )

            rows = build_rows(
                credit.principal, credit.annual_rate, credit.term_months,
                lambda n: month_end(credit.start_date, n)
            )
            validate_rows(rows, credit.principal)

            now = datetime.now(timezone.utc)
            initialization = Installment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                credit_id=credit.id,
                number=0,
                due_date=credit.start_date,
                opening_balance=credit.principal,
                installment_amount=ZERO,
                current_interest=ZERO,
                principal=ZERO,
                closing_balance=credit.principal
            )
            installments = rows_to_installments(credit, rows)
            for installment in [initialization] + installments:
                self.credits.save_installment(installment)

            credit.installment_amount = fixed_installment(credit.principal, credit.annual_rate, credit.term_months)
            credit.balance = credit.principal
            credit.formalized_date = formalized_on or date.today()
            self.credits.change_status(credit, CreditStatus.FORMALIZED, actor_id=actor_id)
            self.credits.save_credit(credit)

            self.audit_trail.log_event(
                event_type=AuditEventType.SCHEDULE_GENERATED,
                entity_type="credit",
                entity_id=credit.id,
                metadata={
                    "installments": len(installments),
                    "installment_amount": credit.installment_amount,
                    "first_due_date": installments[0].due_date
                },
                actor_id=actor_id
            )
            self.audit_trail.log_event(
                event_type=AuditEventType.CREDIT_FORMALIZED,
                entity_type="credit",
                entity_id=credit.id,
                metadata={
                    "reference": credit.reference,
                    "formalized_date": credit.formalized_date,
                    "principal": credit.principal
                },
                actor_id=actor_id
            )

            record = self.ledger.enqueue(
                entry_type=LedgerEntryType.FORMALIZATION,
                reference=f"FORM-{credit.id}",
                amount=credit.principal,
                breakdown={"principal": str(credit.principal)},
                credit_id=credit.id,
                context={"credit_reference": credit.reference, "borrower_identity": credit.borrower_identity}
            )
            if record:
                dispatch_ids.append(record.id)

        self.ledger.dispatch_after_commit(dispatch_ids)
        logger.info(f"Generated {len(installments)} installments for {credit.reference}")
        return installments
