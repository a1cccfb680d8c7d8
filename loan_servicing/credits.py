"""
Credit Module

Credit, installment and payment records plus the manager that persists them.
Status values are closed enumerations; every status change goes through an
explicit transition table.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from contextlib import contextmanager
from typing import Any, Dict, List, Optional
from enum import Enum
import logging
import uuid

from .money import ZERO, round_money, to_decimal, money_sum
from .storage import StorageInterface, StorageRecord, parse_date, parse_datetime
from .audit import AuditTrail, AuditEventType
from .locking import CreditLockRegistry
from .exceptions import (
    CreditNotFoundError, InvalidStateTransitionError, ServicingValidationError
)

logger = logging.getLogger("loansvc.credits")


class CreditStatus(Enum):
    """Credit lifecycle states"""
    APPROVED = "Aprobado"        # Registered, schedule not generated yet
    FORMALIZED = "Formalizado"   # Schedule generated, in repayment
    IN_ARREARS = "En Mora"       # At least one installment in Mora
    CANCELLED = "Cancelado"      # Fully paid
    WRITTEN_OFF = "Castigado"    # Written off as uncollectible


CREDIT_TRANSITIONS = {
    CreditStatus.APPROVED: {CreditStatus.FORMALIZED},
    CreditStatus.FORMALIZED: {CreditStatus.IN_ARREARS, CreditStatus.CANCELLED, CreditStatus.WRITTEN_OFF},
    CreditStatus.IN_ARREARS: {CreditStatus.FORMALIZED, CreditStatus.CANCELLED, CreditStatus.WRITTEN_OFF},
    CreditStatus.CANCELLED: set(),
    CreditStatus.WRITTEN_OFF: set(),
}

PAYABLE_STATUSES = (CreditStatus.FORMALIZED, CreditStatus.IN_ARREARS)


class InstallmentState(Enum):
    """Installment states"""
    PENDING = "Pendiente"
    PARTIAL = "Parcial"
    PAID = "Pagado"
    ARREARS = "Mora"


INSTALLMENT_TRANSITIONS = {
    InstallmentState.PENDING: {InstallmentState.PARTIAL, InstallmentState.PAID, InstallmentState.ARREARS},
    InstallmentState.PARTIAL: {InstallmentState.PAID, InstallmentState.ARREARS},
    InstallmentState.ARREARS: {InstallmentState.PAID},
    InstallmentState.PAID: set(),
}


# Allocation priority: (scheduled component, paid tracker)
COMPONENTS = (
    ("moratory_interest", "paid_moratory_interest"),
    ("overdue_interest", "paid_overdue_interest"),
    ("current_interest", "paid_current_interest"),
    ("principal", "paid_principal"),
    ("policy", "paid_policy"),
    ("penalty", "paid_penalty"),
)


class PaymentSource(Enum):
    """Origin of a payment"""
    MANUAL = "manual"
    BATCH = "batch"
    TRANSFER = "transfer"
    EXTRAORDINARY = "extraordinary"
    PAYOFF = "payoff"
    PENDING_BALANCE = "pending_balance"


def _decimal(data: Dict[str, Any], key: str) -> Decimal:
    value = data.get(key)
    return to_decimal(value) if value not in (None, "") else ZERO


@dataclass
class Credit(StorageRecord):
    """One formalized loan"""
    borrower_identity: str
    borrower_name: str
    reference: str
    principal: Decimal
    annual_rate: Decimal                # Percentage, 36 means 36% a year
    term_months: int
    start_date: date
    status: CreditStatus = CreditStatus.APPROVED
    balance: Decimal = ZERO             # Outstanding principal
    installment_amount: Decimal = ZERO  # Current fixed installment
    monthly_policy: Decimal = ZERO
    extraordinary_principal: Decimal = ZERO  # Principal retired outside the schedule
    deductora_id: Optional[str] = None
    formalized_date: Optional[date] = None
    closed_date: Optional[date] = None

    @property
    def is_payable(self) -> bool:
        return self.status in PAYABLE_STATUSES

    def transition_to(self, new_status: CreditStatus) -> None:
        if new_status == self.status:
            return
        if new_status not in CREDIT_TRANSITIONS[self.status]:
            raise InvalidStateTransitionError(
                f"Credit {self.reference}: cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Credit':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            borrower_identity=data['borrower_identity'],
            borrower_name=data.get('borrower_name', ''),
            reference=data['reference'],
            principal=_decimal(data, 'principal'),
            annual_rate=_decimal(data, 'annual_rate'),
            term_months=data['term_months'],
            start_date=parse_date(data['start_date']),
            status=CreditStatus(data['status']),
            balance=_decimal(data, 'balance'),
            installment_amount=_decimal(data, 'installment_amount'),
            monthly_policy=_decimal(data, 'monthly_policy'),
            extraordinary_principal=_decimal(data, 'extraordinary_principal'),
            deductora_id=data.get('deductora_id'),
            formalized_date=parse_date(data.get('formalized_date')),
            closed_date=parse_date(data.get('closed_date'))
        )


@dataclass
class Installment(StorageRecord):
    """One scheduled due date in a credit's plan (number 0 is the initialization row)"""
    credit_id: str
    number: int
    due_date: date
    opening_balance: Decimal
    installment_amount: Decimal         # Scheduled interest + principal
    current_interest: Decimal
    principal: Decimal
    closing_balance: Decimal
    policy: Decimal = ZERO
    overdue_interest: Decimal = ZERO    # Current interest that went unpaid past due
    moratory_interest: Decimal = ZERO
    penalty: Decimal = ZERO
    paid_moratory_interest: Decimal = ZERO
    paid_overdue_interest: Decimal = ZERO
    paid_current_interest: Decimal = ZERO
    paid_principal: Decimal = ZERO
    paid_policy: Decimal = ZERO
    paid_penalty: Decimal = ZERO
    state: InstallmentState = InstallmentState.PENDING
    days_late: int = 0
    last_accrued_date: Optional[date] = None
    paid_date: Optional[date] = None

    @property
    def total_due(self) -> Decimal:
        return money_sum(getattr(self, component) for component, _ in COMPONENTS)

    @property
    def paid_total(self) -> Decimal:
        return money_sum(getattr(self, paid) for _, paid in COMPONENTS)

    @property
    def remaining(self) -> Decimal:
        return round_money(self.total_due - self.paid_total)

    @property
    def unpaid_principal(self) -> Decimal:
        return round_money(self.principal - self.paid_principal)

    def outstanding(self, component: str) -> Decimal:
        """Unpaid part of one component"""
        paid = dict(COMPONENTS)[component]
        return round_money(getattr(self, component) - getattr(self, paid))

    def transition_to(self, new_state: InstallmentState) -> None:
        if new_state == self.state:
            return
        if new_state not in INSTALLMENT_TRANSITIONS[self.state]:
            raise InvalidStateTransitionError(
                f"Installment {self.number}: cannot move from {self.state.value} to {new_state.value}"
            )
        self.state = new_state

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        amounts = {
            key: _decimal(data, key) for key in (
                'opening_balance', 'installment_amount', 'current_interest', 'principal',
                'closing_balance', 'policy', 'overdue_interest', 'moratory_interest', 'penalty',
                'paid_moratory_interest', 'paid_overdue_interest', 'paid_current_interest',
                'paid_principal', 'paid_policy', 'paid_penalty'
            )
        }
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            credit_id=data['credit_id'],
            number=data['number'],
            due_date=parse_date(data['due_date']),
            state=InstallmentState(data['state']),
            days_late=data.get('days_late', 0),
            last_accrued_date=parse_date(data.get('last_accrued_date')),
            paid_date=parse_date(data.get('paid_date')),
            **amounts
        )


@dataclass
class AllocationBreakdown:
    """How a payment amount was distributed; always sums to the payment amount"""
    moratory_interest: Decimal = ZERO
    overdue_interest: Decimal = ZERO
    current_interest: Decimal = ZERO
    principal: Decimal = ZERO
    policy: Decimal = ZERO
    penalty: Decimal = ZERO
    overflow: Decimal = ZERO            # Routed to a pending balance

    def add(self, component: str, amount: Decimal) -> None:
        setattr(self, component, round_money(getattr(self, component) + amount))

    def total(self) -> Decimal:
        return money_sum(self.to_dict().values())

    def to_dict(self) -> Dict[str, str]:
        return {
            'moratory_interest': str(self.moratory_interest),
            'overdue_interest': str(self.overdue_interest),
            'current_interest': str(self.current_interest),
            'principal': str(self.principal),
            'policy': str(self.policy),
            'penalty': str(self.penalty),
            'overflow': str(self.overflow),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AllocationBreakdown':
        return cls(**{key: to_decimal(value) for key, value in data.items()})


@dataclass
class Payment(StorageRecord):
    """One settled money movement against a credit"""
    credit_id: str
    amount: Decimal
    payment_date: date
    source: PaymentSource
    breakdown: Dict[str, str]
    installment_details: List[Dict[str, Any]] = field(default_factory=list)
    batch_id: Optional[str] = None
    pending_balance_id: Optional[str] = None  # Overflow created by this payment
    reference: Optional[str] = None
    actor_id: Optional[str] = None

    @property
    def allocation(self) -> AllocationBreakdown:
        return AllocationBreakdown.from_dict(self.breakdown)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            credit_id=data['credit_id'],
            amount=_decimal(data, 'amount'),
            payment_date=parse_date(data['payment_date']),
            source=PaymentSource(data['source']),
            breakdown=data['breakdown'],
            installment_details=data.get('installment_details', []),
            batch_id=data.get('batch_id'),
            pending_balance_id=data.get('pending_balance_id'),
            reference=data.get('reference'),
            actor_id=data.get('actor_id')
        )


def normalize_identity(value: Any) -> str:
    """Borrower identity keys are compared as digits only"""
    return "".join(ch for ch in str(value or "") if ch.isdigit())


class CreditManager:
    """
    Owns the credits, installments and payments tables and the per-credit
    locks that serialize their mutation.
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.locks = CreditLockRegistry()

        self.credits_table = "credits"
        self.installments_table = "installments"
        self.payments_table = "payments"

    @contextmanager
    def credit_transaction(self, *credit_ids: str):
        """Serialize on the given credits and run the block atomically"""
        with self.locks.hold(*credit_ids):
            with self.storage.atomic():
                yield

    # Credits

    def register_credit(
        self,
        borrower_identity: str,
        principal: Decimal,
        annual_rate: Decimal,
        term_months: int,
        start_date: date,
        borrower_name: str = "",
        reference: Optional[str] = None,
        deductora_id: Optional[str] = None,
        monthly_policy: Decimal = ZERO,
        actor_id: Optional[str] = None
    ) -> Credit:
        """
        Register an approved credit. The schedule is generated separately by
        the formalization workflow.

        Args:
            borrower_identity: Borrower national id; non-digits are stripped
            principal: Amount lent
            annual_rate: Annual percentage rate (36 for 36%)
            term_months: Number of monthly installments
            start_date: Date the plan starts; first due date is the end of the next month
            borrower_name: Display name
            reference: Human facing credit reference (generated when omitted)
            deductora_id: Payroll deductor collecting installments, if any
            monthly_policy: Insurance fee charged with every installment
            actor_id: Operator registering the credit

        Returns:
            The stored Credit in Aprobado status
        """
        identity = normalize_identity(borrower_identity)
        if not identity:
            raise ServicingValidationError("Borrower identity is required")

        principal = round_money(principal)
        annual_rate = to_decimal(annual_rate)
        monthly_policy = round_money(monthly_policy)
        if principal <= ZERO:
            raise ServicingValidationError("Principal must be positive")
        if annual_rate < ZERO:
            raise ServicingValidationError("Annual rate cannot be negative")
        if term_months < 1:
            raise ServicingValidationError("Term must be at least one month")
        if monthly_policy < ZERO:
            raise ServicingValidationError("Policy fee cannot be negative")

        now = datetime.now(timezone.utc)
        credit_id = str(uuid.uuid4())
        credit = Credit(
            id=credit_id,
            created_at=now,
            updated_at=now,
            borrower_identity=identity,
            borrower_name=borrower_name,
            reference=reference or f"CR-{credit_id[:8].upper()}",
            principal=principal,
            annual_rate=annual_rate,
            term_months=term_months,
            start_date=start_date,
            balance=principal,
            monthly_policy=monthly_policy,
            deductora_id=deductora_id
        )

        with self.storage.atomic():
            self.save_credit(credit)
            self.audit_trail.log_event(
                event_type=AuditEventType.CREDIT_REGISTERED,
                entity_type="credit",
                entity_id=credit.id,
                metadata={
                    "reference": credit.reference,
                    "borrower_identity": identity,
                    "principal": principal,
                    "annual_rate": annual_rate,
                    "term_months": term_months
                },
                actor_id=actor_id
            )

        logger.info(f"Registered credit {credit.reference} for {principal}")
        return credit

    def get_credit(self, credit_id: str) -> Optional[Credit]:
        data = self.storage.load(self.credits_table, credit_id)
        if data:
            return Credit.from_dict(data)
        return None

    def require_credit(self, credit_id: str) -> Credit:
        """
        Raises:
            CreditNotFoundError: If no credit has this id
        """
        credit = self.get_credit(credit_id)
        if not credit:
            raise CreditNotFoundError(f"Credit {credit_id} not found")
        return credit

    def require_payable(self, credit_id: str) -> Credit:
        """Load a credit that can receive payments"""
        credit = self.require_credit(credit_id)
        if not credit.is_payable:
            raise ServicingValidationError(
                f"Credit {credit.reference} is {credit.status.value} and cannot receive payments"
            )
        return credit

    def list_credits(self, status: Optional[CreditStatus] = None) -> List[Credit]:
        filters = {'status': status.value} if status else {}
        credits = [Credit.from_dict(data) for data in self.storage.find(self.credits_table, filters)]
        credits.sort(key=lambda c: (c.formalized_date or c.start_date, c.created_at))
        return credits

    def find_payable_credits(self, borrower_identity: str) -> List[Credit]:
        """A borrower's credits that accept payments, oldest first"""
        identity = normalize_identity(borrower_identity)
        if not identity:
            return []
        credits = [
            Credit.from_dict(data)
            for data in self.storage.find(self.credits_table, {'borrower_identity': identity})
        ]
        credits = [c for c in credits if c.is_payable]
        credits.sort(key=lambda c: (c.formalized_date or c.start_date, c.created_at))
        return credits

    def save_credit(self, credit: Credit) -> None:
        credit.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.credits_table, credit.id, credit.to_dict())

    def change_status(self, credit: Credit, new_status: CreditStatus,
                      as_of: Optional[date] = None, actor_id: Optional[str] = None) -> None:
        """Move a credit through its transition table and audit the change"""
        if new_status == credit.status:
            return
        previous = credit.status
        credit.transition_to(new_status)
        if new_status in (CreditStatus.CANCELLED, CreditStatus.WRITTEN_OFF):
            credit.closed_date = as_of or date.today()
        self.audit_trail.log_event(
            event_type=AuditEventType.CREDIT_STATUS_CHANGED,
            entity_type="credit",
            entity_id=credit.id,
            metadata={"from": previous.value, "to": new_status.value},
            actor_id=actor_id
        )
        logger.info(f"Credit {credit.reference} moved from {previous.value} to {new_status.value}")

    def refresh_status(self, credit: Credit, installments: List[Installment],
                       as_of: Optional[date] = None, actor_id: Optional[str] = None) -> None:
        """
        Derive the credit status from its installments: Cancelado once nothing
        is owed, En Mora while any installment is in Mora, Formalizado otherwise.
        """
        if not credit.is_payable:
            return
        active = [i for i in installments if i.number > 0]
        if credit.balance == ZERO and all(i.state == InstallmentState.PAID for i in active):
            target = CreditStatus.CANCELLED
        elif any(i.state == InstallmentState.ARREARS for i in active):
            target = CreditStatus.IN_ARREARS
        else:
            target = CreditStatus.FORMALIZED
        self.change_status(credit, target, as_of=as_of, actor_id=actor_id)

    # Installments

    def get_installments(self, credit_id: str, include_initialization: bool = False) -> List[Installment]:
        """Installments of a credit ordered by number"""
        rows = [
            Installment.from_dict(data)
            for data in self.storage.find(self.installments_table, {'credit_id': credit_id})
        ]
        if not include_initialization:
            rows = [row for row in rows if row.number > 0]
        rows.sort(key=lambda row: row.number)
        return rows

    def save_installment(self, installment: Installment) -> None:
        installment.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.installments_table, installment.id, installment.to_dict())

    def delete_installment(self, installment_id: str) -> bool:
        return self.storage.delete(self.installments_table, installment_id)

    # Payments

    def save_payment(self, payment: Payment) -> None:
        self.storage.save(self.payments_table, payment.id, payment.to_dict())

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        data = self.storage.load(self.payments_table, payment_id)
        if data:
            return Payment.from_dict(data)
        return None

    def get_payments(self, credit_id: str) -> List[Payment]:
        """Payment history of a credit, oldest first"""
        payments = [
            Payment.from_dict(data)
            for data in self.storage.find(self.payments_table, {'credit_id': credit_id})
        ]
        payments.sort(key=lambda p: (p.payment_date, p.created_at))
        return payments

    def delete_payment(self, payment_id: str) -> bool:
        return self.storage.delete(self.payments_table, payment_id)

    # Snapshots

    def snapshot_credit(self, credit_id: str) -> Dict[str, Any]:
        """Raw stored state of a credit and all its installments"""
        return {
            'credit': self.storage.load(self.credits_table, credit_id),
            'installments': self.storage.find(self.installments_table, {'credit_id': credit_id})
        }

    def restore_snapshot(self, snapshot: Dict[str, Any]) -> None:
        """Write a snapshot back exactly as it was taken"""
        credit_data = snapshot['credit']
        kept_ids = {row['id'] for row in snapshot['installments']}
        for row in self.storage.find(self.installments_table, {'credit_id': credit_data['id']}):
            if row['id'] not in kept_ids:
                self.storage.delete(self.installments_table, row['id'])
        for row in snapshot['installments']:
            self.storage.save(self.installments_table, row['id'], row)
        self.storage.save(self.credits_table, credit_data['id'], credit_data)
