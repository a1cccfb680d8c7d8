"""
Pending Balance Queue Module

Money received but not yet applied to any installment: manual overpayments,
batch overflow and unmatched batch rows. Each entry is consumed exactly once;
a partial application leaves the remainder pending.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import logging
import uuid

from .money import ZERO, round_money, to_decimal
from .storage import StorageInterface, StorageRecord, parse_date
from .audit import AuditTrail, AuditEventType
from .credits import normalize_identity
from .exceptions import RecordNotFoundError, ServicingValidationError

logger = logging.getLogger("loansvc.pending")


class PendingBalanceState(Enum):
    PENDING = "pending"
    APPLIED = "applied"


class PendingBalanceOrigin(Enum):
    PAYMENT_OVERFLOW = "payment_overflow"
    BATCH_OVERFLOW = "batch_overflow"
    BATCH_UNMATCHED = "batch_unmatched"


@dataclass
class PendingBalance(StorageRecord):
    """Unapplied money waiting for an explicit resolution"""
    borrower_identity: str
    amount: Decimal
    origin: PendingBalanceOrigin
    origin_date: date
    credit_id: Optional[str] = None       # None for unmatched batch rows
    applied_amount: Decimal = ZERO
    state: PendingBalanceState = PendingBalanceState.PENDING
    origin_reference: Optional[str] = None
    batch_id: Optional[str] = None
    applications: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def remaining(self) -> Decimal:
        return round_money(self.amount - self.applied_amount)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PendingBalance':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            borrower_identity=data['borrower_identity'],
            amount=to_decimal(data['amount']),
            origin=PendingBalanceOrigin(data['origin']),
            origin_date=parse_date(data['origin_date']),
            credit_id=data.get('credit_id'),
            applied_amount=to_decimal(data.get('applied_amount') or ZERO),
            state=PendingBalanceState(data['state']),
            origin_reference=data.get('origin_reference'),
            batch_id=data.get('batch_id'),
            applications=data.get('applications', [])
        )


class PendingBalanceQueue:
    """Persistence and bookkeeping for pending balances"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "pending_balances"

    def _save(self, balance: PendingBalance) -> None:
        balance.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, balance.id, balance.to_dict())

    def create_balance(
        self,
        borrower_identity: str,
        amount: Decimal,
        origin: PendingBalanceOrigin,
        origin_date: date,
        credit_id: Optional[str] = None,
        origin_reference: Optional[str] = None,
        batch_id: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> PendingBalance:
        """Store a new pending entry. Runs inside the caller's transaction."""
        amount = round_money(amount)
        if amount <= ZERO:
            raise ServicingValidationError("Pending balance amount must be positive")

        now = datetime.now(timezone.utc)
        balance = PendingBalance(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            borrower_identity=normalize_identity(borrower_identity),
            amount=amount,
            origin=origin,
            origin_date=origin_date,
            credit_id=credit_id,
            origin_reference=origin_reference,
            batch_id=batch_id
        )
        self._save(balance)
        self.audit_trail.log_event(
            event_type=AuditEventType.PENDING_BALANCE_CREATED,
            entity_type="pending_balance",
            entity_id=balance.id,
            metadata={
                "amount": amount,
                "origin": origin.value,
                "credit_id": credit_id,
                "origin_reference": origin_reference
            },
            actor_id=actor_id
        )
        logger.info(f"Pending balance {amount} created from {origin.value}")
        return balance

    def get(self, balance_id: str) -> Optional[PendingBalance]:
        data = self.storage.load(self.table_name, balance_id)
        if data:
            return PendingBalance.from_dict(data)
        return None

    def require(self, balance_id: str) -> PendingBalance:
        balance = self.get(balance_id)
        if not balance:
            raise RecordNotFoundError(f"Pending balance {balance_id} not found")
        return balance

    def list(self, state: Optional[PendingBalanceState] = None,
             credit_id: Optional[str] = None,
             borrower_identity: Optional[str] = None,
             batch_id: Optional[str] = None) -> List[PendingBalance]:
        filters = {}
        if state:
            filters['state'] = state.value
        if credit_id:
            filters['credit_id'] = credit_id
        if borrower_identity:
            filters['borrower_identity'] = normalize_identity(borrower_identity)
        if batch_id:
            filters['batch_id'] = batch_id
        balances = [PendingBalance.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        balances.sort(key=lambda b: b.created_at)
        return balances

    def consume(self, balance: PendingBalance, amount: Decimal, payment_id: str,
                applied_on: date, kind: str, actor_id: Optional[str] = None) -> PendingBalance:
        """
        Record an application of ``amount``. The entry becomes applied once
        nothing remains.
        """
        amount = round_money(amount)
        if amount <= ZERO or amount > balance.remaining:
            raise ServicingValidationError(
                f"Cannot apply {amount}; {balance.remaining} remains on pending balance {balance.id}"
            )
        balance.applied_amount = round_money(balance.applied_amount + amount)
        balance.applications.append({
            "payment_id": payment_id,
            "amount": str(amount),
            "date": applied_on.isoformat(),
            "kind": kind
        })
        if balance.remaining == ZERO:
            balance.state = PendingBalanceState.APPLIED
        self._save(balance)
        self.audit_trail.log_event(
            event_type=AuditEventType.PENDING_BALANCE_APPLIED,
            entity_type="pending_balance",
            entity_id=balance.id,
            metadata={
                "amount": amount,
                "kind": kind,
                "payment_id": payment_id,
                "remaining": balance.remaining
            },
            actor_id=actor_id
        )
        return balance

    def delete(self, balance_id: str) -> bool:
        return self.storage.delete(self.table_name, balance_id)
