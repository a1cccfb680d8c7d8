"""
Ledger Dispatch Module

Posts committed financial events to the external accounting system and
tracks each attempt as a ``LedgerDispatchRecord``:

    pending -> success | error | skipped
    error   -> pending   (increment_retry, while retry_count < max_retries)

Records are created inside the financial transaction; the external call
happens only after that transaction commits. Retries are driven entirely by
stored state (``next_retry_at``), so a restarted process resumes where the
previous one stopped.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
from enum import Enum
import logging
import uuid

from .money import ZERO, round_money, to_decimal
from .storage import StorageInterface, StorageRecord, parse_datetime
from .audit import AuditTrail, AuditEventType
from .erp_client import ErpClient, ErpResult
from .exceptions import InvalidStateTransitionError, RecordNotFoundError

logger = logging.getLogger("loansvc.ledger")


class LedgerEntryType(Enum):
    """Journal entry types understood by the external accounting system"""
    FORMALIZATION = "FORMALIZACION"
    BATCH_PAYMENT = "PAGO_PLANILLA"
    TELLER_PAYMENT = "PAGO_VENTANILLA"
    GENERIC_PAYMENT = "PAGO_GENERICO"
    EXTRAORDINARY_PAYMENT = "ABONO_EXTRAORDINARIO"
    EARLY_PAYOFF = "CANCELACION_ANTICIPADA"
    PENDING_BALANCE_APPLICATION = "APLICACION_SALDO_PENDIENTE"
    BATCH_VOID = "ANULACION_PLANILLA"


class DispatchStatus(Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


DISPATCH_TRANSITIONS = {
    DispatchStatus.PENDING: {DispatchStatus.SUCCESS, DispatchStatus.ERROR, DispatchStatus.SKIPPED},
    DispatchStatus.ERROR: {DispatchStatus.PENDING},
    DispatchStatus.SUCCESS: set(),
    DispatchStatus.SKIPPED: set(),
}


def retry_delay(retry_count: int, base_minutes: int = 5, factor: int = 3) -> timedelta:
    """Backoff before the next attempt: 5, 15, 45 ... minutes"""
    return timedelta(minutes=base_minutes * (factor ** retry_count))


@dataclass
class LedgerDispatchRecord(StorageRecord):
    """One financial event destined for the external ledger"""
    entry_type: LedgerEntryType
    reference: str
    amount: Decimal
    amount_breakdown: Dict[str, str]
    credit_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    status: DispatchStatus = DispatchStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    next_retry_at: Optional[datetime] = None
    last_retry_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    payload_sent: Optional[Dict[str, Any]] = None
    external_response: Optional[Dict[str, Any]] = None
    external_id: Optional[str] = None
    http_status: Optional[int] = None
    error_message: Optional[str] = None

    def transition_to(self, new_status: DispatchStatus) -> None:
        if new_status not in DISPATCH_TRANSITIONS[self.status]:
            raise InvalidStateTransitionError(
                f"Dispatch {self.reference}: cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status

    def mark_success(self, result: ErpResult, payload: Dict[str, Any], now: datetime) -> None:
        self.transition_to(DispatchStatus.SUCCESS)
        self.payload_sent = payload
        self.external_response = result.data
        self.external_id = result.journal_entry_id
        self.http_status = result.status_code
        self.error_message = None
        self.next_retry_at = None
        self.last_attempt_at = now

    def mark_error(self, error: str, now: datetime, http_status: Optional[int] = None,
                   payload: Optional[Dict[str, Any]] = None,
                   base_minutes: int = 5, factor: int = 3) -> None:
        """Record a failure and schedule the next attempt while retries remain"""
        self.transition_to(DispatchStatus.ERROR)
        self.error_message = error
        self.http_status = http_status
        self.payload_sent = payload
        self.last_attempt_at = now
        if self.retry_count < self.max_retries:
            self.next_retry_at = now + retry_delay(self.retry_count, base_minutes, factor)
        else:
            self.next_retry_at = None

    def mark_skipped(self, reason: str, now: datetime,
                     payload: Optional[Dict[str, Any]] = None) -> None:
        self.transition_to(DispatchStatus.SKIPPED)
        self.error_message = reason
        self.payload_sent = payload
        self.next_retry_at = None
        self.last_attempt_at = now

    def increment_retry(self, now: datetime) -> None:
        self.transition_to(DispatchStatus.PENDING)
        self.retry_count += 1
        self.last_retry_at = now
        self.next_retry_at = None

    def can_retry(self) -> bool:
        return self.status == DispatchStatus.ERROR and self.retry_count < self.max_retries

    @property
    def is_exhausted(self) -> bool:
        return self.status == DispatchStatus.ERROR and self.retry_count >= self.max_retries

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerDispatchRecord':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            entry_type=LedgerEntryType(data['entry_type']),
            reference=data['reference'],
            amount=to_decimal(data['amount']),
            amount_breakdown=data.get('amount_breakdown') or {},
            credit_id=data.get('credit_id'),
            context=data.get('context') or {},
            status=DispatchStatus(data['status']),
            retry_count=data.get('retry_count', 0),
            max_retries=data.get('max_retries', 3),
            next_retry_at=parse_datetime(data.get('next_retry_at')),
            last_retry_at=parse_datetime(data.get('last_retry_at')),
            last_attempt_at=parse_datetime(data.get('last_attempt_at')),
            payload_sent=data.get('payload_sent'),
            external_response=data.get('external_response'),
            external_id=data.get('external_id'),
            http_status=data.get('http_status'),
            error_message=data.get('error_message')
        )


def select_due_for_retry(
    records: List[LedgerDispatchRecord],
    now: datetime,
    limit: Optional[int] = None,
    stale_after: Optional[timedelta] = None
) -> List[LedgerDispatchRecord]:
    """
    Decide which records the retry sweep should attempt. Pure function of
    stored state.

    Due records are errors with retries left whose ``next_retry_at`` has
    passed, plus (when ``stale_after`` is given) pending records that were
    never attempted and are older than ``stale_after``.
    """
    due = []
    for record in records:
        if record.can_retry() and record.next_retry_at is not None and record.next_retry_at <= now:
            due.append(record)
        elif (stale_after is not None
              and record.status == DispatchStatus.PENDING
              and record.last_attempt_at is None
              and record.created_at <= now - stale_after):
            due.append(record)
    due.sort(key=lambda r: (r.next_retry_at or r.created_at, r.created_at))
    if limit is not None:
        due = due[:limit]
    return due


# breakdown component -> ledger account role
_CREDIT_LINES = (
    ("principal", "receivable"),
    ("current_interest", "interest_income"),
    ("overdue_interest", "interest_income"),
    ("moratory_interest", "moratory_income"),
    ("policy", "policy_payable"),
    ("penalty", "penalty_income"),
    ("overflow", "pending_balances"),
)


def build_journal_items(record: LedgerDispatchRecord,
                        accounts: Dict[str, str]) -> Tuple[List[Dict[str, str]], List[str]]:
    """
    Turn a record's amount breakdown into balanced journal lines.

    Returns:
        (items, missing_roles). Items are empty when a required account code
        is missing.
    """
    breakdown = {key: round_money(value) for key, value in record.amount_breakdown.items()}

    if record.entry_type == LedgerEntryType.FORMALIZATION:
        amount = round_money(record.amount)
        debits = [("receivable", amount)]
        credits = [("bank", amount)]
    else:
        allocated = []
        for component, role in _CREDIT_LINES:
            value = breakdown.get(component, ZERO)
            if value > ZERO:
                allocated.append((role, value))
        funding_role = "pending_balances" if record.entry_type == LedgerEntryType.PENDING_BALANCE_APPLICATION else "bank"
        funding = [(funding_role, round_money(record.amount))]
        if record.entry_type == LedgerEntryType.BATCH_VOID:
            debits, credits = allocated, funding
        else:
            debits, credits = funding, allocated

    missing = sorted({role for role, _ in debits + credits if not accounts.get(role)})
    if missing:
        return [], missing

    lines: Dict[Tuple[str, str], Decimal] = {}
    for side, entries in (("debit", debits), ("credit", credits)):
        for role, value in entries:
            key = (accounts[role], side)
            lines[key] = round_money(lines.get(key, ZERO) + value)

    items = [
        {
            "account_code": code,
            "debit": str(value) if side == "debit" else "0.00",
            "credit": str(value) if side == "credit" else "0.00",
        }
        for (code, side), value in lines.items()
    ]
    return items, []


class LedgerDispatcher:
    """
    Creates dispatch records, sends them, and retries failures.
    """

    def __init__(
        self,
        storage: StorageInterface,
        erp_client: Optional[ErpClient],
        audit_trail: AuditTrail,
        accounts: Optional[Dict[str, str]] = None,
        max_retries: int = 3,
        base_delay_minutes: int = 5,
        backoff_factor: int = 3,
        stale_pending_minutes: int = 10,
        dispatch_inline: bool = True,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.erp_client = erp_client
        self.audit_trail = audit_trail
        self.accounts = accounts or {}
        self.max_retries = max_retries
        self.base_delay_minutes = base_delay_minutes
        self.backoff_factor = backoff_factor
        self.stale_pending_minutes = stale_pending_minutes
        self.dispatch_inline = dispatch_inline
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.table_name = "ledger_dispatches"

    def _save(self, record: LedgerDispatchRecord) -> None:
        record.updated_at = self.clock()
        self.storage.save(self.table_name, record.id, record.to_dict())

    def _find(self, **filters) -> List[LedgerDispatchRecord]:
        filters = {k: (v.value if isinstance(v, Enum) else v) for k, v in filters.items()}
        return [LedgerDispatchRecord.from_dict(data) for data in self.storage.find(self.table_name, filters)]

    def has_success(self, entry_type: LedgerEntryType, reference: str,
                    exclude_id: Optional[str] = None) -> bool:
        """True when a successful dispatch already exists for the pair"""
        return any(
            record.id != exclude_id
            for record in self._find(entry_type=entry_type, reference=reference,
                                     status=DispatchStatus.SUCCESS)
        )

    def enqueue(
        self,
        entry_type: LedgerEntryType,
        reference: str,
        amount: Decimal,
        breakdown: Dict[str, str],
        credit_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> Optional[LedgerDispatchRecord]:
        """
        Create a pending dispatch record. Call inside the transaction of the
        financial event it describes.

        Returns:
            The pending record, the already open record for the same pair, or
            None when the pair was already posted successfully
        """
        if self.has_success(entry_type, reference):
            logger.warning(f"Duplicate ledger entry {entry_type.value} {reference} suppressed")
            return None
        for record in self._find(entry_type=entry_type, reference=reference):
            if record.status in (DispatchStatus.PENDING, DispatchStatus.ERROR):
                return record

        now = self.clock()
        record = LedgerDispatchRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            entry_type=entry_type,
            reference=reference,
            amount=round_money(amount),
            amount_breakdown=breakdown,
            credit_id=credit_id,
            context=context or {},
            max_retries=self.max_retries
        )
        self._save(record)
        return record

    def get_record(self, record_id: str) -> Optional[LedgerDispatchRecord]:
        data = self.storage.load(self.table_name, record_id)
        if data:
            return LedgerDispatchRecord.from_dict(data)
        return None

    def list_records(self, status: Optional[DispatchStatus] = None,
                     entry_type: Optional[LedgerEntryType] = None,
                     credit_id: Optional[str] = None) -> List[LedgerDispatchRecord]:
        filters = {}
        if status:
            filters['status'] = status
        if entry_type:
            filters['entry_type'] = entry_type
        if credit_id:
            filters['credit_id'] = credit_id
        records = self._find(**filters)
        records.sort(key=lambda r: r.created_at)
        return records

    def list_exhausted(self) -> List[LedgerDispatchRecord]:
        """Errors that will not be retried automatically; surfaced to operators"""
        return [r for r in self.list_records(status=DispatchStatus.ERROR) if r.is_exhausted]

    def _payload(self, record: LedgerDispatchRecord, items: List[Dict[str, str]]) -> Dict[str, Any]:
        context = record.context or {}
        description = f"{record.entry_type.value} {context.get('credit_reference', '')}".strip()
        return {
            "date": context.get("event_date") or record.created_at.date().isoformat(),
            "description": description,
            "reference": record.reference,
            "items": items,
        }

    def dispatch(self, record_id: str) -> LedgerDispatchRecord:
        """
        Send one pending record to the external ledger and store the outcome.
        Must not be called inside a database transaction.

        Raises:
            RecordNotFoundError: If the record does not exist
        """
        record = self.get_record(record_id)
        if not record:
            raise RecordNotFoundError(f"Dispatch record {record_id} not found")
        if record.status != DispatchStatus.PENDING:
            return record

        now = self.clock()
        if self.erp_client is None or not self.erp_client.is_configured():
            record.mark_skipped("External ledger not configured", now)
            return self._finish(record, AuditEventType.LEDGER_DISPATCH_SKIPPED)

        if self.has_success(record.entry_type, record.reference, exclude_id=record.id):
            record.mark_skipped("Duplicate of a successful dispatch", now)
            return self._finish(record, AuditEventType.LEDGER_DISPATCH_SKIPPED)

        items, missing = build_journal_items(record, self.accounts)
        if missing:
            record.mark_skipped(f"Missing account mapping: {', '.join(missing)}", now)
            return self._finish(record, AuditEventType.LEDGER_DISPATCH_SKIPPED)

        payload = self._payload(record, items)
        result = self.erp_client.create_journal_entry(payload)
        now = self.clock()
        if result.success:
            record.mark_success(result, payload, now)
            return self._finish(record, AuditEventType.LEDGER_DISPATCH_SUCCEEDED)
        if result.skipped:
            record.mark_skipped(result.error or "Skipped", now, payload)
            return self._finish(record, AuditEventType.LEDGER_DISPATCH_SKIPPED)

        record.mark_error(
            result.error or "Unknown error", now,
            http_status=result.status_code,
            payload=payload,
            base_minutes=self.base_delay_minutes,
            factor=self.backoff_factor
        )
        return self._finish(record, AuditEventType.LEDGER_DISPATCH_FAILED)

    def _finish(self, record: LedgerDispatchRecord, event_type: AuditEventType) -> LedgerDispatchRecord:
        self._save(record)
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="ledger_dispatch",
            entity_id=record.id,
            metadata={
                "entry_type": record.entry_type.value,
                "reference": record.reference,
                "status": record.status.value,
                "retry_count": record.retry_count,
                "error": record.error_message
            }
        )
        if record.status == DispatchStatus.ERROR:
            level = logging.ERROR if record.is_exhausted else logging.WARNING
            logger.log(level, f"Ledger dispatch {record.reference} failed "
                              f"(attempt {record.retry_count + 1}): {record.error_message}")
        else:
            logger.info(f"Ledger dispatch {record.reference} -> {record.status.value}")
        return record

    def dispatch_after_commit(self, record_ids: List[str]) -> None:
        """
        Send records created by a just-committed transaction. A failure here
        leaves the record for the retry sweep and never reaches the caller.
        """
        if not self.dispatch_inline:
            return
        for record_id in record_ids:
            try:
                self.dispatch(record_id)
            except Exception:
                logger.exception(f"Inline dispatch of {record_id} failed; left for the retry sweep")

    def retry_failed(self, limit: int = 10, dry_run: bool = False) -> Dict[str, Any]:
        """
        Retry sweep: attempt every record that is due.

        Args:
            limit: Maximum records to attempt in this run
            dry_run: Only report what would be retried

        Returns:
            Summary with the candidate references and outcome counts
        """
        now = self.clock()
        candidates = select_due_for_retry(
            self.list_records(),
            now,
            limit=limit,
            stale_after=timedelta(minutes=self.stale_pending_minutes)
        )
        summary = {
            "dry_run": dry_run,
            "candidates": [record.reference for record in candidates],
            "succeeded": 0,
            "failed": 0,
            "skipped": 0
        }
        if dry_run or not candidates:
            return summary

        for record in candidates:
            if record.status == DispatchStatus.ERROR:
                record.increment_retry(now)
                self._save(record)
            outcome = self.dispatch(record.id)
            if outcome.status == DispatchStatus.SUCCESS:
                summary["succeeded"] += 1
            elif outcome.status == DispatchStatus.SKIPPED:
                summary["skipped"] += 1
            else:
                summary["failed"] += 1

        logger.info(f"Ledger retry sweep: {summary['succeeded']} ok, "
                    f"{summary['failed']} failed, {summary['skipped']} skipped")
        return summary
