"""
Batch Reconciliation (Planilla) Module

Payroll deduction files from a deductor are reconciled in three steps:

    preview -> commit -> (optional) void

Files arrive as CSV text or ``.xlsx`` workbooks and share one header
detection. Preview parses the file, matches every row to the borrower's
credits and simulates the allocation without touching stored state. It returns a
confirmation token that binds the file, the processing date, the
deductor/period and the computed rows. Commit recomputes the preview under
the credits' locks, requires the same token, and applies every row in one
transaction. Void restores every touched credit from the snapshots taken at
commit time.
"""

from decimal import Decimal
from datetime import datetime, timezone, date, timedelta
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from enum import Enum
import csv
import hashlib
import io
import json
import logging
import unicodedata
import uuid
import zipfile

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from .money import ZERO, round_money, money_sum, parse_amount, to_decimal
from .storage import StorageInterface, StorageRecord, parse_date, parse_datetime
from .credits import CreditManager, Credit, Installment, PaymentSource, normalize_identity
from .payments import PaymentAllocator, unresolved
from .pending import PendingBalanceQueue, PendingBalanceOrigin
from .ledger_dispatch import LedgerDispatcher, LedgerEntryType
from .audit import AuditTrail, AuditEventType
from .actors import Actor
from .exceptions import (
    DuplicateBatchError, RecordNotFoundError, ServicingValidationError, StalePreviewError
)

logger = logging.getLogger("loansvc.planilla")


IDENTITY_HEADERS = ("cedula", "identificacion")
AMOUNT_HEADERS = ("monto", "abono")
HINT_HEADERS = ("cuota",)

EXCEL_EXTENSIONS = (".xlsx", ".xlsm", ".xls")
XLSX_SIGNATURE = b"PK\x03\x04"
XLS_SIGNATURE = b"\xd0\xcf\x11\xe0"


class RowState(Enum):
    """Preview classification of one row (or one cascaded credit line)"""
    COMPLETE = "Completo"
    PARTIAL = "Parcial"
    OVERPAYMENT = "Sobrepago"
    NOT_FOUND = "No encontrado"
    NO_PENDING_INSTALLMENTS = "Sin cuotas pendientes"


class BatchState(Enum):
    ACTIVE = "active"
    VOIDED = "voided"


@dataclass
class BatchRow:
    """One parsed line of a payroll file"""
    line_number: int
    identity: str
    amount: Decimal
    installment_hint: Optional[int] = None
    raw: Dict[str, str] = field(default_factory=dict)


@dataclass
class BatchUpload(StorageRecord):
    """A committed payroll file"""
    deductora_id: Optional[str]
    period: str
    file_name: str
    file_hash: str
    processing_date: date
    committed_at: datetime
    committed_by: Optional[str]
    total_amount: Decimal
    payment_count: int
    row_count: int
    state: BatchState = BatchState.ACTIVE
    payment_ids: List[str] = field(default_factory=list)
    pending_balance_ids: List[str] = field(default_factory=list)
    credit_ids: List[str] = field(default_factory=list)
    void_reason: Optional[str] = None
    voided_at: Optional[datetime] = None
    voided_by: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BatchUpload':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            deductora_id=data.get('deductora_id'),
            period=data['period'],
            file_name=data['file_name'],
            file_hash=data['file_hash'],
            processing_date=parse_date(data['processing_date']),
            committed_at=datetime.fromisoformat(data['committed_at']),
            committed_by=data.get('committed_by'),
            total_amount=to_decimal(data['total_amount']),
            payment_count=data['payment_count'],
            row_count=data['row_count'],
            state=BatchState(data['state']),
            payment_ids=data.get('payment_ids', []),
            pending_balance_ids=data.get('pending_balance_ids', []),
            credit_ids=data.get('credit_ids', []),
            void_reason=data.get('void_reason'),
            voided_at=parse_datetime(data.get('voided_at')),
            voided_by=data.get('voided_by')
        )


def _normalize_header(value: str) -> str:
    text = unicodedata.normalize("NFKD", value or "")
    return "".join(ch for ch in text if not unicodedata.combining(ch)).strip().lower()


def decode_content(content: Union[bytes, str]) -> str:
    if isinstance(content, str):
        return content
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return content.decode("latin-1")


def file_hash(content: Union[bytes, str]) -> str:
    raw = content.encode("utf-8") if isinstance(content, str) else content
    return hashlib.sha256(raw).hexdigest()


def sniff_delimiter(first_line: str) -> str:
    """``;`` when it is more frequent than ``,`` in the header, tab when only tabs appear"""
    semicolons, commas = first_line.count(";"), first_line.count(",")
    if semicolons > commas:
        return ";"
    if commas == 0 and "\t" in first_line:
        return "\t"
    return ","


def detect_columns(header: List[str]) -> Tuple[int, int, Optional[int]]:
    """
    Locate the identity, amount and optional installment columns.

    Raises:
        ServicingValidationError: If a required column is missing or both
            required columns resolve to the same position
    """
    normalized = [_normalize_header(cell) for cell in header]

    def find(candidates, exclude=()):
        for position, name in enumerate(normalized):
            if position in exclude:
                continue
            if any(candidate in name for candidate in candidates):
                return position
        return None

    identity_col = find(IDENTITY_HEADERS)
    amount_col = find(AMOUNT_HEADERS, exclude=(identity_col,))
    errors = []
    if identity_col is None:
        errors.append('No column named "cedula" or "identificacion"')
    if amount_col is None:
        errors.append('No column named "monto" or "abono"')
    if errors:
        raise ServicingValidationError(f"Invalid batch header {header}: {'; '.join(errors)}")
    hint_col = find(HINT_HEADERS, exclude=(identity_col, amount_col))
    return identity_col, amount_col, hint_col


def is_excel_file(content: Union[bytes, str], filename: str = "") -> bool:
    """Excel when the name says so or the bytes carry a workbook signature"""
    if (filename or "").lower().endswith(EXCEL_EXTENSIONS):
        return True
    return isinstance(content, bytes) and content[:4] in (XLSX_SIGNATURE, XLS_SIGNATURE)


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return str(round_money(Decimal(repr(value))))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value).strip()


def read_csv_table(content: Union[bytes, str]) -> List[List[str]]:
    text = decode_content(content)
    first_line = next((line for line in text.splitlines() if line.strip()), None)
    if first_line is None:
        return []
    return list(csv.reader(io.StringIO(text), delimiter=sniff_delimiter(first_line)))


def read_excel_table(content: Union[bytes, str], filename: str = "") -> List[List[str]]:
    """
    Read the active sheet of an ``.xlsx`` workbook as rows of cell text.

    Raises:
        ServicingValidationError: For text content, legacy ``.xls`` files and
            unreadable workbooks
    """
    if isinstance(content, str):
        raise ServicingValidationError(f"Excel file {filename!r} must be uploaded as binary content")
    if content[:4] == XLS_SIGNATURE or (filename or "").lower().endswith(".xls"):
        raise ServicingValidationError(f"Legacy .xls file {filename!r} is not supported; save it as .xlsx")

    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError) as e:
        raise ServicingValidationError(f"Batch file {filename!r} is not a readable Excel workbook: {e}")
    try:
        return [[_cell_text(value) for value in row] for row in workbook.active.iter_rows(values_only=True)]
    finally:
        workbook.close()


def parse_batch_file(content: Union[bytes, str], filename: str = "") -> List[BatchRow]:
    """
    Parse a payroll file (CSV or ``.xlsx``) into rows.

    The first non-empty row is the header. Rows with an empty identity or
    amount are skipped. An amount that cannot be parsed, or is not positive,
    rejects the whole file.

    Raises:
        ServicingValidationError: On an unreadable file, a bad header or amount
    """
    if is_excel_file(content, filename):
        table = read_excel_table(content, filename)
    else:
        table = read_csv_table(content)

    start = next((i for i, cells in enumerate(table) if any(cell.strip() for cell in cells)), None)
    if start is None:
        raise ServicingValidationError(f"Batch file {filename!r} is empty")

    header = table[start]
    identity_col, amount_col, hint_col = detect_columns(header)

    rows = []
    for line_number, cells in enumerate(table[start + 1:], start=start + 2):
        if not any(cell.strip() for cell in cells):
            continue
        raw_identity = cells[identity_col].strip() if identity_col < len(cells) else ""
        raw_amount = cells[amount_col].strip() if amount_col < len(cells) else ""
        identity = normalize_identity(raw_identity)
        if not identity or not raw_amount:
            continue
        try:
            amount = parse_amount(raw_amount)
        except ValueError:
            raise ServicingValidationError(f"Line {line_number}: invalid amount '{raw_amount}'")
        if amount <= ZERO:
            raise ServicingValidationError(f"Line {line_number}: amount must be positive")

        hint = None
        if hint_col is not None and hint_col < len(cells) and cells[hint_col].strip().isdigit():
            hint = int(cells[hint_col].strip())

        rows.append(BatchRow(
            line_number=line_number,
            identity=identity,
            amount=amount,
            installment_hint=hint,
            raw=dict(zip(header, cells))
        ))

    if not rows:
        raise ServicingValidationError("Batch file contains no payable rows")
    return rows


class BatchReconciler:
    """
    Preview, commit and void of payroll batches.
    """

    def __init__(
        self,
        credit_manager: CreditManager,
        allocator: PaymentAllocator,
        pending_queue: PendingBalanceQueue,
        ledger_dispatcher: LedgerDispatcher,
        audit_trail: AuditTrail,
        match_tolerance: Decimal = Decimal("1.00"),
        preview_ttl_minutes: int = 10,
        privileged_roles: Optional[List[str]] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.credits = credit_manager
        self.storage: StorageInterface = credit_manager.storage
        self.allocator = allocator
        self.pending = pending_queue
        self.ledger = ledger_dispatcher
        self.audit_trail = audit_trail
        self.match_tolerance = round_money(match_tolerance)
        self.preview_ttl = timedelta(minutes=preview_ttl_minutes)
        self.privileged_roles = privileged_roles or ["admin"]
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.batches_table = "batch_uploads"
        self.snapshots_table = "batch_snapshots"
        self.previews_table = "batch_previews"

    # Evaluation

    def _candidate_credits(self, identity: str, deductora_id: Optional[str]) -> List[Credit]:
        credits = self.credits.find_payable_credits(identity)
        if deductora_id:
            credits = [c for c in credits if c.deductora_id == deductora_id]
        return credits

    def _evaluate(self, rows: List[BatchRow], deductora_id: Optional[str]) -> List[Dict[str, Any]]:
        """
        Simulate the allocation of every row against current stored state.

        Earlier rows consume installments before later rows for the same
        borrower, exactly as the commit will.
        """
        consumed: Dict[str, Decimal] = {}
        installments: Dict[str, List[Installment]] = {}
        lines: List[Dict[str, Any]] = []

        def open_installments(credit: Credit) -> List[Installment]:
            if credit.id not in installments:
                installments[credit.id] = unresolved(self.credits.get_installments(credit.id))
            return [
                i for i in installments[credit.id]
                if round_money(i.remaining - consumed.get(i.id, ZERO)) > ZERO
            ]

        for row in rows:
            credits = self._candidate_credits(row.identity, deductora_id)
            if not credits:
                lines.append(self._unmatched_line(row, RowState.NOT_FOUND))
                continue

            targets = []
            for position, credit in enumerate(credits):
                available = open_installments(credit)
                if not available:
                    continue
                chosen = available[0]
                if position == 0 and row.installment_hint is not None:
                    hinted = [i for i in available if i.number == row.installment_hint]
                    if hinted:
                        chosen = hinted[0]
                expected = round_money(chosen.remaining - consumed.get(chosen.id, ZERO))
                targets.append((credit, chosen, expected))

            if not targets:
                lines.append(self._unmatched_line(row, RowState.NO_PENDING_INSTALLMENTS, credits[0]))
                continue

            money = row.amount
            row_lines = []
            for credit, installment, expected in targets:
                if money <= ZERO:
                    break
                allocated = min(money, expected)
                money = round_money(money - allocated)
                row_lines.append([credit, installment, expected, allocated])
            leftover = money
            if leftover > ZERO:
                row_lines[-1][3] = round_money(row_lines[-1][3] + leftover)

            for position, (credit, installment, expected, allocated) in enumerate(row_lines):
                consumed[installment.id] = round_money(
                    consumed.get(installment.id, ZERO) + min(allocated, expected)
                )
                difference = round_money(allocated - expected)
                is_last = position == len(row_lines) - 1
                if is_last and leftover > ZERO:
                    state = RowState.OVERPAYMENT
                elif abs(difference) < self.match_tolerance or difference > ZERO:
                    state = RowState.COMPLETE
                else:
                    state = RowState.PARTIAL
                lines.append({
                    "line_number": row.line_number,
                    "identity": row.identity,
                    "borrower_name": credit.borrower_name,
                    "credit_id": credit.id,
                    "credit_reference": credit.reference,
                    "installment_number": installment.number,
                    "supplied": str(row.amount) if position == 0 else None,
                    "expected": str(expected),
                    "allocated": str(allocated),
                    "difference": str(difference),
                    "overflow": str(leftover) if is_last else str(ZERO),
                    "state": state.value,
                    "cascade": position > 0
                })
        return lines

    @staticmethod
    def _unmatched_line(row: BatchRow, state: RowState, credit: Optional[Credit] = None) -> Dict[str, Any]:
        return {
            "line_number": row.line_number,
            "identity": row.identity,
            "borrower_name": credit.borrower_name if credit else None,
            "credit_id": None,
            "credit_reference": credit.reference if credit else None,
            "installment_number": None,
            "supplied": str(row.amount),
            "expected": str(ZERO),
            "allocated": str(ZERO),
            "difference": str(row.amount),
            "overflow": str(row.amount),
            "state": state.value,
            "cascade": False
        }

    @staticmethod
    def _totals(rows: List[BatchRow], lines: List[Dict[str, Any]]) -> Dict[str, Any]:
        counts = {state.value: 0 for state in RowState}
        for line in lines:
            counts[line["state"]] += 1
        supplied = money_sum(row.amount for row in rows)
        expected = money_sum(line["expected"] for line in lines)
        return {
            "rows": len(rows),
            "lines": len(lines),
            "supplied_total": str(supplied),
            "expected_total": str(expected),
            "difference_total": str(round_money(supplied - expected)),
            "states": counts
        }

    @staticmethod
    def _token(digest: str, processing_date: date, deductora_id: Optional[str],
               period: str, lines: List[Dict[str, Any]]) -> str:
        payload = json.dumps({
            "file_hash": digest,
            "processing_date": processing_date.isoformat(),
            "deductora_id": deductora_id,
            "period": period,
            "lines": lines
        }, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def find_active_duplicate(self, deductora_id: Optional[str], period: str,
                              digest: str) -> Optional[BatchUpload]:
        """
        Active batch with the same file, or for the same deductor and period.
        Files without a deductor are matched by content only.
        """
        for batch in self.list_batches(state=BatchState.ACTIVE):
            if batch.file_hash == digest:
                return batch
            if deductora_id and batch.deductora_id == deductora_id and batch.period == period:
                return batch
        return None

    # Preview

    def preview(
        self,
        content: Union[bytes, str],
        file_name: str = "",
        processing_date: Optional[date] = None,
        deductora_id: Optional[str] = None,
        period: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Parse and classify a payroll file without mutating credits.

        Returns:
            dict with token, expires_at, rows (per credit line), totals and
            ``duplicate_of`` when an active batch already covers the same
            deductor and period
        """
        processing_date = processing_date or date.today()
        period = period or processing_date.strftime("%Y-%m")
        rows = parse_batch_file(content, file_name)
        digest = file_hash(content)
        lines = self._evaluate(rows, deductora_id)
        token = self._token(digest, processing_date, deductora_id, period, lines)
        duplicate = self.find_active_duplicate(deductora_id, period, digest)

        now = self.clock()
        expires_at = now + self.preview_ttl
        self.storage.save(self.previews_table, token, {
            "id": token,
            "file_hash": digest,
            "file_name": file_name,
            "processing_date": processing_date.isoformat(),
            "deductora_id": deductora_id,
            "period": period,
            "created_at": now.isoformat(),
            "expires_at": expires_at.isoformat()
        })
        self.audit_trail.log_event(
            event_type=AuditEventType.BATCH_PREVIEWED,
            entity_type="batch",
            entity_id=token,
            metadata={"file_name": file_name, "rows": len(rows), "deductora_id": deductora_id, "period": period},
            actor_id=actor_id
        )
        logger.info(f"Previewed batch {file_name} with {len(rows)} rows for period {period}")

        return {
            "token": token,
            "expires_at": expires_at.isoformat(),
            "file_name": file_name,
            "file_hash": digest,
            "processing_date": processing_date.isoformat(),
            "deductora_id": deductora_id,
            "period": period,
            "duplicate_of": duplicate.id if duplicate else None,
            "rows": lines,
            "totals": self._totals(rows, lines)
        }

    # Commit

    def commit(
        self,
        content: Union[bytes, str],
        token: str,
        file_name: str = "",
        processing_date: Optional[date] = None,
        deductora_id: Optional[str] = None,
        period: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> BatchUpload:
        """
        Apply a previewed payroll file, all or nothing.

        Raises:
            StalePreviewError: If the token is unknown, expired, or the
                recomputed preview differs
            DuplicateBatchError: If an active batch covers the same deductor
                and period, or the same file
        """
        processing_date = processing_date or date.today()
        period = period or processing_date.strftime("%Y-%m")
        rows = parse_batch_file(content, file_name)
        digest = file_hash(content)

        stored = self.storage.load(self.previews_table, token)
        if not stored:
            raise StalePreviewError("Unknown preview token; preview the file again")
        if datetime.fromisoformat(stored["expires_at"]) < self.clock():
            raise StalePreviewError("Preview expired; preview the file again")
        if stored["file_hash"] != digest:
            raise StalePreviewError("File differs from the previewed file")

        duplicate = self.find_active_duplicate(deductora_id, period, digest)
        if duplicate:
            raise DuplicateBatchError(
                f"Batch {duplicate.id} is already active for deductor {deductora_id} period {period}"
            )

        credit_ids = sorted({
            credit.id
            for row in rows
            for credit in self._candidate_credits(row.identity, deductora_id)
        })

        dispatch_ids: List[str] = []
        with self.credits.credit_transaction(*credit_ids):
            lines = self._evaluate(rows, deductora_id)
            if self._token(digest, processing_date, deductora_id, period, lines) != token:
                raise StalePreviewError("Credit state changed since the preview; preview the file again")
            touched = sorted({line["credit_id"] for line in lines if line["credit_id"]})
            if not set(touched) <= set(credit_ids):
                raise StalePreviewError("Borrower credits changed since the preview; preview the file again")

            now = datetime.now(timezone.utc)
            batch_id = str(uuid.uuid4())
            for credit_id in touched:
                self.storage.save(self.snapshots_table, f"{batch_id}:{credit_id}", {
                    "id": f"{batch_id}:{credit_id}",
                    "batch_id": batch_id,
                    "credit_id": credit_id,
                    "snapshot": self.credits.snapshot_credit(credit_id)
                })

            payment_ids, pending_ids = [], []
            for line in lines:
                if line["credit_id"] is None:
                    balance = self.pending.create_balance(
                        borrower_identity=line["identity"],
                        amount=to_decimal(line["overflow"]),
                        origin=PendingBalanceOrigin.BATCH_UNMATCHED,
                        origin_date=processing_date,
                        origin_reference=f"{batch_id}:{line['line_number']}",
                        batch_id=batch_id,
                        actor_id=actor_id
                    )
                    pending_ids.append(balance.id)
                    continue

                credit = self.credits.require_payable(line["credit_id"])
                payment, ids = self.allocator.allocate(
                    credit, to_decimal(line["allocated"]), processing_date, PaymentSource.BATCH,
                    target_installments=[line["installment_number"]],
                    batch_id=batch_id,
                    actor_id=actor_id,
                    reference=f"{file_name}:{line['line_number']}"
                )
                payment_ids.append(payment.id)
                if payment.pending_balance_id:
                    pending_ids.append(payment.pending_balance_id)
                dispatch_ids.extend(ids)

            batch = BatchUpload(
                id=batch_id,
                created_at=now,
                updated_at=now,
                deductora_id=deductora_id,
                period=period,
                file_name=file_name,
                file_hash=digest,
                processing_date=processing_date,
                committed_at=now,
                committed_by=actor_id,
                total_amount=money_sum(row.amount for row in rows),
                payment_count=len(payment_ids),
                row_count=len(rows),
                payment_ids=payment_ids,
                pending_balance_ids=pending_ids,
                credit_ids=touched
            )
            self.storage.save(self.batches_table, batch.id, batch.to_dict())
            self.storage.delete(self.previews_table, token)
            self.audit_trail.log_event(
                event_type=AuditEventType.BATCH_COMMITTED,
                entity_type="batch",
                entity_id=batch.id,
                metadata={
                    "file_name": file_name,
                    "deductora_id": deductora_id,
                    "period": period,
                    "total_amount": batch.total_amount,
                    "payments": len(payment_ids),
                    "pending_balances": len(pending_ids)
                },
                actor_id=actor_id
            )

        self.ledger.dispatch_after_commit(dispatch_ids)
        logger.info(f"Committed batch {batch.id}: {batch.payment_count} payments, "
                    f"{len(batch.pending_balance_ids)} pending balances, total {batch.total_amount}")
        return batch

    # Void

    def void(self, batch_id: str, reason: str, actor: Actor) -> BatchUpload:
        """
        Reverse a committed batch.

        Deletes exactly the batch's payments and pending balances and
        restores every touched credit and installment to its state before
        the commit. The batch's pending balances are locked alongside its
        credits, so none can be applied elsewhere while the void runs.

        Raises:
            PermissionDeniedError: If the actor is not privileged
            ServicingValidationError: If the reason is empty, the batch is
                already voided, one of its pending balances was applied, or a
                touched credit received later payments
        """
        actor.require_privilege(self.privileged_roles, "void batches")
        if not reason or not reason.strip():
            raise ServicingValidationError("A reason is required to void a batch")

        batch = self.require_batch(batch_id)
        dispatch_ids: List[str] = []
        lock_ids = list(batch.credit_ids) + [f"pending:{bid}" for bid in batch.pending_balance_ids]
        with self.credits.credit_transaction(*lock_ids):
            batch = self.require_batch(batch_id)
            if batch.state == BatchState.VOIDED:
                raise ServicingValidationError(f"Batch {batch_id} is already voided")

            for balance_id in batch.pending_balance_ids:
                balance = self.pending.get(balance_id)
                if balance and balance.applied_amount > ZERO:
                    raise ServicingValidationError(
                        f"Pending balance {balance_id} from batch {batch_id} was already applied"
                    )

            own_payments = set(batch.payment_ids)
            for credit_id in batch.credit_ids:
                later = [
                    p for p in self.credits.get_payments(credit_id)
                    if p.id not in own_payments and p.created_at > batch.committed_at
                ]
                if later:
                    raise ServicingValidationError(
                        f"Credit {credit_id} has payments recorded after batch {batch_id}; void them first"
                    )

            for payment_id in batch.payment_ids:
                payment = self.credits.get_payment(payment_id)
                if payment is None:
                    continue
                self.credits.delete_payment(payment_id)
                record = self.ledger.enqueue(
                    entry_type=LedgerEntryType.BATCH_VOID,
                    reference=f"VOID-{batch_id}-{payment_id}",
                    amount=payment.amount,
                    breakdown=payment.breakdown,
                    credit_id=payment.credit_id,
                    context={"batch_id": batch_id, "reason": reason, "event_date": date.today().isoformat()}
                )
                if record:
                    dispatch_ids.append(record.id)

            for balance_id in batch.pending_balance_ids:
                self.pending.delete(balance_id)

            for credit_id in batch.credit_ids:
                data = self.storage.load(self.snapshots_table, f"{batch_id}:{credit_id}")
                self.credits.restore_snapshot(data["snapshot"])

            now = datetime.now(timezone.utc)
            batch.state = BatchState.VOIDED
            batch.void_reason = reason.strip()
            batch.voided_at = now
            batch.voided_by = actor.actor_id
            batch.updated_at = now
            self.storage.save(self.batches_table, batch.id, batch.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.BATCH_VOIDED,
                entity_type="batch",
                entity_id=batch.id,
                metadata={
                    "reason": batch.void_reason,
                    "payments_removed": len(batch.payment_ids),
                    "pending_balances_removed": len(batch.pending_balance_ids),
                    "credits_restored": batch.credit_ids
                },
                actor_id=actor.actor_id
            )

        self.ledger.dispatch_after_commit(dispatch_ids)
        logger.warning(f"Batch {batch_id} voided by {actor.actor_id}: {batch.void_reason}")
        return batch

    # Queries

    def get_batch(self, batch_id: str) -> Optional[BatchUpload]:
        data = self.storage.load(self.batches_table, batch_id)
        if data:
            return BatchUpload.from_dict(data)
        return None

    def require_batch(self, batch_id: str) -> BatchUpload:
        batch = self.get_batch(batch_id)
        if not batch:
            raise RecordNotFoundError(f"Batch {batch_id} not found")
        return batch

    def list_batches(self, deductora_id: Optional[str] = None,
                     state: Optional[BatchState] = None) -> List[BatchUpload]:
        filters = {}
        if deductora_id:
            filters['deductora_id'] = deductora_id
        if state:
            filters['state'] = state.value
        batches = [BatchUpload.from_dict(data) for data in self.storage.find(self.batches_table, filters)]
        batches.sort(key=lambda b: b.committed_at)
        return batches
