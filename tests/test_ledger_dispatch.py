"""
Test suite for ledger dispatch

Outbox records, post-commit dispatch, retry backoff and journal line
construction.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timedelta, timezone

from loan_servicing.storage import InMemoryStorage
from loan_servicing.audit import AuditTrail, AuditEventType
from loan_servicing.erp_client import MockErpClient, validate_items
from loan_servicing.ledger_dispatch import (
    DispatchStatus, LedgerDispatcher, LedgerDispatchRecord, LedgerEntryType,
    build_journal_items, retry_delay, select_due_for_retry
)
from loan_servicing.exceptions import InvalidStateTransitionError, RecordNotFoundError


ACCOUNTS = {
    "bank": "1100",
    "receivable": "1300",
    "interest_income": "4100",
    "moratory_income": "4200",
    "policy_payable": "2300",
    "penalty_income": "4300",
    "pending_balances": "2400",
}

BREAKDOWN = {
    "moratory_interest": "5.00",
    "overdue_interest": "0.00",
    "current_interest": "20.00",
    "principal": "100.00",
    "policy": "0.00",
    "penalty": "0.00",
    "overflow": "0.00",
}


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class TestRetryDelay:
    """Test the backoff schedule"""

    def test_backoff(self):
        assert retry_delay(0) == timedelta(minutes=5)
        assert retry_delay(1) == timedelta(minutes=15)
        assert retry_delay(2) == timedelta(minutes=45)


class TestLedgerDispatcher:
    """Test dispatching and retrying"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.clock = FakeClock()
        self.erp = MockErpClient()
        self.dispatcher = LedgerDispatcher(
            self.storage, self.erp, self.audit, accounts=ACCOUNTS, clock=self.clock
        )

    def enqueue(self, reference="PAY-1", entry_type=LedgerEntryType.TELLER_PAYMENT, dispatcher=None):
        return (dispatcher or self.dispatcher).enqueue(
            entry_type=entry_type,
            reference=reference,
            amount=Decimal("125.00"),
            breakdown=BREAKDOWN,
            credit_id="credit-1",
            context={"credit_reference": "CR-1", "event_date": "2024-03-01"}
        )

    def test_successful_dispatch(self):
        record = self.enqueue()
        assert record.status == DispatchStatus.PENDING

        result = self.dispatcher.dispatch(record.id)

        assert result.status == DispatchStatus.SUCCESS
        assert result.external_id == "JE-1"
        assert result.http_status == 201
        assert result.payload_sent["reference"] == "PAY-1"
        assert result.payload_sent["date"] == "2024-03-01"
        assert validate_items(self.erp.sent[0]["items"]) is None
        assert self.dispatcher.get_record(record.id).status == DispatchStatus.SUCCESS
        assert self.audit.get_events_by_type(AuditEventType.LEDGER_DISPATCH_SUCCEEDED)

    def test_dispatch_is_noop_once_finished(self):
        record = self.enqueue()
        self.dispatcher.dispatch(record.id)
        self.dispatcher.dispatch(record.id)
        assert len(self.erp.sent) == 1

    def test_unknown_record(self):
        with pytest.raises(RecordNotFoundError):
            self.dispatcher.dispatch("missing")

    def test_skipped_without_erp(self):
        dispatcher = LedgerDispatcher(self.storage, None, self.audit, accounts=ACCOUNTS, clock=self.clock)
        record = self.enqueue(dispatcher=dispatcher)

        result = dispatcher.dispatch(record.id)

        assert result.status == DispatchStatus.SKIPPED
        assert "not configured" in result.error_message

    def test_skipped_with_missing_accounts(self):
        dispatcher = LedgerDispatcher(self.storage, self.erp, self.audit, accounts={"bank": "1100"}, clock=self.clock)
        record = self.enqueue(dispatcher=dispatcher)

        result = dispatcher.dispatch(record.id)

        assert result.status == DispatchStatus.SKIPPED
        assert "receivable" in result.error_message
        assert self.erp.sent == []

    def test_failure_schedules_backoff_until_exhausted(self):
        self.erp.fail_with = 500
        record = self.enqueue()
        started = self.clock.now

        failed = self.dispatcher.dispatch(record.id)
        assert failed.status == DispatchStatus.ERROR
        assert failed.http_status == 500
        assert failed.next_retry_at == started + timedelta(minutes=5)

        self.clock.advance(minutes=4)
        assert self.dispatcher.retry_failed()["candidates"] == []

        expected_waits = [15, 45]
        self.clock.advance(minutes=1)
        for attempt, wait in enumerate(expected_waits, start=1):
            summary = self.dispatcher.retry_failed()
            assert summary["failed"] == 1
            stored = self.dispatcher.get_record(record.id)
            assert stored.retry_count == attempt
            assert stored.next_retry_at == self.clock.now + timedelta(minutes=wait)
            self.clock.advance(minutes=wait)

        summary = self.dispatcher.retry_failed()
        stored = self.dispatcher.get_record(record.id)
        assert summary["failed"] == 1
        assert stored.retry_count == 3
        assert stored.next_retry_at is None
        assert stored.is_exhausted
        assert [r.id for r in self.dispatcher.list_exhausted()] == [record.id]

        self.clock.advance(days=1)
        assert self.dispatcher.retry_failed()["candidates"] == []

    def test_retry_recovers(self):
        self.erp.fail_with = 503
        record = self.enqueue()
        self.dispatcher.dispatch(record.id)

        self.erp.fail_with = None
        self.clock.advance(minutes=5)
        summary = self.dispatcher.retry_failed()

        stored = self.dispatcher.get_record(record.id)
        assert summary["succeeded"] == 1
        assert stored.status == DispatchStatus.SUCCESS
        assert stored.retry_count == 1
        assert stored.last_retry_at == self.clock.now

    def test_dry_run_changes_nothing(self):
        self.erp.fail_with = 500
        record = self.enqueue()
        self.dispatcher.dispatch(record.id)
        self.clock.advance(minutes=10)

        summary = self.dispatcher.retry_failed(dry_run=True)

        assert summary["dry_run"] is True
        assert summary["candidates"] == ["PAY-1"]
        stored = self.dispatcher.get_record(record.id)
        assert stored.status == DispatchStatus.ERROR
        assert stored.retry_count == 0

    def test_duplicate_suppressed(self):
        record = self.enqueue()
        assert self.enqueue().id == record.id

        self.dispatcher.dispatch(record.id)

        assert self.enqueue() is None
        assert len(self.dispatcher.list_records(entry_type=LedgerEntryType.TELLER_PAYMENT)) == 1

    def test_same_reference_other_type_is_separate(self):
        first = self.enqueue()
        second = self.enqueue(entry_type=LedgerEntryType.BATCH_PAYMENT)
        assert first.id != second.id

    def test_stale_pending_picked_up(self):
        dispatcher = LedgerDispatcher(
            self.storage, self.erp, self.audit, accounts=ACCOUNTS,
            dispatch_inline=False, clock=self.clock
        )
        record = self.enqueue(dispatcher=dispatcher)

        dispatcher.dispatch_after_commit([record.id])
        assert dispatcher.get_record(record.id).status == DispatchStatus.PENDING

        self.clock.advance(minutes=5)
        assert dispatcher.retry_failed()["candidates"] == []

        self.clock.advance(minutes=6)
        summary = dispatcher.retry_failed()
        assert summary["succeeded"] == 1
        assert dispatcher.get_record(record.id).status == DispatchStatus.SUCCESS

    def test_dispatch_after_commit_contains_errors(self):
        self.dispatcher.dispatch_after_commit(["missing"])

    def test_retry_limit(self):
        self.erp.fail_with = 500
        for n in range(3):
            self.dispatcher.dispatch(self.enqueue(reference=f"PAY-{n}").id)
        self.clock.advance(minutes=5)

        summary = self.dispatcher.retry_failed(limit=2)
        assert len(summary["candidates"]) == 2


class TestDispatchRecord:
    """Test record state rules"""

    def make_record(self, **kwargs):
        now = datetime(2024, 3, 1, tzinfo=timezone.utc)
        return LedgerDispatchRecord(
            id="r-1", created_at=now, updated_at=now,
            entry_type=LedgerEntryType.TELLER_PAYMENT, reference="PAY-1",
            amount=Decimal("125.00"), amount_breakdown=BREAKDOWN, **kwargs
        )

    def test_finished_records_cannot_move(self):
        record = self.make_record(status=DispatchStatus.SUCCESS)
        with pytest.raises(InvalidStateTransitionError):
            record.transition_to(DispatchStatus.PENDING)

    def test_round_trip(self):
        record = self.make_record(status=DispatchStatus.ERROR, retry_count=2,
                                  next_retry_at=datetime(2024, 3, 1, 1, tzinfo=timezone.utc))
        restored = LedgerDispatchRecord.from_dict(record.to_dict())
        assert restored.status == DispatchStatus.ERROR
        assert restored.next_retry_at == record.next_retry_at
        assert restored.amount == Decimal("125.00")

    def test_select_due_for_retry(self):
        now = datetime(2024, 3, 1, 12, tzinfo=timezone.utc)
        due = self.make_record(status=DispatchStatus.ERROR, next_retry_at=now - timedelta(minutes=1))
        later = self.make_record(status=DispatchStatus.ERROR, next_retry_at=now + timedelta(minutes=1))
        spent = self.make_record(status=DispatchStatus.ERROR, retry_count=3, next_retry_at=None)

        assert select_due_for_retry([due, later, spent], now) == [due]


class TestJournalItems:
    """Test journal line construction"""

    def make_record(self, entry_type, amount="125.00", breakdown=None):
        now = datetime(2024, 3, 1, tzinfo=timezone.utc)
        return LedgerDispatchRecord(
            id="r-1", created_at=now, updated_at=now, entry_type=entry_type,
            reference="X-1", amount=Decimal(amount), amount_breakdown=breakdown or BREAKDOWN
        )

    def test_payment_lines_balance(self):
        items, missing = build_journal_items(self.make_record(LedgerEntryType.TELLER_PAYMENT), ACCOUNTS)

        assert missing == []
        assert validate_items(items) is None
        assert {"account_code": "1100", "debit": "125.00", "credit": "0.00"} in items
        assert {"account_code": "1300", "debit": "0.00", "credit": "100.00"} in items
        assert {"account_code": "4100", "debit": "0.00", "credit": "20.00"} in items
        assert {"account_code": "4200", "debit": "0.00", "credit": "5.00"} in items

    def test_pending_application_funded_from_pending_account(self):
        items, _ = build_journal_items(self.make_record(LedgerEntryType.PENDING_BALANCE_APPLICATION), ACCOUNTS)
        assert {"account_code": "2400", "debit": "125.00", "credit": "0.00"} in items

    def test_void_reverses_sides(self):
        items, _ = build_journal_items(self.make_record(LedgerEntryType.BATCH_VOID), ACCOUNTS)
        assert {"account_code": "1100", "debit": "0.00", "credit": "125.00"} in items
        assert {"account_code": "1300", "debit": "100.00", "credit": "0.00"} in items

    def test_formalization(self):
        record = self.make_record(LedgerEntryType.FORMALIZATION, amount="12000", breakdown={})
        items, _ = build_journal_items(record, ACCOUNTS)
        assert items == [
            {"account_code": "1300", "debit": "12000.00", "credit": "0.00"},
            {"account_code": "1100", "debit": "0.00", "credit": "12000.00"},
        ]

    def test_missing_roles_reported(self):
        items, missing = build_journal_items(self.make_record(LedgerEntryType.TELLER_PAYMENT), {"bank": "1100"})
        assert items == []
        assert missing == ["interest_income", "moratory_income", "receivable"]
