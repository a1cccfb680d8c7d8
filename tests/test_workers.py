"""
Tests for the background sweep worker
"""

import time
from decimal import Decimal
from datetime import date
from unittest.mock import Mock

from loan_servicing.storage import InMemoryStorage
from loan_servicing.audit import AuditTrail
from loan_servicing.credits import CreditManager, InstallmentState
from loan_servicing.ledger_dispatch import LedgerDispatcher
from loan_servicing.erp_client import MockErpClient
from loan_servicing.schedule import ScheduleGenerator
from loan_servicing.arrears import ArrearsAccrual
from loan_servicing.workers import SweepWorker


class TestSweepWorker:
    """Test the periodic sweeps"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.ledger = LedgerDispatcher(
            self.storage, MockErpClient(), self.audit,
            accounts={"bank": "1100", "receivable": "1300"}
        )
        self.credits = CreditManager(self.storage, self.audit)
        self.arrears = ArrearsAccrual(self.credits, self.audit, Decimal("33.5"))
        generator = ScheduleGenerator(self.credits, self.ledger, self.audit)
        self.credit = self.credits.register_credit("1", Decimal("1200"), Decimal("24"), 6, date(2024, 1, 15))
        generator.generate_schedule(self.credit.id)

        self.worker = SweepWorker(
            self.arrears, self.ledger, interval_seconds=0.05, today=lambda: date(2024, 3, 1)
        )

    def teardown_method(self):
        self.worker.stop()

    def test_run_once(self):
        result = self.worker.run_once()

        assert result["arrears"]["installments_updated"] == 1
        assert result["ledger_retry"]["candidates"] == []
        assert self.worker.last_run == result
        assert self.credits.get_installments(self.credit.id)[0].state == InstallmentState.ARREARS

    def test_failing_sweep_does_not_stop_other(self):
        ledger = Mock()
        ledger.retry_failed.return_value = {"succeeded": 0}
        arrears = Mock()
        arrears.run_sweep.side_effect = RuntimeError("database unavailable")
        worker = SweepWorker(arrears, ledger, today=lambda: date(2024, 3, 1))

        result = worker.run_once()

        assert result["arrears"] == {"error": "database unavailable"}
        assert result["ledger_retry"] == {"succeeded": 0}
        ledger.retry_failed.assert_called_once_with(limit=10)

    def test_start_and_stop(self):
        self.worker.start()
        assert self.worker.is_running()

        deadline = time.time() + 2
        while not self.worker.last_run and time.time() < deadline:
            time.sleep(0.01)

        self.worker.stop()
        assert not self.worker.is_running()
        assert "arrears" in self.worker.last_run

    def test_start_twice_is_harmless(self):
        self.worker.start()
        thread = self.worker._thread
        self.worker.start()
        assert self.worker._thread is thread
