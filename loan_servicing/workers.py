"""
Background sweeps: arrears accrual and ledger dispatch retry on a daemon
thread. Both sweeps are driven by stored state, so stopping and restarting
the worker never applies anything twice.
"""

import logging
import threading
from datetime import date
from typing import Any, Callable, Dict, Optional

from .arrears import ArrearsAccrual
from .ledger_dispatch import LedgerDispatcher

logger = logging.getLogger("loansvc.workers")


class SweepWorker:
    """Runs the periodic sweeps until stopped"""

    def __init__(
        self,
        arrears: ArrearsAccrual,
        ledger_dispatcher: LedgerDispatcher,
        interval_seconds: float = 3600,
        retry_limit: int = 10,
        today: Optional[Callable[[], date]] = None
    ):
        self.arrears = arrears
        self.ledger = ledger_dispatcher
        self.interval_seconds = interval_seconds
        self.retry_limit = retry_limit
        self.today = today or date.today
        self.running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_run: Dict[str, Any] = {}

    def run_once(self) -> Dict[str, Any]:
        """Run both sweeps once; a failing sweep does not stop the other"""
        result: Dict[str, Any] = {}
        try:
            result["arrears"] = self.arrears.run_sweep(self.today())
        except Exception as e:
            logger.exception("Arrears sweep failed")
            result["arrears"] = {"error": str(e)}
        try:
            result["ledger_retry"] = self.ledger.retry_failed(limit=self.retry_limit)
        except Exception as e:
            logger.exception("Ledger retry sweep failed")
            result["ledger_retry"] = {"error": str(e)}
        self.last_run = result
        return result

    def _loop(self) -> None:
        while self.running:
            self.run_once()
            if self._stop_event.wait(self.interval_seconds):
                break

    def start(self) -> None:
        """Start the sweep thread"""
        if self.running:
            return
        self.running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="loansvc-sweeps")
        self._thread.daemon = True
        self._thread.start()
        logger.info(f"Sweep worker started (interval {self.interval_seconds}s)")

    def stop(self) -> None:
        """Stop the sweep thread"""
        self.running = False
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None
        logger.info("Sweep worker stopped")

    def is_running(self) -> bool:
        return self.running
