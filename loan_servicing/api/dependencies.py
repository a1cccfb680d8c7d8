"""
Servicing system wiring and request dependencies
"""

from decimal import Decimal
from typing import Optional

from fastapi import Header, HTTPException

from ..storage import InMemoryStorage, SQLiteStorage, StorageInterface
from ..audit import AuditTrail
from ..credits import CreditManager
from ..schedule import ScheduleGenerator
from ..pending import PendingBalanceQueue
from ..payments import PaymentAllocator
from ..arrears import ArrearsAccrual
from ..extraordinary import ExtraordinaryPaymentProcessor
from ..payoff import EarlyPayoffCalculator
from ..pending_resolution import PendingBalanceResolver
from ..planilla import BatchReconciler
from ..ledger_dispatch import LedgerDispatcher
from ..erp_client import ErpClient
from ..workers import SweepWorker
from ..actors import Actor
from ..config import ServicingConfig, get_config
from ..exceptions import (
    CreditNotFoundError, DuplicateBatchError, PermissionDeniedError, RecordNotFoundError,
    ScheduleIntegrityError, StalePreviewError
)


class ServicingSystem:
    """Loan servicing engine with all components initialized"""

    def __init__(
        self,
        use_sqlite: Optional[bool] = None,
        config: Optional[ServicingConfig] = None,
        storage: Optional[StorageInterface] = None,
        erp_client: Optional[ErpClient] = None
    ):
        self.config = config or get_config()
        cfg = self.config

        # Initialize storage
        if storage is None:
            if cfg.use_sqlite if use_sqlite is None else use_sqlite:
                storage = SQLiteStorage(cfg.database_path)
            else:
                storage = InMemoryStorage()
        self.storage = storage

        self.audit_trail = AuditTrail(self.storage)
        self.erp_client = erp_client if erp_client is not None else self._create_erp_client()
        self.ledger_dispatcher = LedgerDispatcher(
            self.storage, self.erp_client, self.audit_trail,
            accounts=cfg.account_codes(),
            max_retries=cfg.dispatch_max_retries,
            base_delay_minutes=cfg.retry_base_delay_minutes,
            backoff_factor=cfg.retry_backoff_factor,
            stale_pending_minutes=cfg.stale_pending_minutes,
            dispatch_inline=cfg.dispatch_inline
        )

        self.credit_manager = CreditManager(self.storage, self.audit_trail)
        self.schedule_generator = ScheduleGenerator(self.credit_manager, self.ledger_dispatcher, self.audit_trail)
        self.pending_queue = PendingBalanceQueue(self.storage, self.audit_trail)
        self.allocator = PaymentAllocator(
            self.credit_manager, self.pending_queue, self.ledger_dispatcher, self.audit_trail
        )
        self.arrears = ArrearsAccrual(self.credit_manager, self.audit_trail, Decimal(cfg.max_annual_rate))
        self.extraordinary = ExtraordinaryPaymentProcessor(
            self.credit_manager, self.ledger_dispatcher, self.audit_trail,
            penalty_threshold=cfg.payoff_penalty_threshold,
            penalty_installments=cfg.penalty_installments,
            penalty_enabled=cfg.extraordinary_penalty_enabled
        )
        self.payoff = EarlyPayoffCalculator(
            self.credit_manager, self.allocator, self.audit_trail,
            penalty_threshold=cfg.payoff_penalty_threshold,
            penalty_installments=cfg.penalty_installments
        )
        self.pending_resolver = PendingBalanceResolver(
            self.pending_queue, self.credit_manager, self.allocator, self.extraordinary
        )
        self.batches = BatchReconciler(
            self.credit_manager, self.allocator, self.pending_queue, self.ledger_dispatcher,
            self.audit_trail,
            match_tolerance=Decimal(cfg.batch_match_tolerance),
            preview_ttl_minutes=cfg.batch_preview_ttl_minutes,
            privileged_roles=sorted(cfg.privileged_role_set())
        )
        self.sweep_worker = SweepWorker(
            self.arrears, self.ledger_dispatcher,
            interval_seconds=cfg.sweep_interval_seconds,
            retry_limit=cfg.retry_batch_limit
        )

    def _create_erp_client(self) -> Optional[ErpClient]:
        """Create the ERP client; None leaves every dispatch skipped"""
        cfg = self.config
        if not cfg.erp_url:
            return None
        return ErpClient(
            base_url=cfg.erp_url,
            email=cfg.erp_email,
            password=cfg.erp_password,
            timeout=cfg.erp_timeout
        )

    def close(self) -> None:
        self.sweep_worker.stop()
        if self.erp_client is not None:
            self.erp_client.close()
        self.storage.close()


# Global servicing system instance, created on first use
servicing_system: Optional[ServicingSystem] = None


def get_servicing_system() -> ServicingSystem:
    global servicing_system
    if servicing_system is None:
        servicing_system = ServicingSystem()
    return servicing_system


def get_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None)
) -> Actor:
    """Acting operator, as asserted by the authenticating gateway"""
    return Actor(actor_id=x_actor_id or "anonymous", role=x_actor_role)


def to_http_error(error: Exception) -> HTTPException:
    """Map an engine exception to its HTTP status"""
    if isinstance(error, (CreditNotFoundError, RecordNotFoundError)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, PermissionDeniedError):
        return HTTPException(status_code=403, detail=str(error))
    if isinstance(error, (DuplicateBatchError, StalePreviewError)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, ScheduleIntegrityError):
        return HTTPException(status_code=500, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))
