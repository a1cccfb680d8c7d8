"""
Loan Servicing API Application Factory
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import dependencies
from .credits import router as credits_router
from .batches import router as batches_router
from .pending import router as pending_router
from .ledger import router as ledger_router
from .admin import router as admin_router
from ..audit import AuditEventType
from ..config import get_config
from ..logging_config import setup_logging

logger = logging.getLogger("loansvc.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging and run the background sweeps while the app is up"""
    cfg = get_config()
    setup_logging(cfg.log_level, cfg.log_format, cfg.log_file)

    system = None
    if cfg.sweeps_enabled:
        system = dependencies.get_servicing_system()
        system.audit_trail.log_event(
            event_type=AuditEventType.SYSTEM_START,
            entity_type="system",
            entity_id="api",
            metadata={"sweep_interval_seconds": cfg.sweep_interval_seconds}
        )
        system.sweep_worker.start()
    logger.info("Loan servicing API started")

    yield

    if system is not None:
        system.sweep_worker.stop()
    logger.info("Loan servicing API stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Loan Servicing API",
        description="Loan servicing and payroll payment reconciliation engine",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(credits_router, prefix="/credits", tags=["Credits"])
    app.include_router(batches_router, prefix="/batches", tags=["Batches"])
    app.include_router(pending_router, prefix="/pending-balances", tags=["Pending Balances"])
    app.include_router(ledger_router, prefix="/ledger", tags=["Ledger"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_servicing_api",
            "version": "1.0.0"
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Loan Servicing API",
            "version": "1.0.0",
            "description": "Loan servicing and payroll payment reconciliation engine",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "credits": "/credits",
                "batches": "/batches",
                "pending-balances": "/pending-balances",
                "ledger": "/ledger",
                "admin": "/admin",
            }
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "loan_servicing.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
