"""
Administrative endpoints: sweeps and audit
"""

import logging
from fastapi import APIRouter, Depends

from .dependencies import ServicingSystem, get_servicing_system, get_actor, to_http_error
from .schemas import ArrearsSweepRequest, optional_date
from ..actors import Actor
from ..audit import AuditEventType
from ..logging_config import log_action

logger = logging.getLogger("loansvc.api")

router = APIRouter()


@router.post("/arrears-sweep")
def run_arrears_sweep(
    request: ArrearsSweepRequest,
    system: ServicingSystem = Depends(get_servicing_system),
    actor: Actor = Depends(get_actor)
):
    """Accrue arrears on every payable credit"""
    try:
        as_of = optional_date(request.as_of)
    except ValueError as e:
        raise to_http_error(e)
    summary = system.arrears.run_sweep(as_of)
    log_action(logger, "info", "Arrears sweep run", actor_id=actor.actor_id,
               action="arrears_sweep", extra={"credits_updated": summary["credits_updated"]})
    return summary


@router.get("/sweeps")
def get_sweep_status(system: ServicingSystem = Depends(get_servicing_system)):
    """Background worker state and the outcome of its last run"""
    return {
        "running": system.sweep_worker.is_running(),
        "interval_seconds": system.sweep_worker.interval_seconds,
        "last_run": system.sweep_worker.last_run
    }


@router.get("/audit/verify")
def verify_audit_integrity(system: ServicingSystem = Depends(get_servicing_system)):
    """Verify the audit hash chain"""
    result = system.audit_trail.verify_integrity()
    system.audit_trail.log_event(
        event_type=AuditEventType.AUDIT_INTEGRITY_CHECK,
        entity_type="system",
        entity_id="audit",
        metadata={"valid": result["valid"], "total_events": result["total_events"]}
    )
    return result


@router.get("/audit/{entity_type}/{entity_id}")
def get_audit_events(
    entity_type: str,
    entity_id: str,
    limit: int = 100,
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Audit events of one entity in chain order"""
    events = system.audit_trail.get_events_for_entity(entity_type, entity_id, limit=limit)
    return {"events": [e.to_dict() for e in events]}
