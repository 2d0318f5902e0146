"""Security operations: alerts, alert rules, security events and the audit chain."""
import hmac
import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.orm import Session

from ..auth import PermissionChecker, Principal
from ..config import settings
from ..database import get_db
from ..domain_errors import AuthenticationRequired, ValidationError
from ..schemas import (
    AlertRuleResponse,
    AlertRuleToggleRequest,
    AlertRunResponse,
    AuditLogEntryResponse,
    ChainVerificationResponse,
    SecurityAlertResponse,
    SecurityEventResponse,
)
from ..security import get_client_ip, get_user_agent
from ..services.event_types import AuditEventType
from ..use_cases.alert_rules import (
    list_alert_rules,
    list_alerts,
    resolve_alert,
    run_alert_rules,
    set_alert_rule_active,
)
from ..use_cases.audit_chain import append_audit_entry_best_effort, list_audit_entries, verify_chain
from ..use_cases.security_events import list_security_events

router = APIRouter(prefix="/admin/security", tags=["security"])
logger = logging.getLogger(__name__)


@router.get("/alerts", response_model=List[SecurityAlertResponse])
def get_alerts(
    status: Optional[str] = Query(None, pattern="^(open|resolved)$"),
    limit: int = Query(100, ge=1, le=500),
    principal: Principal = Depends(PermissionChecker("canViewSecurity")),
    db: Session = Depends(get_db),
):
    return [SecurityAlertResponse.model_validate(a) for a in list_alerts(db, status=status, limit=limit)]


@router.post("/alerts/{alert_id}/resolve", response_model=SecurityAlertResponse)
def resolve_security_alert(
    alert_id: UUID,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canManageSecurity")),
    db: Session = Depends(get_db),
):
    alert = resolve_alert(
        db,
        alert_id=alert_id,
        actor=principal.user,
        session_id=principal.session.id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return SecurityAlertResponse.model_validate(alert)


@router.get("/rules", response_model=List[AlertRuleResponse])
def get_alert_rules(
    principal: Principal = Depends(PermissionChecker("canViewSecurity")),
    db: Session = Depends(get_db),
):
    return [AlertRuleResponse.model_validate(r) for r in list_alert_rules(db)]


@router.patch("/rules/{rule_id}", response_model=AlertRuleResponse)
def toggle_alert_rule(
    rule_id: UUID,
    payload: AlertRuleToggleRequest,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canManageSecurity")),
    db: Session = Depends(get_db),
):
    rule = set_alert_rule_active(
        db,
        rule_id=rule_id,
        is_active=payload.is_active,
        actor=principal.user,
        session_id=principal.session.id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return AlertRuleResponse.model_validate(rule)


@router.get("/events", response_model=List[SecurityEventResponse])
def get_security_events(
    event_type: Optional[str] = None,
    actor_user_id: Optional[UUID] = None,
    since: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=500),
    principal: Principal = Depends(PermissionChecker("canViewSecurity")),
    db: Session = Depends(get_db),
):
    events = list_security_events(
        db,
        event_type=event_type,
        actor_user_id=actor_user_id,
        since=since,
        limit=limit,
    )
    return [SecurityEventResponse.model_validate(e) for e in events]


@router.get("/audit", response_model=List[AuditLogEntryResponse])
def get_audit_entries(
    request: Request,
    event_type: Optional[str] = None,
    entity_type: Optional[str] = None,
    actor_user_id: Optional[UUID] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=1000),
    principal: Principal = Depends(PermissionChecker("canViewAudit")),
    db: Session = Depends(get_db),
):
    """Read the audit log (newest first). The read itself is audited."""
    entries = list_audit_entries(
        db,
        event_type=event_type,
        entity_type=entity_type,
        actor_user_id=actor_user_id,
        since=since,
        until=until,
        limit=limit,
    )
    response = [AuditLogEntryResponse.model_validate(e) for e in entries]

    append_audit_entry_best_effort(
        db,
        event_type=AuditEventType.AUDIT_LOG_EXPORTED,
        entity_type="audit_log",
        actor_user_id=principal.user.id,
        actor_role=principal.user.role,
        session_id=principal.session.id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
        metadata={
            "filters": {
                "event_type": event_type,
                "entity_type": entity_type,
                "actor_user_id": str(actor_user_id) if actor_user_id else None,
            },
            "returned": len(response),
        },
    )
    db.commit()
    return response


@router.get("/audit/verify", response_model=ChainVerificationResponse)
def verify_audit_chain(
    from_seq: Optional[int] = Query(None, ge=1),
    to_seq: Optional[int] = Query(None, ge=1),
    principal: Principal = Depends(PermissionChecker("canVerifyAudit")),
    db: Session = Depends(get_db),
):
    result = verify_chain(db, from_seq=from_seq, to_seq=to_seq)
    return ChainVerificationResponse(
        ok=result.ok,
        first_invalid_id=str(result.first_invalid_id) if result.first_invalid_id else None,
        checked=result.checked,
        reason=result.reason,
    )


@router.post("/internal/run-alerts", response_model=AlertRunResponse)
def run_alerts_job(
    x_internal_job_secret: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    """Trigger rule evaluation from an external scheduler."""
    if not settings.INTERNAL_JOB_SECRET:
        raise ValidationError("Internal job endpoint is disabled", code="INTERNAL_JOBS_DISABLED")
    if not x_internal_job_secret or not hmac.compare_digest(
        x_internal_job_secret.encode("utf-8"), settings.INTERNAL_JOB_SECRET.encode("utf-8")
    ):
        raise AuthenticationRequired("Invalid job secret", code="INTERNAL_JOB_SECRET_INVALID")

    alerts = run_alert_rules(db)
    logger.info("Alert rules run via internal endpoint created %d alert(s)", len(alerts))
    return AlertRunResponse(alerts_created=len(alerts), alert_ids=[a.id for a in alerts])
