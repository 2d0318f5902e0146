"""Security-event recording and login-context anomaly detection.

Every emission here is a best-effort side effect: failures are logged and
returned as ``BestEffortFailure`` values so the login or MFA operation that
triggered them can carry on.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..domain_errors import BestEffortFailure, ValidationError
from ..models import SECURITY_EVENT_SEVERITIES, SecurityEvent, UserSession
from ..services.anomaly import is_odd_hour, local_time
from ..services.clock import utc_now
from ..services.event_types import DEFAULT_EVENT_SEVERITY, SecurityEventType
from ..services.hash_chain import normalize_metadata

logger = logging.getLogger(__name__)

EventOutcome = SecurityEvent | BestEffortFailure


@dataclass(frozen=True)
class LoginBaseline:
    has_history: bool
    ip_seen: bool
    device_seen: bool


def _parse_event_type(value: str | SecurityEventType) -> SecurityEventType:
    try:
        return SecurityEventType(getattr(value, "value", value))
    except ValueError:
        raise ValidationError(f"Unknown security event type: {value}", code="SECURITY_EVENT_TYPE_UNKNOWN") from None


def record_security_event(
    db: Session,
    *,
    event_type: str | SecurityEventType,
    actor_user_id: UUID | None,
    severity: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    metadata: dict[str, Any] | None = None,
    at: datetime | None = None,
) -> EventOutcome:
    kind = _parse_event_type(event_type)
    level = severity or DEFAULT_EVENT_SEVERITY[kind]
    if level not in SECURITY_EVENT_SEVERITIES:
        raise ValidationError(f"Unknown severity: {level}", code="SECURITY_EVENT_SEVERITY_INVALID")

    event = SecurityEvent(
        actor_user_id=actor_user_id,
        event_type=kind.value,
        severity=level,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:512] or None,
        details=normalize_metadata(metadata),
        created_at=at or utc_now(),
    )
    try:
        with db.begin_nested():
            db.add(event)
            db.flush()
    except SQLAlchemyError as exc:
        logger.exception("Failed to record security event %s for user %s", kind.value, actor_user_id)
        return BestEffortFailure(operation=f"security_event:{kind.value}", error=exc.__class__.__name__)
    return event


def _load_baseline(
    db: Session, *, user_id: UUID, device_id: str | None, ip_address: str | None, at: datetime
) -> LoginBaseline:
    has_history = (
        db.query(UserSession.id).filter(UserSession.user_id == user_id).first() is not None
    )
    if not has_history:
        return LoginBaseline(has_history=False, ip_seen=False, device_seen=False)

    ip_seen = True
    if ip_address:
        lookback_start = at - timedelta(days=int(settings.ANOMALY_IP_LOOKBACK_DAYS))
        ip_seen = (
            db.query(UserSession.id)
            .filter(
                UserSession.user_id == user_id,
                UserSession.ip_address == ip_address,
                UserSession.created_at >= lookback_start,
            )
            .first()
            is not None
        )

    device_seen = True
    if device_id:
        device_seen = (
            db.query(UserSession.id)
            .filter(UserSession.user_id == user_id, UserSession.device_id == device_id)
            .first()
            is not None
        )
    return LoginBaseline(has_history=True, ip_seen=ip_seen, device_seen=device_seen)


def evaluate_login_context(
    db: Session,
    *,
    user_id: UUID,
    device_id: str | None,
    ip_address: str | None,
    user_agent: str | None = None,
    at: datetime | None = None,
) -> list[EventOutcome]:
    """Classify a login against the user's session history.

    Must run before the new session is written, otherwise the login becomes
    its own baseline. New-IP and new-device checks need at least one earlier
    session; a first login only gets the odd-hour check.
    """
    at = at or utc_now()
    try:
        with db.begin_nested():
            baseline = _load_baseline(db, user_id=user_id, device_id=device_id, ip_address=ip_address, at=at)
    except SQLAlchemyError as exc:
        logger.exception("Failed to load login baseline for user %s", user_id)
        return [BestEffortFailure(operation="anomaly_baseline", error=exc.__class__.__name__)]

    outcomes: list[EventOutcome] = []
    common = {"actor_user_id": user_id, "ip_address": ip_address, "user_agent": user_agent, "at": at}

    if baseline.has_history and ip_address and not baseline.ip_seen:
        outcomes.append(
            record_security_event(
                db,
                event_type=SecurityEventType.ANOMALY_NEW_IP,
                metadata={"ip_address": ip_address, "lookback_days": settings.ANOMALY_IP_LOOKBACK_DAYS},
                **common,
            )
        )
    if baseline.has_history and device_id and not baseline.device_seen:
        outcomes.append(
            record_security_event(
                db,
                event_type=SecurityEventType.ANOMALY_NEW_DEVICE,
                metadata={"device_id": device_id},
                **common,
            )
        )
    if is_odd_hour(
        at,
        utc_offset_minutes=settings.ANOMALY_LOCAL_UTC_OFFSET_MINUTES,
        start_hour=settings.ANOMALY_ODD_HOUR_START,
        end_hour=settings.ANOMALY_ODD_HOUR_END,
    ):
        local = local_time(at, utc_offset_minutes=settings.ANOMALY_LOCAL_UTC_OFFSET_MINUTES)
        outcomes.append(
            record_security_event(
                db,
                event_type=SecurityEventType.ANOMALY_ODD_HOUR_LOGIN,
                metadata={
                    "local_time": local.strftime("%H:%M"),
                    "allowed_band": f"{settings.ANOMALY_ODD_HOUR_START:02d}:00-{settings.ANOMALY_ODD_HOUR_END:02d}:00",
                },
                **common,
            )
        )
    return outcomes


def list_security_events(
    db: Session,
    *,
    event_type: str | None = None,
    actor_user_id: UUID | None = None,
    since: datetime | None = None,
    limit: int = 100,
) -> list[SecurityEvent]:
    query = db.query(SecurityEvent)
    if event_type:
        query = query.filter(SecurityEvent.event_type == event_type)
    if actor_user_id:
        query = query.filter(SecurityEvent.actor_user_id == actor_user_id)
    if since:
        query = query.filter(SecurityEvent.created_at >= since)
    return query.order_by(SecurityEvent.created_at.desc()).limit(max(1, min(int(limit), 500))).all()

