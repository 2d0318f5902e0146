"""Threshold alert rules over security events, device conflicts and OTP requests.

Sources are a closed set keyed by ``source_type``. Each source is one fetch
method returning plain dict rows; supporting a new source means adding a
fetcher to ``AlertRuleEngine._fetchers``, nothing else.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..domain_errors import DomainError, Forbidden
from ..models import (
    DeviceConflict,
    OtpRequest,
    SecurityAlert,
    SecurityAlertRule,
    SecurityEvent,
    User,
)
from ..services.clock import as_utc, utc_now
from ..services.event_types import AuditEventType
from ..services.roles import Role
from .audit_chain import append_audit_entry

logger = logging.getLogger(__name__)

RELATED_EVENTS_LIMIT = 5

DEFAULT_ALERT_RULES: tuple[dict[str, Any], ...] = (
    {
        "name": "MULTIPLE_ADMIN_MFA_FAILURES",
        "description": "Repeated MFA challenge failures for a single admin account.",
        "severity": "high",
        "source_type": "admin_security_events",
        "condition": {
            "event_type": "MFA_CHALLENGE_FAILED",
            "window_minutes": 15,
            "threshold": 5,
            "group_by": "admin_user_id",
        },
    },
    {
        "name": "DEVICE_CONFLICT_STORM",
        "description": "A field user keeps logging in from different devices.",
        "severity": "high",
        "source_type": "device_lock_conflicts",
        "condition": {"window_minutes": 30, "threshold": 3, "group_by": "user_id"},
    },
    {
        "name": "OTP_ABUSE_SINGLE_NUMBER",
        "description": "High OTP request volume for one phone number.",
        "severity": "medium",
        "source_type": "login_otp_requests",
        "condition": {"window_minutes": 10, "threshold": 10, "group_by": "phone_e164"},
    },
)

_RULE_MESSAGES: dict[str, str] = {
    "MULTIPLE_ADMIN_MFA_FAILURES": (
        "High number of MFA failures ({count}) for admin user {key} in the last {window} minutes."
    ),
    "DEVICE_CONFLICT_STORM": (
        "Multiple device conflicts detected ({count}) for user {key} in the last {window} minutes."
    ),
    "OTP_ABUSE_SINGLE_NUMBER": (
        "High volume of OTP requests ({count}) for phone number {key} in the last {window} minutes."
    ),
}
_GENERIC_MESSAGE = 'Security rule "{name}" triggered for {group_by} "{key}" with {count} events in the last {window} minutes.'


@dataclass(frozen=True)
class AlertCondition:
    window_minutes: int
    threshold: int
    group_by: str
    event_type: str | None = None

    @classmethod
    def parse(cls, raw: dict[str, Any] | None) -> "AlertCondition":
        raw = raw or {}
        try:
            window = int(raw["window_minutes"])
            threshold = int(raw["threshold"])
            group_by = str(raw["group_by"]).strip()
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Malformed alert rule condition: {raw!r}") from exc
        if window <= 0 or threshold <= 0 or not group_by:
            raise ValueError(f"Alert rule condition out of range: {raw!r}")
        event_type = raw.get("event_type")
        return cls(window_minutes=window, threshold=threshold, group_by=group_by, event_type=event_type or None)


def build_alert_message(rule_name: str, condition: AlertCondition, *, key: str, count: int) -> str:
    template = _RULE_MESSAGES.get(rule_name, _GENERIC_MESSAGE)
    return template.format(
        name=rule_name,
        group_by=condition.group_by,
        key=key,
        count=count,
        window=condition.window_minutes,
    )


def _iso(value: datetime | None) -> str | None:
    return as_utc(value).isoformat() if value is not None else None


def _str_or_none(value: Any) -> str | None:
    return str(value) if value is not None else None


class AlertRuleEngine:
    """Evaluate active rules once. Intended to run from a periodic job."""

    def __init__(self, db: Session, *, now: datetime | None = None) -> None:
        self.db = db
        self.now = now or utc_now()
        self._fetchers: dict[str, Callable[[AlertCondition, datetime], list[dict[str, Any]]]] = {
            "admin_security_events": self._fetch_admin_security_events,
            "device_lock_conflicts": self._fetch_device_conflicts,
            "login_otp_requests": self._fetch_otp_requests,
        }

    def process_rules(self) -> list[SecurityAlert]:
        rules = (
            self.db.query(SecurityAlertRule)
            .filter(SecurityAlertRule.is_active.is_(True))
            .order_by(SecurityAlertRule.name.asc())
            .all()
        )
        created: list[SecurityAlert] = []
        for rule in rules:
            try:
                with self.db.begin_nested():
                    created.extend(self.process_rule(rule))
            except (SQLAlchemyError, ValueError):
                # One broken rule must not starve the others.
                logger.exception("Failed to process alert rule %s", rule.name)
        logger.info("Alert rules processed: %d rules, %d new alerts", len(rules), len(created))
        return created

    def process_rule(self, rule: SecurityAlertRule) -> list[SecurityAlert]:
        fetch = self._fetchers.get(rule.source_type)
        if fetch is None:
            logger.warning("Alert rule %s has unsupported source type %s", rule.name, rule.source_type)
            return []
        condition = AlertCondition.parse(rule.condition)
        window_start = self.now - timedelta(minutes=condition.window_minutes)

        groups: dict[str, list[dict[str, Any]]] = {}
        for row in fetch(condition, window_start):
            key = row.get(condition.group_by)
            if key is None or key == "":
                continue
            groups.setdefault(str(key), []).append(row)

        created: list[SecurityAlert] = []
        for key, rows in sorted(groups.items()):
            if len(rows) < condition.threshold:
                continue
            if self._has_open_alert(rule.id, key, window_start):
                continue
            alert = SecurityAlert(
                rule_id=rule.id,
                source_type=rule.source_type,
                severity=rule.severity,
                message=build_alert_message(rule.name, condition, key=key, count=len(rows)),
                group_key=key,
                details={
                    "key": key,
                    "rule_name": rule.name,
                    "event_count": len(rows),
                    "window_minutes": condition.window_minutes,
                    "triggered_at": self.now.isoformat(),
                    "related_events": rows[:RELATED_EVENTS_LIMIT],
                },
                status="open",
                created_at=self.now,
            )
            self.db.add(alert)
            created.append(alert)
            logger.warning("Security alert raised: %s key=%s count=%d", rule.name, key, len(rows))
        self.db.flush()
        return created

    def _has_open_alert(self, rule_id: UUID, key: str, window_start: datetime) -> bool:
        return (
            self.db.query(SecurityAlert.id)
            .filter(
                SecurityAlert.rule_id == rule_id,
                SecurityAlert.group_key == key,
                SecurityAlert.status == "open",
                SecurityAlert.created_at >= window_start,
            )
            .first()
            is not None
        )

    def _fetch_admin_security_events(self, condition: AlertCondition, window_start: datetime) -> list[dict[str, Any]]:
        query = (
            self.db.query(SecurityEvent)
            .join(User, User.id == SecurityEvent.actor_user_id)
            .filter(
                User.role == Role.ADMIN.value,
                SecurityEvent.created_at >= window_start,
                SecurityEvent.created_at <= self.now,
            )
        )
        if condition.event_type:
            query = query.filter(SecurityEvent.event_type == condition.event_type)
        return [
            {
                "id": str(event.id),
                "event_type": event.event_type,
                "admin_user_id": _str_or_none(event.actor_user_id),
                "actor_user_id": _str_or_none(event.actor_user_id),
                "ip_address": event.ip_address,
                "severity": event.severity,
                "created_at": _iso(event.created_at),
            }
            for event in query.order_by(SecurityEvent.created_at.asc()).all()
        ]

    def _fetch_device_conflicts(self, condition: AlertCondition, window_start: datetime) -> list[dict[str, Any]]:
        rows = (
            self.db.query(DeviceConflict)
            .filter(DeviceConflict.detected_at >= window_start, DeviceConflict.detected_at <= self.now)
            .order_by(DeviceConflict.detected_at.asc())
            .all()
        )
        return [
            {
                "id": str(conflict.id),
                "user_id": _str_or_none(conflict.user_id),
                "old_device": conflict.old_device,
                "new_device": conflict.new_device,
                "ip_address": conflict.ip_address,
                "resolution": conflict.resolution,
                "detected_at": _iso(conflict.detected_at),
            }
            for conflict in rows
        ]

    def _fetch_otp_requests(self, condition: AlertCondition, window_start: datetime) -> list[dict[str, Any]]:
        rows = (
            self.db.query(OtpRequest)
            .filter(OtpRequest.created_at >= window_start, OtpRequest.created_at <= self.now)
            .order_by(OtpRequest.created_at.asc())
            .all()
        )
        return [
            {
                "id": str(request.id),
                "phone_e164": request.phone_e164,
                "email": request.email,
                "status": request.status,
                "channel": request.channel,
                "ip_address": request.ip_address,
                "created_at": _iso(request.created_at),
            }
            for request in rows
        ]


def run_alert_rules(db: Session, *, now: datetime | None = None) -> list[SecurityAlert]:
    alerts = AlertRuleEngine(db, now=now).process_rules()
    db.commit()
    return alerts


def ensure_default_alert_rules(db: Session) -> list[SecurityAlertRule]:
    """Insert any missing default rule. Existing rules (and their toggles) are left alone."""
    existing = {name for (name,) in db.query(SecurityAlertRule.name).all()}
    created: list[SecurityAlertRule] = []
    for definition in DEFAULT_ALERT_RULES:
        if definition["name"] in existing:
            continue
        rule = SecurityAlertRule(
            name=definition["name"],
            description=definition["description"],
            is_active=True,
            severity=definition["severity"],
            source_type=definition["source_type"],
            condition=dict(definition["condition"]),
        )
        db.add(rule)
        created.append(rule)
    db.flush()
    return created


def _require_admin(actor: Any) -> None:
    if actor is None or getattr(actor, "role", None) != Role.ADMIN.value:
        raise Forbidden("Only administrators can manage security alerts", code="SECURITY_ADMIN_REQUIRED")


def set_alert_rule_active(
    db: Session,
    *,
    rule_id: UUID,
    is_active: bool,
    actor: Any,
    session_id: UUID | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> SecurityAlertRule:
    _require_admin(actor)
    rule = db.query(SecurityAlertRule).filter(SecurityAlertRule.id == rule_id).with_for_update().first()
    if rule is None:
        raise DomainError(code="ALERT_RULE_NOT_FOUND", http_status=404, message="Alert rule not found")
    if bool(rule.is_active) == bool(is_active):
        return rule

    rule.is_active = bool(is_active)
    db.flush()
    append_audit_entry(
        db,
        event_type=AuditEventType.ALERT_RULE_TOGGLED,
        entity_type="security_alert_rule",
        entity_id=rule.id,
        actor_user_id=actor.id,
        actor_role=actor.role,
        session_id=session_id,
        ip_address=ip_address,
        user_agent=user_agent,
        severity="warning",
        metadata={"rule_name": rule.name, "is_active": rule.is_active},
    )
    db.commit()
    return rule


def resolve_alert(
    db: Session,
    *,
    alert_id: UUID,
    actor: Any,
    session_id: UUID | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> SecurityAlert:
    """Operator resolution. Resolving an already resolved alert is a no-op."""
    _require_admin(actor)
    alert = db.query(SecurityAlert).filter(SecurityAlert.id == alert_id).with_for_update().first()
    if alert is None:
        raise DomainError(code="ALERT_NOT_FOUND", http_status=404, message="Alert not found")
    if alert.status == "resolved":
        return alert

    now = now or utc_now()
    alert.status = "resolved"
    alert.resolved_at = now
    alert.resolved_by = actor.id
    db.flush()
    append_audit_entry(
        db,
        event_type=AuditEventType.ALERT_RESOLVED,
        entity_type="security_alert",
        entity_id=alert.id,
        actor_user_id=actor.id,
        actor_role=actor.role,
        session_id=session_id,
        ip_address=ip_address,
        user_agent=user_agent,
        severity="info",
        metadata={"rule_id": str(alert.rule_id), "group_key": alert.group_key},
        at=now,
    )
    db.commit()
    return alert


def list_alerts(db: Session, *, status: str | None = None, limit: int = 100) -> list[SecurityAlert]:
    query = db.query(SecurityAlert)
    if status:
        query = query.filter(SecurityAlert.status == status)
    return query.order_by(SecurityAlert.created_at.desc()).limit(max(1, min(int(limit), 500))).all()


def list_alert_rules(db: Session) -> list[SecurityAlertRule]:
    return db.query(SecurityAlertRule).order_by(SecurityAlertRule.name.asc()).all()
