"""Security-event and audit-event type names."""

from __future__ import annotations

from enum import Enum


class SecurityEventType(str, Enum):
    ANOMALY_NEW_IP = "ANOMALY_NEW_IP"
    ANOMALY_NEW_DEVICE = "ANOMALY_NEW_DEVICE"
    ANOMALY_ODD_HOUR_LOGIN = "ANOMALY_ODD_HOUR_LOGIN"
    MFA_SETUP_COMPLETED = "MFA_SETUP_COMPLETED"
    MFA_CHALLENGE_PASSED = "MFA_CHALLENGE_PASSED"
    MFA_CHALLENGE_FAILED = "MFA_CHALLENGE_FAILED"


class AuditEventType(str, Enum):
    SESSION_CREATED = "SESSION_CREATED"
    SESSION_REVOKED = "SESSION_REVOKED"
    DEVICE_UNLOCK_PERFORMED = "DEVICE_UNLOCK_PERFORMED"
    DEVICE_LOCK_OVERRIDE = "DEVICE_LOCK_OVERRIDE"
    ALERT_RESOLVED = "ALERT_RESOLVED"
    ALERT_RULE_TOGGLED = "ALERT_RULE_TOGGLED"
    AUDIT_LOG_EXPORTED = "AUDIT_LOG_EXPORTED"


# Severity assigned to each security event when the caller does not override it.
DEFAULT_EVENT_SEVERITY: dict[SecurityEventType, str] = {
    SecurityEventType.ANOMALY_NEW_IP: "warning",
    SecurityEventType.ANOMALY_NEW_DEVICE: "warning",
    SecurityEventType.ANOMALY_ODD_HOUR_LOGIN: "warning",
    SecurityEventType.MFA_SETUP_COMPLETED: "info",
    SecurityEventType.MFA_CHALLENGE_PASSED: "info",
    SecurityEventType.MFA_CHALLENGE_FAILED: "error",
}
