"""SQLAlchemy models for sessions, device trust, security events and the audit chain."""
from sqlalchemy import (
    JSON, BigInteger, Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index,
    Integer, String, Text, Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from .database import Base

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")

USER_ROLES = ("admin", "manager", "technician", "transporter", "customer")
SECURITY_EVENT_SEVERITIES = ("info", "warning", "error")
AUDIT_SEVERITIES = ("info", "warning", "high", "critical")
ALERT_SEVERITIES = ("low", "medium", "high", "critical")
OTP_CHANNELS = ("whatsapp", "sms", "email")
OTP_STATUSES = ("issued", "rate_limited")


class User(Base):
    """Platform identity, keyed by phone number or email address."""
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    phone_e164 = Column(String(20), unique=True, nullable=True, index=True)
    email = Column(String(255), unique=True, nullable=True, index=True)
    display_name = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False, index=True, default="customer")
    is_active = Column(Boolean, nullable=False, default=True)
    mfa_enabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(role.in_(USER_ROLES), name="chk_user_role"),
        CheckConstraint("phone_e164 IS NOT NULL OR email IS NOT NULL", name="chk_user_identifier"),
    )

    sessions = relationship("UserSession", back_populates="user")


class UserSession(Base):
    """One authenticated, device-bound login. Never physically deleted."""
    __tablename__ = "user_sessions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role = Column(String(20), nullable=False)
    # SHA-256 device fingerprint; NULL only for roles without device binding.
    device_id = Column(String(64), nullable=True, index=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    # SHA-256 of the raw refresh token; the raw token is returned once and never stored.
    refresh_token_hash = Column(String(64), nullable=False, unique=True)
    revoked = Column(Boolean, nullable=False, default=False)
    revoked_reason = Column(String(50), nullable=True)
    logged_out_at = Column(DateTime(timezone=True), nullable=True)
    mfa_verified_at = Column(DateTime(timezone=True), nullable=True)
    replaced_by_session_id = Column(Uuid(as_uuid=True), nullable=True)

    __table_args__ = (
        CheckConstraint(role.in_(USER_ROLES), name="chk_user_session_role"),
        Index("ix_user_sessions_user_role_active", "user_id", "role", "revoked"),
    )

    user = relationship("User", back_populates="sessions")

    @property
    def status(self) -> str:
        return "inactive" if self.revoked else "active"


class DeviceLock(Base):
    """Single-device binding for a policy-enforced user."""
    __tablename__ = "device_locks"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    device_id = Column(String(64), nullable=False)
    # Admin escape hatch: the next device switch binds silently, then the flag resets.
    override_allowed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class DeviceConflict(Base):
    """Immutable record of a device mismatch under the single-device policy."""
    __tablename__ = "device_conflicts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    old_device = Column(String(64), nullable=False)
    new_device = Column(String(64), nullable=False)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    resolution = Column(String(20), nullable=False)
    detected_at = Column(DateTime(timezone=True), nullable=False, index=True)

    __table_args__ = (
        CheckConstraint(resolution.in_(["rejected", "takeover"]), name="chk_device_conflict_resolution"),
    )


class SecurityEvent(Base):
    """Append-only security-relevant occurrence (anomalies, MFA lifecycle)."""
    __tablename__ = "security_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    actor_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True, index=True)
    event_type = Column(String(64), nullable=False, index=True)
    severity = Column(String(20), nullable=False, default="info")
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    details = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)

    __table_args__ = (
        CheckConstraint(severity.in_(SECURITY_EVENT_SEVERITIES), name="chk_security_event_severity"),
    )


class SecurityAlertRule(Base):
    """Threshold rule evaluated by the alert engine."""
    __tablename__ = "security_alert_rules"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    severity = Column(String(20), nullable=False, default="medium")
    source_type = Column(String(50), nullable=False)
    # {"event_type"?: str, "window_minutes": int, "threshold": int, "group_by": str}
    condition = Column(JSONType, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(severity.in_(ALERT_SEVERITIES), name="chk_alert_rule_severity"),
    )


class SecurityAlert(Base):
    """Alert raised by the rule engine; resolved by an operator, never deleted."""
    __tablename__ = "security_alerts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    rule_id = Column(Uuid(as_uuid=True), ForeignKey("security_alert_rules.id"), nullable=False, index=True)
    source_type = Column(String(50), nullable=False)
    severity = Column(String(20), nullable=False)
    message = Column(Text, nullable=False)
    group_key = Column(String(255), nullable=False)
    details = Column("metadata", JSONType, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default="open")
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)

    __table_args__ = (
        CheckConstraint(status.in_(["open", "resolved"]), name="chk_security_alert_status"),
        Index("ix_security_alerts_rule_key_status", "rule_id", "group_key", "status"),
    )

    rule = relationship("SecurityAlertRule")


class AuditLogEntry(Base):
    """Hash-chained, append-only record of a privileged action."""
    __tablename__ = "audit_log_entries"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    seq = Column(BigInteger, nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    actor_user_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    actor_role = Column(String(20), nullable=True)
    session_id = Column(Uuid(as_uuid=True), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    event_type = Column(String(64), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=True)
    severity = Column(String(20), nullable=False, default="info")
    details = Column("metadata", JSONType, nullable=False, default=dict)
    prev_hash = Column(String(64), nullable=False)
    hash = Column(String(64), nullable=False)

    __table_args__ = (
        CheckConstraint(severity.in_(AUDIT_SEVERITIES), name="chk_audit_log_severity"),
    )


class AuditChainHead(Base):
    """Single row holding the chain tip; locked FOR UPDATE by every append."""
    __tablename__ = "audit_chain_head"

    id = Column(Integer, primary_key=True, default=1)
    last_seq = Column(BigInteger, nullable=False, default=0)
    last_hash = Column(String(64), nullable=True)

    __table_args__ = (
        CheckConstraint("id = 1", name="chk_audit_chain_head_singleton"),
    )


class OtpRequest(Base):
    """Short-lived login code, stored hashed with explicit expiry.

    Throttled requests are recorded as well, with status ``rate_limited`` and
    no hash; they count towards abuse rules but can never be verified.
    """
    __tablename__ = "login_otp_requests"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    phone_e164 = Column(String(20), nullable=True, index=True)
    email = Column(String(255), nullable=True, index=True)
    otp_hash = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default="issued")
    channel = Column(String(20), nullable=False, default="whatsapp")
    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    device_fingerprint = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)

    __table_args__ = (
        CheckConstraint(channel.in_(OTP_CHANNELS), name="chk_login_otp_channel"),
        CheckConstraint(status.in_(OTP_STATUSES), name="chk_login_otp_status"),
        CheckConstraint(
            "(phone_e164 IS NOT NULL AND email IS NULL) OR (phone_e164 IS NULL AND email IS NOT NULL)",
            name="chk_login_otp_identifier",
        ),
        CheckConstraint("status <> 'issued' OR otp_hash IS NOT NULL", name="chk_login_otp_hash"),
    )


class MfaFactor(Base):
    """TOTP factor for an admin; the shared secret is stored encrypted."""
    __tablename__ = "admin_mfa_factors"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    secret_encrypted = Column(Text, nullable=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    setup_expires_at = Column(DateTime(timezone=True), nullable=True)
    failed_attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
