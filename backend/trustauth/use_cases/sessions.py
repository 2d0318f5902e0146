"""Session lifecycle: create, validate, revoke, refresh.

Sessions are rows in ``user_sessions``; the bearer token is a signed JWT
whose ``sid`` claim points at the row. The row is the source of truth for
revocation and expiry, so a validly signed token for a revoked or expired
session is still rejected.
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
from ..domain_errors import AuthenticationRequired, ValidationError
from ..models import User, UserSession
from ..services.clock import as_utc, utc_now
from ..services.event_types import AuditEventType
from ..services.roles import Role, parse_role
from ..services.tokens import (
    create_session_token,
    decode_session_token,
    generate_refresh_token,
    hash_refresh_token,
)
from .audit_chain import append_audit_entry_best_effort

logger = logging.getLogger(__name__)

REASON_LOGOUT = "logout"
REASON_LOGOUT_ALL = "logout_all"
REASON_ROTATED = "rotated"
REASON_DEVICE_CONFLICT = "device_conflict"
REASON_SUPERSEDED = "superseded"
REASON_EXPIRED = "expired"

# Revocations the client should present as "logged in on another device".
_ELSEWHERE_REASONS = frozenset({REASON_DEVICE_CONFLICT})

INVALID_REASON_MESSAGES: dict[str, str] = {
    "missing_token": "Authentication required",
    "invalid_token": "Could not validate credentials",
    "not_found": "Session not found",
    "revoked": "Session has been revoked",
    "logged_in_elsewhere": "Logged in on another device",
    "expired": "Session expired",
    "unavailable": "Session could not be validated",
}


@dataclass(frozen=True)
class IssuedSession:
    session: UserSession
    access_token: str
    refresh_token: str

    @property
    def expires_at(self) -> datetime:
        return as_utc(self.session.expires_at)


@dataclass(frozen=True)
class SessionValidation:
    valid: bool
    session: UserSession | None = None
    reason: str | None = None

    @property
    def message(self) -> str | None:
        if self.reason is None:
            return None
        return INVALID_REASON_MESSAGES.get(self.reason, "Session invalid")


def session_ttl_for_role(role: Role) -> timedelta:
    if role is Role.ADMIN:
        return timedelta(hours=settings.SESSION_TTL_ADMIN_HOURS)
    if role is Role.CUSTOMER:
        return timedelta(hours=settings.SESSION_TTL_CUSTOMER_HOURS)
    return timedelta(hours=settings.SESSION_TTL_STAFF_HOURS)


def _audit_session(
    db: Session,
    session: UserSession,
    event_type: AuditEventType,
    *,
    actor_user_id: Any = None,
    actor_role: str | None = None,
    metadata: dict[str, Any] | None = None,
    at: datetime | None = None,
) -> None:
    append_audit_entry_best_effort(
        db,
        event_type=event_type,
        entity_type="session",
        entity_id=session.id,
        actor_user_id=actor_user_id or session.user_id,
        actor_role=actor_role or session.role,
        session_id=session.id,
        ip_address=session.ip_address,
        user_agent=session.user_agent,
        severity="info",
        metadata=metadata,
        at=at,
    )


def create_session(
    db: Session,
    *,
    user_id: UUID | None,
    role: str | Role | None,
    device_id: str | None = None,
    ttl: timedelta | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> IssuedSession:
    """Persist a new session and return it with its bearer and refresh tokens.

    The raw refresh token exists only in the return value; the row stores its
    SHA-256 digest.
    """
    if not user_id:
        raise ValidationError("user_id is required", code="USER_ID_REQUIRED")
    parsed_role = parse_role(role)
    ttl = ttl if ttl is not None else session_ttl_for_role(parsed_role)
    if ttl.total_seconds() <= 0:
        raise ValidationError("Session TTL must be positive", code="SESSION_TTL_INVALID")

    now = now or utc_now()
    refresh_token = generate_refresh_token()
    session = UserSession(
        user_id=user_id,
        role=parsed_role.value,
        device_id=device_id,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:512] or None,
        created_at=now,
        expires_at=now + ttl,
        refresh_token_hash=hash_refresh_token(refresh_token),
        revoked=False,
    )
    db.add(session)
    db.flush()

    access_token = create_session_token(
        user_id=session.user_id,
        session_id=session.id,
        role=session.role,
        expires_at=session.expires_at,
        issued_at=now,
    )
    _audit_session(
        db,
        session,
        AuditEventType.SESSION_CREATED,
        metadata={"device_id": device_id, "expires_at": (now + ttl).isoformat()},
        at=now,
    )
    return IssuedSession(session=session, access_token=access_token, refresh_token=refresh_token)


def validate_session(db: Session, token: str | None, *, now: datetime | None = None) -> SessionValidation:
    """Fail-closed validation. Never raises; every failure carries a reason."""
    if not token:
        return SessionValidation(valid=False, reason="missing_token")
    now = now or utc_now()
    try:
        claims = decode_session_token(token, now=now)
    except AuthenticationRequired:
        return SessionValidation(valid=False, reason="invalid_token")

    try:
        session = db.query(UserSession).filter(UserSession.id == UUID(claims["sid"])).first()
    except SQLAlchemyError:
        logger.exception("Session lookup failed during validation")
        return SessionValidation(valid=False, reason="unavailable")

    if session is None:
        return SessionValidation(valid=False, reason="not_found")
    if str(session.user_id) != str(claims["sub"]):
        return SessionValidation(valid=False, reason="invalid_token")
    # Revocation dominates expiry.
    if session.revoked:
        reason = "logged_in_elsewhere" if session.revoked_reason in _ELSEWHERE_REASONS else "revoked"
        return SessionValidation(valid=False, session=session, reason=reason)
    if now > as_utc(session.expires_at):
        return SessionValidation(valid=False, session=session, reason="expired")
    return SessionValidation(valid=True, session=session)


def _apply_revocation(
    db: Session,
    session: UserSession,
    *,
    reason: str,
    now: datetime,
    actor_user_id: Any = None,
    actor_role: str | None = None,
) -> None:
    session.revoked = True
    session.revoked_reason = reason
    session.logged_out_at = now
    db.flush()
    _audit_session(
        db,
        session,
        AuditEventType.SESSION_REVOKED,
        actor_user_id=actor_user_id,
        actor_role=actor_role,
        metadata={"reason": reason},
        at=now,
    )


def revoke_session(
    db: Session,
    session_id: UUID,
    *,
    reason: str,
    actor_user_id: Any = None,
    actor_role: str | None = None,
    now: datetime | None = None,
) -> UserSession | None:
    """Revoke one session. Revoking an already revoked session is a no-op."""
    if not reason:
        raise ValidationError("reason is required", code="REVOKE_REASON_REQUIRED")
    session = (
        db.query(UserSession)
        .filter(UserSession.id == session_id)
        .with_for_update()
        .first()
    )
    if session is None or session.revoked:
        return session
    _apply_revocation(
        db,
        session,
        reason=reason,
        now=now or utc_now(),
        actor_user_id=actor_user_id,
        actor_role=actor_role,
    )
    return session


def revoke_user_sessions(
    db: Session,
    *,
    user_id: UUID,
    reason: str,
    role: str | Role | None = None,
    device_id: str | None = None,
    exclude_session_id: UUID | None = None,
    actor_user_id: Any = None,
    actor_role: str | None = None,
    now: datetime | None = None,
) -> list[UserSession]:
    """Revoke every live session of a user, optionally narrowed to a role or device."""
    query = db.query(UserSession).filter(
        UserSession.user_id == user_id,
        UserSession.revoked.is_(False),
    )
    if role is not None:
        query = query.filter(UserSession.role == parse_role(role).value)
    if device_id is not None:
        query = query.filter(UserSession.device_id == device_id)
    if exclude_session_id is not None:
        query = query.filter(UserSession.id != exclude_session_id)

    now = now or utc_now()
    sessions = query.order_by(UserSession.created_at.asc()).with_for_update().all()
    for session in sessions:
        _apply_revocation(
            db,
            session,
            reason=reason,
            now=now,
            actor_user_id=actor_user_id,
            actor_role=actor_role,
        )
    return sessions


def refresh_session(
    db: Session,
    refresh_token: str | None,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> IssuedSession:
    """Rotate: revoke the presented session and issue a successor on the same device."""
    if not refresh_token:
        raise AuthenticationRequired("Not authenticated", code="REFRESH_TOKEN_MISSING")
    now = now or utc_now()
    # Row lock makes rotation + replay detection concurrency-safe under Postgres.
    session = (
        db.query(UserSession)
        .filter(UserSession.refresh_token_hash == hash_refresh_token(refresh_token))
        .with_for_update()
        .first()
    )
    if session is None:
        raise AuthenticationRequired("Invalid refresh token", code="REFRESH_TOKEN_INVALID")
    if session.revoked:
        if session.revoked_reason in _ELSEWHERE_REASONS:
            raise AuthenticationRequired(INVALID_REASON_MESSAGES["logged_in_elsewhere"], code="SESSION_LOGGED_IN_ELSEWHERE")
        if session.revoked_reason == REASON_ROTATED:
            logger.warning("Rotated refresh token presented again for session %s", session.id)
        raise AuthenticationRequired("Refresh token has been revoked", code="REFRESH_TOKEN_REVOKED")
    if now > as_utc(session.created_at) + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS):
        raise AuthenticationRequired("Refresh token expired", code="REFRESH_TOKEN_EXPIRED")

    user = db.query(User).filter(User.id == session.user_id, User.is_active.is_(True)).first()
    if user is None:
        raise AuthenticationRequired("User not found or inactive", code="USER_INACTIVE")
    if user.role != session.role:
        raise AuthenticationRequired("Role changed; sign in again", code="SESSION_ROLE_CHANGED")

    issued = create_session(
        db,
        user_id=session.user_id,
        role=session.role,
        device_id=session.device_id,
        ip_address=ip_address or session.ip_address,
        user_agent=user_agent or session.user_agent,
        now=now,
    )
    # MFA assurance survives rotation within the same device chain.
    issued.session.mfa_verified_at = session.mfa_verified_at
    session.replaced_by_session_id = issued.session.id
    _apply_revocation(db, session, reason=REASON_ROTATED, now=now)
    return issued


def mark_session_mfa_verified(db: Session, session: UserSession, *, now: datetime | None = None) -> UserSession:
    session.mfa_verified_at = now or utc_now()
    db.flush()
    return session


def expire_stale_sessions(db: Session, *, now: datetime | None = None, batch_size: int = 500) -> int:
    """Mark sessions past ``expires_at`` as revoked with reason ``expired``."""
    now = now or utc_now()
    sessions = (
        db.query(UserSession)
        .filter(UserSession.revoked.is_(False), UserSession.expires_at < now)
        .order_by(UserSession.expires_at.asc())
        .limit(batch_size)
        .with_for_update(skip_locked=True)
        .all()
    )
    for session in sessions:
        _apply_revocation(db, session, reason=REASON_EXPIRED, now=now)
    return len(sessions)
