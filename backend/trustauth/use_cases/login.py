"""OTP login and logout orchestration."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..domain_errors import AuthenticationRequired, DeviceConflictError, DomainError, Forbidden
from ..models import User, UserSession
from ..services.clock import utc_now
from ..services.fingerprint import compute_fingerprint
from ..services.roles import Role, parse_role
from .device_policy import DevicePolicyDecision, enforce_device_policy
from .otp import verify_otp
from .security_events import EventOutcome, evaluate_login_context
from .sessions import (
    REASON_LOGOUT,
    REASON_LOGOUT_ALL,
    REASON_SUPERSEDED,
    IssuedSession,
    create_session,
    revoke_session,
    revoke_user_sessions,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoginResult:
    user: User
    issued: IssuedSession
    device_decision: DevicePolicyDecision
    security_events: list[EventOutcome] = field(default_factory=list)
    is_new_user: bool = False

    @property
    def mfa_required(self) -> bool:
        return self.user.role == Role.ADMIN.value and bool(self.user.mfa_enabled)


def _commit(db: Session, *, what: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to persist %s", what)
        raise DomainError(code="SESSION_PERSIST_FAILED", http_status=500, message=f"Failed to persist {what}") from None


def _resolve_device_id(
    *, device_fingerprint: str | None, device_signals: Mapping[str, Any] | None, fallback: str | None
) -> str | None:
    if device_fingerprint:
        return device_fingerprint.strip().lower()
    if device_signals is not None:
        return compute_fingerprint(device_signals)
    return fallback


def login_with_otp_use_case(
    *,
    db: Session,
    code: str,
    phone: str | None = None,
    email: str | None = None,
    device_fingerprint: str | None = None,
    device_signals: Mapping[str, Any] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> LoginResult:
    now = now or utc_now()
    try:
        otp_request = verify_otp(db, phone=phone, email=email, code=code, now=now)
    except AuthenticationRequired:
        # Persist the attempt counter before surfacing the failure.
        _commit(db, what="OTP attempt")
        raise

    if otp_request.email is not None:
        user = db.query(User).filter(User.email == otp_request.email).first()
    else:
        user = db.query(User).filter(User.phone_e164 == otp_request.phone_e164).first()
    is_new_user = False
    if user is None:
        user = User(
            phone_e164=otp_request.phone_e164,
            email=otp_request.email,
            role=Role.CUSTOMER.value,
            is_active=True,
        )
        db.add(user)
        db.flush()
        is_new_user = True
        logger.info("Provisioned customer account %s", user.id)
    if not user.is_active:
        _commit(db, what="consumed OTP")
        raise Forbidden("Account is disabled", code="ACCOUNT_DISABLED")

    role = parse_role(user.role)
    device_id = _resolve_device_id(
        device_fingerprint=device_fingerprint,
        device_signals=device_signals,
        fallback=otp_request.device_fingerprint,
    )

    events = evaluate_login_context(
        db,
        user_id=user.id,
        device_id=device_id,
        ip_address=ip_address,
        user_agent=user_agent,
        at=now,
    )

    decision = enforce_device_policy(
        db,
        user_id=user.id,
        role=role,
        device_id=device_id,
        ip_address=ip_address,
        user_agent=user_agent,
        now=now,
    )
    if not decision.allowed:
        # The conflict record is kept even though the login is refused.
        _commit(db, what="device conflict")
        raise DeviceConflictError(old_device=decision.previous_device, new_device=device_id)

    if role.value in settings.single_device_roles:
        revoke_user_sessions(db, user_id=user.id, role=role, reason=REASON_SUPERSEDED, now=now)

    issued = create_session(
        db,
        user_id=user.id,
        role=role,
        device_id=device_id,
        ip_address=ip_address,
        user_agent=user_agent,
        now=now,
    )
    _commit(db, what="login session")
    return LoginResult(
        user=user,
        issued=issued,
        device_decision=decision,
        security_events=events,
        is_new_user=is_new_user,
    )


def logout_use_case(*, db: Session, session: UserSession, everywhere: bool = False) -> int:
    """Revoke the current session, or all of the user's sessions. Returns how many were revoked."""
    if everywhere:
        revoked = revoke_user_sessions(
            db,
            user_id=session.user_id,
            reason=REASON_LOGOUT_ALL,
            actor_user_id=session.user_id,
            actor_role=session.role,
        )
        count = len(revoked)
    else:
        count = 1 if not session.revoked else 0
        revoke_session(
            db,
            session.id,
            reason=REASON_LOGOUT,
            actor_user_id=session.user_id,
            actor_role=session.role,
        )
    _commit(db, what="logout")
    return count
