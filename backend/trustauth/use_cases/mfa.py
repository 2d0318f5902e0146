"""Admin TOTP enrollment and step-up challenge."""
from __future__ import annotations

import base64
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import Session

from ..config import settings
from ..domain_errors import AuthenticationRequired, DomainError, Forbidden
from ..models import MfaFactor, User, UserSession
from ..services import totp
from ..services.clock import as_utc, utc_now
from ..services.event_types import SecurityEventType
from ..services.roles import Role
from .security_events import record_security_event
from .sessions import mark_session_mfa_verified

logger = logging.getLogger(__name__)

MFA_SETUP_TTL = timedelta(minutes=10)


@dataclass(frozen=True)
class MfaSetup:
    secret: str
    otpauth_uri: str
    expires_at: datetime


def _fernet() -> Fernet:
    key = settings.MFA_ENCRYPTION_KEY
    if not key:
        # Derive a stable Fernet key from the signing secret when no dedicated key is configured.
        key = base64.urlsafe_b64encode(hashlib.sha256(settings.JWT_SECRET_KEY.encode("utf-8")).digest()).decode()
    return Fernet(key.encode("utf-8") if isinstance(key, str) else key)


def encrypt_secret(secret: str) -> str:
    return _fernet().encrypt(secret.encode("utf-8")).decode("ascii")


def decrypt_secret(token: str) -> str:
    try:
        return _fernet().decrypt(token.encode("ascii")).decode("utf-8")
    except InvalidToken:
        logger.error("MFA secret could not be decrypted; encryption key changed?")
        raise DomainError(code="MFA_SECRET_UNREADABLE", http_status=500, message="MFA factor is unreadable") from None


def _require_admin(user: User) -> None:
    if user.role != Role.ADMIN.value:
        raise Forbidden("MFA is only available to administrators", code="MFA_ADMIN_ONLY")


def _get_factor(db: Session, user_id) -> MfaFactor | None:
    return db.query(MfaFactor).filter(MfaFactor.user_id == user_id).with_for_update().first()


def start_mfa_setup(db: Session, *, user: User, now: datetime | None = None) -> MfaSetup:
    _require_admin(user)
    now = now or utc_now()
    factor = _get_factor(db, user.id)
    if factor is not None and factor.verified_at is not None:
        raise DomainError(code="MFA_ALREADY_ENABLED", http_status=409, message="MFA is already enabled")

    secret = totp.generate_secret()
    if factor is None:
        factor = MfaFactor(user_id=user.id, secret_encrypted="")
        db.add(factor)
    factor.secret_encrypted = encrypt_secret(secret)
    factor.setup_expires_at = now + MFA_SETUP_TTL
    factor.failed_attempts = 0
    db.commit()
    return MfaSetup(
        secret=secret,
        otpauth_uri=totp.provisioning_uri(
            secret, account_name=user.phone_e164 or user.email, issuer=settings.MFA_ISSUER
        ),
        expires_at=now + MFA_SETUP_TTL,
    )


def complete_mfa_setup(
    db: Session,
    *,
    user: User,
    code: str,
    session: UserSession | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> MfaFactor:
    _require_admin(user)
    now = now or utc_now()
    factor = _get_factor(db, user.id)
    if factor is None:
        raise DomainError(code="MFA_SETUP_NOT_STARTED", http_status=404, message="MFA setup has not been started")
    if factor.verified_at is not None:
        raise DomainError(code="MFA_ALREADY_ENABLED", http_status=409, message="MFA is already enabled")
    if factor.setup_expires_at is None or now > as_utc(factor.setup_expires_at):
        raise AuthenticationRequired("MFA setup expired; start again", code="MFA_SETUP_EXPIRED")

    if not totp.verify_totp(
        decrypt_secret(factor.secret_encrypted), code, at=now.timestamp(), valid_window=settings.MFA_VALID_WINDOW
    ):
        factor.failed_attempts = int(factor.failed_attempts or 0) + 1
        db.commit()
        raise AuthenticationRequired("Invalid verification code", code="MFA_CODE_INVALID")

    factor.verified_at = now
    factor.setup_expires_at = None
    factor.failed_attempts = 0
    user.mfa_enabled = True
    if session is not None:
        mark_session_mfa_verified(db, session, now=now)
    record_security_event(
        db,
        event_type=SecurityEventType.MFA_SETUP_COMPLETED,
        actor_user_id=user.id,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata={"method": "totp"},
        at=now,
    )
    db.commit()
    return factor


def verify_mfa_challenge(
    db: Session,
    *,
    user: User,
    session: UserSession,
    code: str,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> UserSession:
    """Step up ``session`` with a TOTP code; repeated failures lock the factor."""
    _require_admin(user)
    now = now or utc_now()
    factor = _get_factor(db, user.id)
    if factor is None or factor.verified_at is None:
        raise DomainError(code="MFA_NOT_ENABLED", http_status=409, message="MFA is not enabled")
    if int(factor.failed_attempts or 0) >= settings.MFA_MAX_FAILED_ATTEMPTS:
        raise Forbidden("MFA locked after repeated failures; contact another administrator", code="MFA_LOCKED")

    if totp.verify_totp(
        decrypt_secret(factor.secret_encrypted), code, at=now.timestamp(), valid_window=settings.MFA_VALID_WINDOW
    ):
        factor.failed_attempts = 0
        mark_session_mfa_verified(db, session, now=now)
        record_security_event(
            db,
            event_type=SecurityEventType.MFA_CHALLENGE_PASSED,
            actor_user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"session_id": str(session.id)},
            at=now,
        )
        db.commit()
        return session

    factor.failed_attempts = int(factor.failed_attempts or 0) + 1
    attempts = factor.failed_attempts
    record_security_event(
        db,
        event_type=SecurityEventType.MFA_CHALLENGE_FAILED,
        actor_user_id=user.id,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata={"session_id": str(session.id), "failed_attempts": attempts},
        at=now,
    )
    db.commit()
    if attempts >= settings.MFA_MAX_FAILED_ATTEMPTS:
        raise Forbidden("MFA locked after repeated failures; contact another administrator", code="MFA_LOCKED")
    raise AuthenticationRequired(
        "Invalid verification code",
        code="MFA_CODE_INVALID",
        details={"attempts_remaining": settings.MFA_MAX_FAILED_ATTEMPTS - attempts},
    )
