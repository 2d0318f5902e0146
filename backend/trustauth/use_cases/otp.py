"""Durable one-time login codes keyed by phone number or email address."""
from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from passlib.context import CryptContext
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..domain_errors import AuthenticationRequired, DomainError, ValidationError
from ..models import OtpRequest
from ..services.clock import as_utc, utc_now

logger = logging.getLogger(__name__)

PHONE_CHANNELS = ("whatsapp", "sms")
EMAIL_CHANNELS = ("email",)
PHONE_E164_PATTERN = re.compile(r"^\+91[6-9]\d{9}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

STATUS_ISSUED = "issued"
STATUS_RATE_LIMITED = "rate_limited"

otp_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=settings.OTP_BCRYPT_ROUNDS,
)


@dataclass(frozen=True)
class IssuedOtp:
    request: OtpRequest
    code: str

    @property
    def expires_at(self) -> datetime:
        return as_utc(self.request.expires_at)


@dataclass(frozen=True)
class OtpIdentifier:
    """A normalized phone number or email address."""

    kind: str
    value: str

    @property
    def column(self):
        return OtpRequest.phone_e164 if self.kind == "phone" else OtpRequest.email

    @property
    def channels(self) -> tuple[str, ...]:
        return PHONE_CHANNELS if self.kind == "phone" else EMAIL_CHANNELS

    @property
    def ttl(self) -> timedelta:
        minutes = settings.OTP_TTL_MINUTES if self.kind == "phone" else settings.EMAIL_OTP_TTL_MINUTES
        return timedelta(minutes=minutes)

    def masked(self) -> str:
        if self.kind == "phone":
            return self.value[:-4] + "****"
        local, _, domain = self.value.partition("@")
        return f"{local[:1]}***@{domain}"

    def row_fields(self) -> dict[str, str]:
        return {"phone_e164": self.value} if self.kind == "phone" else {"email": self.value}


def normalize_phone(raw: str | None) -> str:
    """Normalize Indian mobile numbers to ``+91XXXXXXXXXX``."""
    digits = re.sub(r"[\s\-().]", "", raw or "")
    if digits.startswith("+"):
        candidate = digits
    elif len(digits) == 10:
        candidate = f"+91{digits}"
    elif len(digits) == 12 and digits.startswith("91"):
        candidate = f"+{digits}"
    elif len(digits) == 11 and digits.startswith("0"):
        candidate = f"+91{digits[1:]}"
    else:
        candidate = digits
    if not PHONE_E164_PATTERN.match(candidate):
        raise ValidationError("Invalid mobile number", code="PHONE_INVALID")
    return candidate


def normalize_email(raw: str | None) -> str:
    candidate = (raw or "").strip().lower()
    if len(candidate) > 255 or not EMAIL_PATTERN.match(candidate):
        raise ValidationError("Invalid email address", code="EMAIL_INVALID")
    return candidate


def resolve_identifier(*, phone: str | None = None, email: str | None = None) -> OtpIdentifier:
    if bool(phone) == bool(email):
        raise ValidationError("Provide exactly one of phone or email", code="OTP_IDENTIFIER_REQUIRED")
    if phone:
        return OtpIdentifier(kind="phone", value=normalize_phone(phone))
    return OtpIdentifier(kind="email", value=normalize_email(email))


def _generate_code(length: int) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))


def _record_throttled(db: Session, request: OtpRequest) -> None:
    db.add(request)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to record throttled OTP request")


def issue_otp(
    db: Session,
    *,
    phone: str | None = None,
    email: str | None = None,
    channel: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    device_fingerprint: str | None = None,
    now: datetime | None = None,
) -> IssuedOtp:
    """Create a hashed OTP row. The raw code is only ever present in the return value.

    Over the per-identifier limit the request is still recorded (status
    ``rate_limited``, committed immediately) before ``OTP_RATE_LIMITED`` is raised.
    """
    identifier = resolve_identifier(phone=phone, email=email)
    channel = (channel or identifier.channels[0]).strip().lower()
    if channel not in identifier.channels:
        raise ValidationError(f"Unsupported OTP channel: {channel}", code="OTP_CHANNEL_INVALID")

    now = now or utc_now()
    user_agent = (user_agent or "")[:512] or None
    window_start = now - timedelta(minutes=settings.OTP_REQUEST_WINDOW_MINUTES)
    recent = (
        db.query(func.count(OtpRequest.id))
        .filter(
            identifier.column == identifier.value,
            OtpRequest.status == STATUS_ISSUED,
            OtpRequest.created_at >= window_start,
        )
        .scalar()
    )
    if int(recent or 0) >= settings.OTP_REQUESTS_PER_WINDOW:
        logger.warning("OTP request limit reached for %s", identifier.masked())
        _record_throttled(
            db,
            OtpRequest(
                **identifier.row_fields(),
                otp_hash=None,
                status=STATUS_RATE_LIMITED,
                channel=channel,
                expires_at=now,
                attempt_count=0,
                max_attempts=0,
                ip_address=ip_address,
                user_agent=user_agent,
                device_fingerprint=device_fingerprint,
                created_at=now,
            ),
        )
        raise DomainError(
            code="OTP_RATE_LIMITED",
            http_status=429,
            message="Too many OTP requests. Try again later.",
            details={"window_minutes": settings.OTP_REQUEST_WINDOW_MINUTES},
        )

    code = _generate_code(settings.OTP_LENGTH)
    request = OtpRequest(
        **identifier.row_fields(),
        otp_hash=otp_context.hash(code),
        status=STATUS_ISSUED,
        channel=channel,
        expires_at=now + identifier.ttl,
        attempt_count=0,
        max_attempts=settings.OTP_MAX_ATTEMPTS,
        ip_address=ip_address,
        user_agent=user_agent,
        device_fingerprint=device_fingerprint,
        created_at=now,
    )
    db.add(request)
    db.flush()
    return IssuedOtp(request=request, code=code)


def verify_otp(
    db: Session,
    *,
    code: str,
    phone: str | None = None,
    email: str | None = None,
    now: datetime | None = None,
) -> OtpRequest:
    """Consume the latest live OTP for the phone number or email address.

    A wrong code increments ``attempt_count`` before raising; the caller must
    commit on failure for the counter to stick.
    """
    identifier = resolve_identifier(phone=phone, email=email)
    candidate = (code or "").strip()
    if len(candidate) != settings.OTP_LENGTH or not candidate.isdigit():
        raise ValidationError(f"OTP must be {settings.OTP_LENGTH} digits", code="OTP_MALFORMED")

    now = now or utc_now()
    request = (
        db.query(OtpRequest)
        .filter(
            identifier.column == identifier.value,
            OtpRequest.status == STATUS_ISSUED,
            OtpRequest.consumed_at.is_(None),
        )
        .order_by(OtpRequest.created_at.desc())
        .with_for_update()
        .first()
    )
    if request is None or now > as_utc(request.expires_at):
        raise AuthenticationRequired("OTP expired or not found", code="OTP_EXPIRED")
    if request.attempt_count >= request.max_attempts:
        raise AuthenticationRequired("Too many incorrect attempts. Request a new OTP.", code="OTP_ATTEMPTS_EXCEEDED")

    request.attempt_count += 1
    if not otp_context.verify(candidate, request.otp_hash):
        db.flush()
        remaining = max(0, request.max_attempts - request.attempt_count)
        raise AuthenticationRequired(
            "Invalid OTP",
            code="OTP_INVALID",
            details={"attempts_remaining": remaining},
        )

    request.consumed_at = now
    db.flush()
    return request
