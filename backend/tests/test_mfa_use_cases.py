from __future__ import annotations

from datetime import timedelta

import pytest

from trustauth.domain_errors import AuthenticationRequired, DomainError, Forbidden
from trustauth.models import MfaFactor, SecurityEvent
from trustauth.services import totp
from trustauth.services.clock import utc_now
from trustauth.use_cases.mfa import (
    complete_mfa_setup,
    decrypt_secret,
    encrypt_secret,
    start_mfa_setup,
    verify_mfa_challenge,
)
from trustauth.use_cases.sessions import create_session

# RFC 6238 appendix B, SHA-1 seed "12345678901234567890".
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


@pytest.mark.parametrize(
    ("at", "expected"),
    [(59, "287082"), (1111111109, "081804"), (1234567890, "005924"), (2000000000, "279037")],
)
def test_totp_matches_rfc_vectors(at, expected) -> None:
    assert totp.totp(RFC_SECRET, at=at) == expected


def test_verify_totp_tolerates_one_step_of_drift() -> None:
    at = 1_700_000_000
    previous = totp.totp(RFC_SECRET, at=at - 30)
    stale = totp.totp(RFC_SECRET, at=at - 90)

    assert totp.verify_totp(RFC_SECRET, previous, at=at, valid_window=1) is True
    assert totp.verify_totp(RFC_SECRET, stale, at=at, valid_window=1) is False
    assert totp.verify_totp(RFC_SECRET, "12345", at=at) is False


def test_provisioning_uri_carries_secret_and_issuer() -> None:
    uri = totp.provisioning_uri(RFC_SECRET, account_name="+919800000001", issuer="TrustAuth")

    assert uri.startswith("otpauth://totp/TrustAuth%3A%2B919800000001?")
    assert f"secret={RFC_SECRET}" in uri
    assert "issuer=TrustAuth" in uri


def test_secret_encryption_round_trip() -> None:
    secret = totp.generate_secret()
    token = encrypt_secret(secret)

    assert token != secret
    assert decrypt_secret(token) == secret


def test_unreadable_secret_raises_stable_error() -> None:
    with pytest.raises(DomainError) as exc_info:
        decrypt_secret("definitely-not-fernet")
    assert exc_info.value.code == "MFA_SECRET_UNREADABLE"


def _wrong_code(secret: str, at: float) -> str:
    live = {totp.totp(secret, at=at + drift * 30) for drift in (-1, 0, 1)}
    return next(code for code in ("000000", "111111", "222222", "333333") if code not in live)


def _enrolled_admin(db, make_user):
    admin = make_user(role="admin")
    issued = create_session(db, user_id=admin.id, role="admin")
    now = utc_now()
    setup = start_mfa_setup(db, user=admin, now=now)
    complete_mfa_setup(db, user=admin, code=totp.totp(setup.secret, at=now.timestamp()), now=now)
    return admin, issued.session, setup.secret


def test_mfa_is_admin_only(db, make_user) -> None:
    manager = make_user(role="manager")

    with pytest.raises(Forbidden) as exc_info:
        start_mfa_setup(db, user=manager)
    assert exc_info.value.code == "MFA_ADMIN_ONLY"


def test_setup_enables_mfa_and_steps_up_the_session(db, make_user) -> None:
    admin = make_user(role="admin")
    issued = create_session(db, user_id=admin.id, role="admin")
    now = utc_now()

    setup = start_mfa_setup(db, user=admin, now=now)
    factor = db.query(MfaFactor).filter(MfaFactor.user_id == admin.id).one()
    assert factor.secret_encrypted != setup.secret
    assert factor.verified_at is None

    complete_mfa_setup(
        db, user=admin, code=totp.totp(setup.secret, at=now.timestamp()), session=issued.session, now=now
    )

    assert admin.mfa_enabled is True
    assert issued.session.mfa_verified_at is not None
    assert db.query(SecurityEvent).filter(SecurityEvent.event_type == "MFA_SETUP_COMPLETED").count() == 1

    with pytest.raises(DomainError) as exc_info:
        start_mfa_setup(db, user=admin)
    assert exc_info.value.code == "MFA_ALREADY_ENABLED"


def test_setup_rejects_wrong_or_late_codes(db, make_user) -> None:
    admin = make_user(role="admin")
    now = utc_now()

    with pytest.raises(DomainError) as exc_info:
        complete_mfa_setup(db, user=admin, code="123456", now=now)
    assert exc_info.value.code == "MFA_SETUP_NOT_STARTED"

    setup = start_mfa_setup(db, user=admin, now=now)
    with pytest.raises(AuthenticationRequired) as exc_info:
        complete_mfa_setup(db, user=admin, code=_wrong_code(setup.secret, now.timestamp()), now=now)
    assert exc_info.value.code == "MFA_CODE_INVALID"

    late = now + timedelta(minutes=11)
    with pytest.raises(AuthenticationRequired) as exc_info:
        complete_mfa_setup(db, user=admin, code=totp.totp(setup.secret, at=late.timestamp()), now=late)
    assert exc_info.value.code == "MFA_SETUP_EXPIRED"


def test_challenge_success_marks_session(db, make_user) -> None:
    admin, session, secret = _enrolled_admin(db, make_user)
    now = utc_now()

    verify_mfa_challenge(db, user=admin, session=session, code=totp.totp(secret, at=now.timestamp()), now=now)

    assert session.mfa_verified_at is not None
    assert db.query(SecurityEvent).filter(SecurityEvent.event_type == "MFA_CHALLENGE_PASSED").count() == 1


def test_repeated_challenge_failures_lock_the_factor(db, make_user) -> None:
    admin, session, secret = _enrolled_admin(db, make_user)
    now = utc_now()
    wrong = _wrong_code(secret, now.timestamp())

    for remaining in (4, 3, 2, 1):
        with pytest.raises(AuthenticationRequired) as exc_info:
            verify_mfa_challenge(db, user=admin, session=session, code=wrong, now=now)
        assert exc_info.value.code == "MFA_CODE_INVALID"
        assert exc_info.value.details == {"attempts_remaining": remaining}

    with pytest.raises(Forbidden) as exc_info:
        verify_mfa_challenge(db, user=admin, session=session, code=wrong, now=now)
    assert exc_info.value.code == "MFA_LOCKED"

    # Locked even for a correct code.
    with pytest.raises(Forbidden):
        verify_mfa_challenge(db, user=admin, session=session, code=totp.totp(secret, at=now.timestamp()), now=now)

    failures = db.query(SecurityEvent).filter(SecurityEvent.event_type == "MFA_CHALLENGE_FAILED").all()
    assert len(failures) == 5
    assert all(event.severity == "error" for event in failures)
    assert session.mfa_verified_at is None


def test_challenge_requires_enrollment(db, make_user) -> None:
    admin = make_user(role="admin")
    session = create_session(db, user_id=admin.id, role="admin").session

    with pytest.raises(DomainError) as exc_info:
        verify_mfa_challenge(db, user=admin, session=session, code="123456")
    assert exc_info.value.code == "MFA_NOT_ENABLED"
