from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest

from trustauth.domain_errors import AuthenticationRequired, ValidationError
from trustauth.models import AuditLogEntry, UserSession
from trustauth.services.clock import as_utc, utc_now
from trustauth.services.roles import Role
from trustauth.services.tokens import create_session_token, hash_refresh_token
from trustauth.use_cases.audit_chain import verify_chain
from trustauth.use_cases.sessions import (
    REASON_DEVICE_CONFLICT,
    REASON_LOGOUT,
    REASON_ROTATED,
    create_session,
    expire_stale_sessions,
    refresh_session,
    revoke_session,
    revoke_user_sessions,
    session_ttl_for_role,
    validate_session,
)


def test_create_session_persists_hashed_refresh_token_and_role_ttl(db, make_user) -> None:
    user = make_user(role="technician")
    now = utc_now()

    issued = create_session(db, user_id=user.id, role="technician", device_id="d" * 64, now=now)
    db.commit()

    session = issued.session
    assert session.refresh_token_hash == hash_refresh_token(issued.refresh_token)
    assert session.refresh_token_hash != issued.refresh_token
    assert issued.expires_at - now == timedelta(hours=12)
    assert session.revoked is False
    assert session.status == "active"


def test_role_ttls() -> None:
    assert session_ttl_for_role(Role.CUSTOMER) == timedelta(hours=6)
    assert session_ttl_for_role(Role.TRANSPORTER) == timedelta(hours=12)
    assert session_ttl_for_role(Role.ADMIN) == timedelta(hours=24)


@pytest.mark.parametrize(
    ("kwargs", "code"),
    [
        ({"user_id": None, "role": "customer"}, "USER_ID_REQUIRED"),
        ({"user_id": uuid4(), "role": None}, "ROLE_REQUIRED"),
        ({"user_id": uuid4(), "role": "superuser"}, "ROLE_UNKNOWN"),
        ({"user_id": uuid4(), "role": "customer", "ttl": timedelta(0)}, "SESSION_TTL_INVALID"),
    ],
)
def test_create_session_rejects_invalid_input(db, kwargs, code) -> None:
    with pytest.raises(ValidationError) as exc_info:
        create_session(db, **kwargs)
    assert exc_info.value.code == code


def test_create_session_is_audited_on_the_chain(db, make_user) -> None:
    user = make_user()

    issued = create_session(db, user_id=user.id, role="customer")
    db.commit()

    entry = db.query(AuditLogEntry).filter(AuditLogEntry.event_type == "SESSION_CREATED").one()
    assert entry.entity_id == str(issued.session.id)
    assert entry.actor_user_id == user.id
    assert verify_chain(db).ok is True


def test_validate_session_accepts_live_session(db, make_user) -> None:
    user = make_user()
    issued = create_session(db, user_id=user.id, role="customer")
    db.commit()

    result = validate_session(db, issued.access_token)

    assert result.valid is True
    assert result.session.id == issued.session.id
    assert result.reason is None


@pytest.mark.parametrize(
    ("token", "reason"),
    [
        (None, "missing_token"),
        ("", "missing_token"),
        ("not-a-jwt", "invalid_token"),
    ],
)
def test_validate_session_rejects_malformed_tokens(db, token, reason) -> None:
    result = validate_session(db, token)

    assert result.valid is False
    assert result.reason == reason
    assert result.message


def test_validate_session_rejects_unknown_session(db) -> None:
    now = utc_now()
    token = create_session_token(
        user_id=uuid4(), session_id=uuid4(), role="customer", expires_at=now + timedelta(hours=1), issued_at=now
    )

    assert validate_session(db, token).reason == "not_found"


def test_validate_session_rejects_future_issued_token(db, make_user) -> None:
    user = make_user()
    issued = create_session(db, user_id=user.id, role="customer")
    db.commit()

    earlier = utc_now() - timedelta(minutes=10)

    assert validate_session(db, issued.access_token, now=earlier).reason == "invalid_token"


def test_expired_session_is_rejected(db, make_user) -> None:
    user = make_user()
    started = utc_now() - timedelta(hours=3)
    issued = create_session(db, user_id=user.id, role="customer", ttl=timedelta(hours=1), now=started)
    db.commit()

    result = validate_session(db, issued.access_token)

    assert result.valid is False
    assert result.reason == "expired"


def test_revocation_dominates_expiry(db, make_user) -> None:
    user = make_user()
    started = utc_now() - timedelta(hours=3)
    issued = create_session(db, user_id=user.id, role="customer", ttl=timedelta(hours=1), now=started)
    revoke_session(db, issued.session.id, reason=REASON_LOGOUT)
    db.commit()

    result = validate_session(db, issued.access_token)

    assert result.valid is False
    assert result.reason == "revoked"


def test_device_conflict_revocation_reports_logged_in_elsewhere(db, make_user) -> None:
    user = make_user(role="technician")
    issued = create_session(db, user_id=user.id, role="technician", device_id="a" * 64)
    revoke_session(db, issued.session.id, reason=REASON_DEVICE_CONFLICT)
    db.commit()

    result = validate_session(db, issued.access_token)

    assert result.reason == "logged_in_elsewhere"
    assert result.message == "Logged in on another device"


def test_revoke_session_is_idempotent(db, make_user) -> None:
    user = make_user()
    issued = create_session(db, user_id=user.id, role="customer")
    first = revoke_session(db, issued.session.id, reason=REASON_LOGOUT)
    logged_out_at = first.logged_out_at
    second = revoke_session(db, issued.session.id, reason="something_else")
    db.commit()

    assert second.revoked_reason == REASON_LOGOUT
    assert as_utc(second.logged_out_at) == as_utc(logged_out_at)
    assert revoke_session(db, uuid4(), reason=REASON_LOGOUT) is None
    revoked_entries = db.query(AuditLogEntry).filter(AuditLogEntry.event_type == "SESSION_REVOKED").count()
    assert revoked_entries == 1


def test_revoke_user_sessions_can_keep_the_current_session(db, make_user) -> None:
    user = make_user()
    keep = create_session(db, user_id=user.id, role="customer")
    create_session(db, user_id=user.id, role="customer")
    create_session(db, user_id=user.id, role="customer")

    revoked = revoke_user_sessions(db, user_id=user.id, reason="logout_all", exclude_session_id=keep.session.id)
    db.commit()

    assert len(revoked) == 2
    assert validate_session(db, keep.access_token).valid is True


def test_refresh_rotates_and_blocks_replay(db, make_user) -> None:
    user = make_user()
    original = create_session(db, user_id=user.id, role="customer", ip_address="10.1.1.1")
    db.commit()

    rotated = refresh_session(db, original.refresh_token, ip_address="10.1.1.2")
    db.commit()

    old = db.query(UserSession).filter(UserSession.id == original.session.id).one()
    assert old.revoked is True
    assert old.revoked_reason == REASON_ROTATED
    assert old.replaced_by_session_id == rotated.session.id
    assert rotated.refresh_token != original.refresh_token
    assert validate_session(db, rotated.access_token).valid is True
    assert validate_session(db, original.access_token).reason == "revoked"

    with pytest.raises(AuthenticationRequired) as exc_info:
        refresh_session(db, original.refresh_token)
    assert exc_info.value.code == "REFRESH_TOKEN_REVOKED"


@pytest.mark.parametrize(("token", "code"), [(None, "REFRESH_TOKEN_MISSING"), ("bogus", "REFRESH_TOKEN_INVALID")])
def test_refresh_rejects_missing_or_unknown_token(db, token, code) -> None:
    with pytest.raises(AuthenticationRequired) as exc_info:
        refresh_session(db, token)
    assert exc_info.value.code == code


def test_refresh_after_device_takeover_reports_logged_in_elsewhere(db, make_user) -> None:
    user = make_user(role="transporter")
    issued = create_session(db, user_id=user.id, role="transporter", device_id="a" * 64)
    revoke_session(db, issued.session.id, reason=REASON_DEVICE_CONFLICT)
    db.commit()

    with pytest.raises(AuthenticationRequired) as exc_info:
        refresh_session(db, issued.refresh_token)
    assert exc_info.value.code == "SESSION_LOGGED_IN_ELSEWHERE"


def test_refresh_rejects_role_change_and_inactive_user(db, make_user) -> None:
    user = make_user(role="manager")
    issued = create_session(db, user_id=user.id, role="manager")
    user.role = "technician"
    db.commit()

    with pytest.raises(AuthenticationRequired) as exc_info:
        refresh_session(db, issued.refresh_token)
    assert exc_info.value.code == "SESSION_ROLE_CHANGED"

    user.is_active = False
    db.commit()
    with pytest.raises(AuthenticationRequired) as exc_info:
        refresh_session(db, issued.refresh_token)
    assert exc_info.value.code == "USER_INACTIVE"


def test_expire_stale_sessions_marks_only_expired_rows(db, make_user) -> None:
    user = make_user()
    stale = create_session(
        db, user_id=user.id, role="customer", ttl=timedelta(hours=1), now=utc_now() - timedelta(hours=2)
    )
    live = create_session(db, user_id=user.id, role="customer")
    db.commit()

    assert expire_stale_sessions(db) == 1
    db.commit()

    assert db.query(UserSession).filter(UserSession.id == stale.session.id).one().revoked_reason == "expired"
    assert validate_session(db, live.access_token).valid is True
