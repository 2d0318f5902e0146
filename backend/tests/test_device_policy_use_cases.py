from __future__ import annotations

from types import SimpleNamespace
from uuid import uuid4

import pytest
from sqlalchemy.orm import Query

from trustauth.config import settings
from trustauth.domain_errors import DomainError, Forbidden, ValidationError
from trustauth.models import AuditLogEntry, DeviceConflict, DeviceLock
from trustauth.use_cases.device_policy import (
    admin_unlock_device,
    allow_device_override,
    enforce_device_policy,
    list_device_conflicts,
)
from trustauth.use_cases.sessions import create_session, validate_session

DEVICE_A = "a" * 64
DEVICE_B = "b" * 64
DEVICE_C = "c" * 64


def _lock(db, user):
    db.expire_all()
    return db.query(DeviceLock).filter(DeviceLock.user_id == user.id).first()


def test_roles_outside_the_policy_are_not_enforced(db, make_user) -> None:
    customer = make_user(role="customer")

    decision = enforce_device_policy(db, user_id=customer.id, role="customer", device_id=None)

    assert decision.outcome == "not_enforced"
    assert decision.allowed is True
    assert _lock(db, customer) is None


def test_policy_role_requires_a_device_id(db, make_user) -> None:
    tech = make_user(role="technician")

    with pytest.raises(ValidationError) as exc_info:
        enforce_device_policy(db, user_id=tech.id, role="technician", device_id="")
    assert exc_info.value.code == "DEVICE_ID_REQUIRED"


def test_first_login_binds_and_repeat_login_is_same_device(db, make_user) -> None:
    tech = make_user(role="technician")

    first = enforce_device_policy(db, user_id=tech.id, role="technician", device_id=DEVICE_A)
    again = enforce_device_policy(db, user_id=tech.id, role="technician", device_id=DEVICE_A)

    assert first.outcome == "bound"
    assert again.outcome == "same_device"
    assert _lock(db, tech).device_id == DEVICE_A
    assert db.query(DeviceConflict).count() == 0


def test_same_device_login_row_locks_the_binding(db, make_user, monkeypatch) -> None:
    tech = make_user(role="technician")
    enforce_device_policy(db, user_id=tech.id, role="technician", device_id=DEVICE_A)
    locked = []
    original = Query.with_for_update

    def _spy(self, *args, **kwargs):
        locked.append(self.column_descriptions[0]["entity"])
        return original(self, *args, **kwargs)

    monkeypatch.setattr(Query, "with_for_update", _spy)

    decision = enforce_device_policy(db, user_id=tech.id, role="technician", device_id=DEVICE_A)

    assert decision.outcome == "same_device"
    assert DeviceLock in locked


def test_takeover_rebinds_and_logs_out_the_old_device(db, make_user) -> None:
    tech = make_user(role="technician")
    enforce_device_policy(db, user_id=tech.id, role="technician", device_id=DEVICE_A)
    old = create_session(db, user_id=tech.id, role="technician", device_id=DEVICE_A)
    db.commit()

    decision = enforce_device_policy(
        db, user_id=tech.id, role="technician", device_id=DEVICE_B, ip_address="10.9.9.9", mode="takeover"
    )
    db.commit()

    assert decision.outcome == "takeover"
    assert decision.previous_device == DEVICE_A
    assert [s.id for s in decision.revoked_sessions] == [old.session.id]
    assert _lock(db, tech).device_id == DEVICE_B

    conflict = db.query(DeviceConflict).one()
    assert (conflict.old_device, conflict.new_device, conflict.resolution) == (DEVICE_A, DEVICE_B, "takeover")
    assert conflict.ip_address == "10.9.9.9"
    assert validate_session(db, old.access_token).reason == "logged_in_elsewhere"


def test_reject_mode_keeps_the_binding_and_records_the_conflict(db, make_user, monkeypatch) -> None:
    monkeypatch.setattr(settings, "DEVICE_CONFLICT_MODE", "reject")
    tech = make_user(role="transporter")
    enforce_device_policy(db, user_id=tech.id, role="transporter", device_id=DEVICE_A)
    old = create_session(db, user_id=tech.id, role="transporter", device_id=DEVICE_A)
    db.commit()

    decision = enforce_device_policy(db, user_id=tech.id, role="transporter", device_id=DEVICE_B)
    db.commit()

    assert decision.outcome == "rejected"
    assert decision.allowed is False
    assert _lock(db, tech).device_id == DEVICE_A
    assert db.query(DeviceConflict).one().resolution == "rejected"
    assert validate_session(db, old.access_token).valid is True


def test_unknown_conflict_mode_is_a_configuration_error(db, make_user) -> None:
    tech = make_user(role="technician")
    enforce_device_policy(db, user_id=tech.id, role="technician", device_id=DEVICE_A)

    with pytest.raises(ValueError):
        enforce_device_policy(db, user_id=tech.id, role="technician", device_id=DEVICE_B, mode="coinflip")


def test_admin_override_allows_one_silent_switch(db, make_user) -> None:
    admin = make_user(role="admin")
    tech = make_user(role="technician")
    enforce_device_policy(db, user_id=tech.id, role="technician", device_id=DEVICE_A)
    db.commit()

    lock = allow_device_override(db, user_id=tech.id, actor=admin)
    assert lock.override_allowed is True

    switched = enforce_device_policy(db, user_id=tech.id, role="technician", device_id=DEVICE_B, mode="reject")
    db.commit()
    assert switched.outcome == "override"
    assert db.query(DeviceConflict).count() == 0

    lock = _lock(db, tech)
    assert lock.device_id == DEVICE_B
    assert lock.override_allowed is False

    # The override was consumed; the next switch conflicts again.
    blocked = enforce_device_policy(db, user_id=tech.id, role="technician", device_id=DEVICE_C, mode="reject")
    assert blocked.outcome == "rejected"

    audit = db.query(AuditLogEntry).filter(AuditLogEntry.event_type == "DEVICE_LOCK_OVERRIDE").one()
    assert audit.severity == "warning"
    assert audit.actor_user_id == admin.id


def test_override_requires_an_existing_lock(db, make_user) -> None:
    admin = make_user(role="admin")
    tech = make_user(role="technician")

    with pytest.raises(DomainError) as exc_info:
        allow_device_override(db, user_id=tech.id, actor=admin)
    assert exc_info.value.code == "DEVICE_LOCK_NOT_FOUND"
    assert exc_info.value.http_status == 404


def test_admin_unlock_removes_binding_and_is_audited(db, make_user) -> None:
    admin = make_user(role="admin")
    tech = make_user(role="technician")
    enforce_device_policy(db, user_id=tech.id, role="technician", device_id=DEVICE_A)
    db.commit()

    assert admin_unlock_device(db, user_id=tech.id, actor=admin, ip_address="10.0.0.5") is True
    assert _lock(db, tech) is None
    assert admin_unlock_device(db, user_id=tech.id, actor=admin) is False

    entry = db.query(AuditLogEntry).filter(AuditLogEntry.event_type == "DEVICE_UNLOCK_PERFORMED").one()
    assert entry.severity == "high"
    assert entry.entity_id == str(tech.id)
    assert entry.details["previous_device"] == DEVICE_A

    rebound = enforce_device_policy(db, user_id=tech.id, role="technician", device_id=DEVICE_B)
    assert rebound.outcome == "bound"


def test_unlock_requires_admin_and_a_policy_user(db, make_user) -> None:
    admin = make_user(role="admin")
    customer = make_user(role="customer")
    tech = make_user(role="technician")

    with pytest.raises(Forbidden) as exc_info:
        admin_unlock_device(db, user_id=tech.id, actor=SimpleNamespace(id=uuid4(), role="manager"))
    assert exc_info.value.code == "DEVICE_ADMIN_REQUIRED"

    with pytest.raises(ValidationError) as exc_info:
        admin_unlock_device(db, user_id=customer.id, actor=admin)
    assert exc_info.value.code == "DEVICE_POLICY_NOT_APPLICABLE"

    with pytest.raises(DomainError) as exc_info:
        admin_unlock_device(db, user_id=uuid4(), actor=admin)
    assert exc_info.value.code == "USER_NOT_FOUND"


def test_list_device_conflicts_newest_first(db, make_user) -> None:
    tech = make_user(role="technician")
    enforce_device_policy(db, user_id=tech.id, role="technician", device_id=DEVICE_A)
    enforce_device_policy(db, user_id=tech.id, role="technician", device_id=DEVICE_B, mode="takeover")
    enforce_device_policy(db, user_id=tech.id, role="technician", device_id=DEVICE_C, mode="takeover")
    db.commit()

    conflicts = list_device_conflicts(db, user_id=tech.id)

    assert [c.new_device for c in conflicts] == [DEVICE_C, DEVICE_B]
