"""Single-active-device policy for field roles.

Per user the lock moves through ``Unbound -> Bound(d) -> Bound(d') -> Unbound``.
Binding is an insert guarded by the unique ``user_id``; a device swap is a
single conditional UPDATE on the expected current device, so two concurrent
logins cannot both win the binding.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..domain_errors import DomainError, Forbidden, ValidationError
from ..models import DeviceConflict, DeviceLock, User, UserSession
from ..services.clock import utc_now
from ..services.event_types import AuditEventType
from ..services.roles import Role, parse_role
from .audit_chain import append_audit_entry
from .sessions import REASON_DEVICE_CONFLICT, revoke_user_sessions

logger = logging.getLogger(__name__)

CONFLICT_MODES = ("takeover", "reject")

OUTCOME_NOT_ENFORCED = "not_enforced"
OUTCOME_BOUND = "bound"
OUTCOME_SAME_DEVICE = "same_device"
OUTCOME_OVERRIDE = "override"
OUTCOME_TAKEOVER = "takeover"
OUTCOME_REJECTED = "rejected"


@dataclass(frozen=True)
class DevicePolicyDecision:
    outcome: str
    device_id: str | None
    previous_device: str | None = None
    conflict: DeviceConflict | None = None
    revoked_sessions: tuple[UserSession, ...] = field(default_factory=tuple)

    @property
    def allowed(self) -> bool:
        return self.outcome != OUTCOME_REJECTED


def _conflict_mode(mode: str | None) -> str:
    value = (mode or settings.DEVICE_CONFLICT_MODE or "").strip().lower()
    if value not in CONFLICT_MODES:
        raise ValueError(f"Unsupported DEVICE_CONFLICT_MODE: {value!r}")
    return value


def _get_lock(db: Session, user_id: UUID) -> DeviceLock | None:
    """Row-lock the binding so a same-device login and a takeover serialize."""
    return db.query(DeviceLock).filter(DeviceLock.user_id == user_id).with_for_update().first()


def _try_bind(db: Session, *, user_id: UUID, device_id: str) -> bool:
    """Insert the first lock. Returns False when a concurrent login bound first."""
    try:
        with db.begin_nested():
            db.add(DeviceLock(user_id=user_id, device_id=device_id, override_allowed=False))
            db.flush()
    except IntegrityError:
        logger.info("Concurrent device bind for user %s; re-reading lock", user_id)
        return False
    return True


def _swap_device(
    db: Session, *, lock: DeviceLock, expected_device: str, new_device: str, require_override: bool, now: datetime
) -> bool:
    """Compare-and-swap the bound device. Consumes ``override_allowed`` on success."""
    conditions = [DeviceLock.user_id == lock.user_id, DeviceLock.device_id == expected_device]
    if require_override:
        conditions.append(DeviceLock.override_allowed.is_(True))
    result = db.execute(
        update(DeviceLock)
        .where(*conditions)
        .values(device_id=new_device, override_allowed=False, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.expire(lock)
    return result.rowcount == 1


def _record_conflict(
    db: Session,
    *,
    user_id: UUID,
    old_device: str,
    new_device: str,
    resolution: str,
    ip_address: str | None,
    user_agent: str | None,
    now: datetime,
) -> DeviceConflict:
    conflict = DeviceConflict(
        user_id=user_id,
        old_device=old_device,
        new_device=new_device,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:512] or None,
        resolution=resolution,
        detected_at=now,
    )
    db.add(conflict)
    db.flush()
    logger.warning(
        "Device conflict for user %s resolved as %s (old=%s new=%s)",
        user_id,
        resolution,
        old_device[:12],
        new_device[:12],
    )
    return conflict


def enforce_device_policy(
    db: Session,
    *,
    user_id: UUID,
    role: str | Role,
    device_id: str | None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    mode: str | None = None,
    now: datetime | None = None,
) -> DevicePolicyDecision:
    """Apply the single-device policy to a login attempt.

    ``rejected`` leaves the lock untouched but still writes the conflict row;
    the caller commits it before refusing the login.
    """
    parsed_role = parse_role(role)
    if parsed_role.value not in settings.single_device_roles:
        return DevicePolicyDecision(outcome=OUTCOME_NOT_ENFORCED, device_id=device_id)
    if not device_id:
        raise ValidationError(
            "Device fingerprint is required for this role",
            code="DEVICE_ID_REQUIRED",
            details={"role": parsed_role.value},
        )
    conflict_mode = _conflict_mode(mode)
    now = now or utc_now()

    lock = _get_lock(db, user_id)
    if lock is None:
        if _try_bind(db, user_id=user_id, device_id=device_id):
            return DevicePolicyDecision(outcome=OUTCOME_BOUND, device_id=device_id)
        lock = _get_lock(db, user_id)
        if lock is None:
            raise DomainError(
                code="DEVICE_LOCK_UNAVAILABLE",
                http_status=503,
                message="Device binding is busy, retry the login",
            )

    if lock.device_id == device_id:
        return DevicePolicyDecision(outcome=OUTCOME_SAME_DEVICE, device_id=device_id)

    old_device = lock.device_id
    if lock.override_allowed and _swap_device(
        db, lock=lock, expected_device=old_device, new_device=device_id, require_override=True, now=now
    ):
        revoked = revoke_user_sessions(
            db, user_id=user_id, reason=REASON_DEVICE_CONFLICT, device_id=old_device, now=now
        )
        logger.info("Admin override consumed for user %s", user_id)
        return DevicePolicyDecision(
            outcome=OUTCOME_OVERRIDE,
            device_id=device_id,
            previous_device=old_device,
            revoked_sessions=tuple(revoked),
        )

    if conflict_mode == "reject" or not _swap_device(
        db, lock=lock, expected_device=old_device, new_device=device_id, require_override=False, now=now
    ):
        conflict = _record_conflict(
            db,
            user_id=user_id,
            old_device=old_device,
            new_device=device_id,
            resolution="rejected",
            ip_address=ip_address,
            user_agent=user_agent,
            now=now,
        )
        return DevicePolicyDecision(
            outcome=OUTCOME_REJECTED, device_id=device_id, previous_device=old_device, conflict=conflict
        )

    conflict = _record_conflict(
        db,
        user_id=user_id,
        old_device=old_device,
        new_device=device_id,
        resolution="takeover",
        ip_address=ip_address,
        user_agent=user_agent,
        now=now,
    )
    revoked = revoke_user_sessions(
        db, user_id=user_id, reason=REASON_DEVICE_CONFLICT, device_id=old_device, now=now
    )
    return DevicePolicyDecision(
        outcome=OUTCOME_TAKEOVER,
        device_id=device_id,
        previous_device=old_device,
        conflict=conflict,
        revoked_sessions=tuple(revoked),
    )


def _require_admin(actor: Any) -> None:
    if actor is None or getattr(actor, "role", None) != Role.ADMIN.value:
        raise Forbidden("Only administrators can manage device locks", code="DEVICE_ADMIN_REQUIRED")


def _require_policy_user(db: Session, user_id: UUID) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise DomainError(code="USER_NOT_FOUND", http_status=404, message="User not found")
    if user.role not in settings.single_device_roles:
        raise ValidationError(
            "User role is not under the single-device policy",
            code="DEVICE_POLICY_NOT_APPLICABLE",
            details={"role": user.role},
        )
    return user


def admin_unlock_device(
    db: Session,
    *,
    user_id: UUID,
    actor: Any,
    session_id: UUID | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> bool:
    """Delete the lock (Bound -> Unbound). Returns False when the user was already unbound."""
    _require_admin(actor)
    user = _require_policy_user(db, user_id)
    lock = _get_lock(db, user_id)
    if lock is None:
        return False

    previous_device = lock.device_id
    db.delete(lock)
    db.flush()
    append_audit_entry(
        db,
        event_type=AuditEventType.DEVICE_UNLOCK_PERFORMED,
        entity_type="device_lock",
        entity_id=user.id,
        actor_user_id=actor.id,
        actor_role=actor.role,
        session_id=session_id,
        ip_address=ip_address,
        user_agent=user_agent,
        severity="high",
        metadata={"target_user_id": str(user.id), "previous_device": previous_device},
    )
    db.commit()
    logger.info("Device lock removed for user %s by admin %s", user.id, actor.id)
    return True


def allow_device_override(
    db: Session,
    *,
    user_id: UUID,
    actor: Any,
    session_id: UUID | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> DeviceLock:
    """Let the next device switch bind without a conflict (single use)."""
    _require_admin(actor)
    user = _require_policy_user(db, user_id)
    lock = _get_lock(db, user_id)
    if lock is None:
        raise DomainError(code="DEVICE_LOCK_NOT_FOUND", http_status=404, message="User has no bound device")

    lock.override_allowed = True
    db.flush()
    append_audit_entry(
        db,
        event_type=AuditEventType.DEVICE_LOCK_OVERRIDE,
        entity_type="device_lock",
        entity_id=user.id,
        actor_user_id=actor.id,
        actor_role=actor.role,
        session_id=session_id,
        ip_address=ip_address,
        user_agent=user_agent,
        severity="warning",
        metadata={"target_user_id": str(user.id), "bound_device": lock.device_id},
    )
    db.commit()
    return lock


def list_device_conflicts(db: Session, *, user_id: UUID | None = None, limit: int = 100) -> list[DeviceConflict]:
    query = db.query(DeviceConflict)
    if user_id is not None:
        query = query.filter(DeviceConflict.user_id == user_id)
    return query.order_by(DeviceConflict.detected_at.desc()).limit(max(1, min(int(limit), 500))).all()
