"""Hash-chained audit log: append, best-effort append, and integrity sweep."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..domain_errors import BestEffortFailure, IntegrityViolation, ValidationError
from ..models import AUDIT_SEVERITIES, AuditChainHead, AuditLogEntry
from ..services.clock import utc_now
from ..services.hash_chain import (
    GENESIS_HASH,
    ChainVerification,
    compute_entry_hash,
    normalize_metadata,
    verify_entries,
)

logger = logging.getLogger(__name__)

CHAIN_HEAD_ID = 1
VERIFY_BATCH_SIZE = 1000


def _uuid_or_none(value: Any, *, field: str) -> UUID | None:
    if value is None or isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise ValidationError(f"{field} must be a UUID", code="AUDIT_FIELD_INVALID", details={"field": field}) from None


def _lock_chain_head(db: Session) -> AuditChainHead:
    # Every append serializes on this row, so the predecessor hash is unambiguous.
    head = (
        db.query(AuditChainHead)
        .filter(AuditChainHead.id == CHAIN_HEAD_ID)
        .with_for_update()
        .first()
    )
    if head is None:
        head = AuditChainHead(id=CHAIN_HEAD_ID, last_seq=0, last_hash=None)
        db.add(head)
        db.flush()
    return head


def append_audit_entry(
    db: Session,
    *,
    event_type: str,
    entity_type: str,
    entity_id: Any = None,
    actor_user_id: Any = None,
    actor_role: str | None = None,
    session_id: Any = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    severity: str = "info",
    metadata: dict[str, Any] | None = None,
    at: datetime | None = None,
) -> AuditLogEntry:
    """Append one entry to the chain inside the caller's transaction."""
    event_type = str(getattr(event_type, "value", event_type) or "").strip()
    if not event_type:
        raise ValidationError("event_type is required", code="AUDIT_EVENT_TYPE_REQUIRED")
    if not entity_type:
        raise ValidationError("entity_type is required", code="AUDIT_ENTITY_TYPE_REQUIRED")
    if severity not in AUDIT_SEVERITIES:
        raise ValidationError(f"Unknown audit severity: {severity}", code="AUDIT_SEVERITY_INVALID")

    head = _lock_chain_head(db)
    prev_hash = head.last_hash or GENESIS_HASH
    entry = AuditLogEntry(
        seq=int(head.last_seq or 0) + 1,
        created_at=at or utc_now(),
        actor_user_id=_uuid_or_none(actor_user_id, field="actor_user_id"),
        actor_role=str(getattr(actor_role, "value", actor_role)) if actor_role is not None else None,
        session_id=_uuid_or_none(session_id, field="session_id"),
        ip_address=ip_address,
        user_agent=(user_agent or "")[:512] or None,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        severity=severity,
        details=normalize_metadata(metadata),
        prev_hash=prev_hash,
    )
    entry.hash = compute_entry_hash(entry, prev_hash=prev_hash)
    db.add(entry)

    head.last_seq = entry.seq
    head.last_hash = entry.hash
    db.flush()
    return entry


def append_audit_entry_best_effort(db: Session, **fields: Any) -> AuditLogEntry | BestEffortFailure:
    """Append in a savepoint; a database failure is logged and returned, never raised."""
    try:
        with db.begin_nested():
            return append_audit_entry(db, **fields)
    except SQLAlchemyError as exc:
        logger.exception("Failed to append audit entry %s", fields.get("event_type"))
        return BestEffortFailure(operation="audit_append", error=exc.__class__.__name__)


def _check_head(db: Session, result: ChainVerification) -> ChainVerification:
    head = (
        db.query(AuditChainHead.last_seq, AuditChainHead.last_hash)
        .filter(AuditChainHead.id == CHAIN_HEAD_ID)
        .first()
    )
    if head is None or not head.last_seq:
        return result
    tail = (
        db.query(AuditLogEntry.id, AuditLogEntry.hash)
        .filter(AuditLogEntry.seq == head.last_seq)
        .first()
    )
    if tail is not None and tail.hash == head.last_hash:
        return result
    # The chain no longer ends where the head says it does.
    return ChainVerification(
        ok=False,
        first_invalid_id=str(tail.id) if tail is not None else None,
        checked=result.checked,
        reason="head_mismatch",
    )


def verify_chain(db: Session, *, from_seq: int | None = None, to_seq: int | None = None) -> ChainVerification:
    """Re-hash entries in ``[from_seq, to_seq]`` (inclusive) in sequence order. Read-only.

    An open-ended sweep also checks that the entry recorded in the chain head
    still exists with the same hash.
    """
    if from_seq is not None and to_seq is not None and from_seq > to_seq:
        raise ValidationError("from_seq must not exceed to_seq", code="AUDIT_RANGE_INVALID")

    anchor_hash = GENESIS_HASH
    if from_seq is not None and from_seq > 1:
        predecessor = (
            db.query(AuditLogEntry.hash)
            .filter(AuditLogEntry.seq < from_seq)
            .order_by(AuditLogEntry.seq.desc())
            .first()
        )
        if predecessor is not None:
            anchor_hash = predecessor[0]

    query = db.query(AuditLogEntry)
    if from_seq is not None:
        query = query.filter(AuditLogEntry.seq >= from_seq)
    if to_seq is not None:
        query = query.filter(AuditLogEntry.seq <= to_seq)
    entries = query.order_by(AuditLogEntry.seq.asc()).yield_per(VERIFY_BATCH_SIZE)

    result = verify_entries(entries, anchor_hash=anchor_hash)
    if result.ok and to_seq is None:
        result = _check_head(db, result)
    if not result.ok:
        logger.error(
            "Audit chain verification failed at entry %s (%s) after %d entries",
            result.first_invalid_id,
            result.reason,
            result.checked,
        )
    return result


def assert_chain_intact(db: Session, *, from_seq: int | None = None, to_seq: int | None = None) -> ChainVerification:
    result = verify_chain(db, from_seq=from_seq, to_seq=to_seq)
    if not result.ok:
        raise IntegrityViolation(
            first_invalid_id=str(result.first_invalid_id) if result.first_invalid_id else None,
            checked=result.checked,
        )
    return result


def list_audit_entries(
    db: Session,
    *,
    event_type: str | None = None,
    entity_type: str | None = None,
    actor_user_id: UUID | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = 100,
) -> list[AuditLogEntry]:
    query = db.query(AuditLogEntry)
    if event_type:
        query = query.filter(AuditLogEntry.event_type == event_type)
    if entity_type:
        query = query.filter(AuditLogEntry.entity_type == entity_type)
    if actor_user_id:
        query = query.filter(AuditLogEntry.actor_user_id == actor_user_id)
    if since:
        query = query.filter(AuditLogEntry.created_at >= since)
    if until:
        query = query.filter(AuditLogEntry.created_at <= until)
    return query.order_by(AuditLogEntry.seq.desc()).limit(max(1, min(int(limit), 1000))).all()
