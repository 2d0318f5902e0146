"""Deterministic hashing for the append-only audit chain.

Entry hash::

    sha256("|".join([
        created_at, actor_user_id, actor_role, session_id, ip_address,
        user_agent, event_type, entity_type, entity_id, severity,
        canonical_json(metadata), prev_hash,
    ])).hexdigest()

``None`` fields hash as an empty string, ``created_at`` as UTC ISO-8601 with
microseconds, and metadata as sorted-key compact JSON. Changing any of these
rules invalidates every previously written chain.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping

GENESIS_HASH = "0" * 64

HASHED_FIELDS: tuple[str, ...] = (
    "created_at",
    "actor_user_id",
    "actor_role",
    "session_id",
    "ip_address",
    "user_agent",
    "event_type",
    "entity_type",
    "entity_id",
    "severity",
)


@dataclass(frozen=True)
class ChainVerification:
    ok: bool
    first_invalid_id: str | None = None
    checked: int = 0
    reason: str | None = None


def canonical_json(value: Any) -> str:
    return json.dumps(
        value if value is not None else {},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def normalize_metadata(value: Mapping[str, Any] | None) -> dict[str, Any]:
    """Round-trip through canonical JSON so the stored form hashes identically on re-read."""
    return json.loads(canonical_json(dict(value or {})))


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _field(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def compute_entry_hash(entry: Any, *, prev_hash: str | None = None) -> str:
    """Hash an entry (ORM row, namespace or mapping) chained to ``prev_hash``."""
    def get(name: str) -> Any:
        if isinstance(entry, Mapping):
            return entry.get(name)
        return getattr(entry, name, None)

    if prev_hash is None:
        prev_hash = get("prev_hash") or GENESIS_HASH
    parts = [_field(get(name)) for name in HASHED_FIELDS]
    parts.append(canonical_json(get("details")))
    parts.append(prev_hash)
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def verify_entries(entries: Iterable[Any], *, anchor_hash: str = GENESIS_HASH) -> ChainVerification:
    """Verify entries in ascending order, starting from the hash that precedes the first one."""
    expected_prev = anchor_hash
    checked = 0
    for entry in entries:
        checked += 1
        if entry.prev_hash != expected_prev:
            return ChainVerification(
                ok=False, first_invalid_id=str(entry.id), checked=checked, reason="prev_hash_mismatch"
            )
        if compute_entry_hash(entry, prev_hash=entry.prev_hash) != entry.hash:
            return ChainVerification(
                ok=False, first_invalid_id=str(entry.id), checked=checked, reason="hash_mismatch"
            )
        expected_prev = entry.hash
    return ChainVerification(ok=True, checked=checked)
