"""Pure helpers for login-context anomaly classification."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone


def local_time(at: datetime, *, utc_offset_minutes: int) -> datetime:
    if at.tzinfo is None or at.tzinfo.utcoffset(at) is None:
        at = at.replace(tzinfo=timezone.utc)
    return at.astimezone(timezone(timedelta(minutes=utc_offset_minutes)))


def is_odd_hour(at: datetime, *, utc_offset_minutes: int, start_hour: int, end_hour: int) -> bool:
    """True when the local hour falls outside ``[start_hour, end_hour)``."""
    if not (0 <= start_hour <= 23 and 0 <= end_hour <= 24):
        raise ValueError(f"Invalid login band: {start_hour}-{end_hour}")
    hour = local_time(at, utc_offset_minutes=utc_offset_minutes).hour
    if start_hour <= end_hour:
        return not (start_hour <= hour < end_hour)
    # Band wraps midnight, e.g. 22-06.
    return not (hour >= start_hour or hour < end_hour)
