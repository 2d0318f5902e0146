"""Device fingerprint derivation.

The fingerprint is a heuristic identity built from client-reported browser
signals. It is stable for a given browser profile but it is NOT proof of
device identity: a client can replay or forge every input, so it must only be
used to bind sessions and detect device changes, never as a credential.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, fields
from typing import Any, Mapping

UNKNOWN = "unknown"


@dataclass(frozen=True)
class DeviceSignals:
    """Client-reported environment signals. Field order is part of the fingerprint."""

    hardware_concurrency: Any = None
    user_agent: Any = None
    platform: Any = None
    timezone_offset: Any = None
    screen_resolution: Any = None
    touch_support: Any = None
    canvas_hash: Any = None
    webgl_vendor: Any = None
    webgl_renderer: Any = None
    language: Any = None
    cookie_enabled: Any = None
    vendor: Any = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "DeviceSignals":
        data = data or {}
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})


def _component(value: Any) -> str:
    if value is None:
        return UNKNOWN
    if isinstance(value, bool):
        return "true" if value else "false"
    text = str(value).strip()
    return text or UNKNOWN


def fingerprint_source(signals: DeviceSignals) -> str:
    return "|".join(_component(getattr(signals, f.name)) for f in fields(signals))


def compute_fingerprint(signals: DeviceSignals | Mapping[str, Any]) -> str:
    if not isinstance(signals, DeviceSignals):
        signals = DeviceSignals.from_mapping(signals)
    return hashlib.sha256(fingerprint_source(signals).encode("utf-8")).hexdigest()
