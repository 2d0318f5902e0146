from __future__ import annotations

import hashlib

from trustauth.services.fingerprint import DeviceSignals, compute_fingerprint, fingerprint_source

SIGNALS = {
    "hardware_concurrency": 8,
    "user_agent": "Mozilla/5.0 (Linux; Android 14)",
    "platform": "Linux armv8l",
    "timezone_offset": -330,
    "screen_resolution": "1080x2400",
    "touch_support": True,
    "canvas_hash": "c4nv45",
    "webgl_vendor": "Qualcomm",
    "webgl_renderer": "Adreno (TM) 730",
    "language": "en-IN",
    "cookie_enabled": True,
    "vendor": "Google Inc.",
}


def test_fingerprint_is_sha256_of_pipe_joined_signals_in_fixed_order() -> None:
    expected_source = (
        "8|Mozilla/5.0 (Linux; Android 14)|Linux armv8l|-330|1080x2400|true|c4nv45"
        "|Qualcomm|Adreno (TM) 730|en-IN|true|Google Inc."
    )

    assert fingerprint_source(DeviceSignals.from_mapping(SIGNALS)) == expected_source
    assert compute_fingerprint(SIGNALS) == hashlib.sha256(expected_source.encode("utf-8")).hexdigest()


def test_fingerprint_is_stable_for_identical_signals() -> None:
    assert compute_fingerprint(dict(SIGNALS)) == compute_fingerprint(DeviceSignals(**SIGNALS))


def test_missing_signals_hash_as_unknown() -> None:
    source = fingerprint_source(DeviceSignals.from_mapping({"platform": "iPhone", "canvas_hash": "  "}))

    parts = source.split("|")
    assert len(parts) == 12
    assert parts[2] == "iPhone"
    assert parts[6] == "unknown"
    assert parts.count("unknown") == 11


def test_unrecognised_keys_are_ignored_and_any_change_alters_the_hash() -> None:
    noisy = dict(SIGNALS, battery_level=0.42)
    assert compute_fingerprint(noisy) == compute_fingerprint(SIGNALS)

    changed = dict(SIGNALS, screen_resolution="1440x3200")
    assert compute_fingerprint(changed) != compute_fingerprint(SIGNALS)
    assert len(compute_fingerprint(changed)) == 64
