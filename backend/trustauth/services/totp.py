"""RFC 6238 time-based one-time passwords (HMAC-SHA1, 30 second step)."""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import struct
import time
from urllib.parse import quote, urlencode

DIGITS = 6
STEP_SECONDS = 30


def generate_secret(num_bytes: int = 20) -> str:
    return base64.b32encode(secrets.token_bytes(num_bytes)).decode("ascii").rstrip("=")


def _decode_secret(secret: str) -> bytes:
    normalized = secret.replace(" ", "").upper()
    padding = "=" * (-len(normalized) % 8)
    try:
        return base64.b32decode(normalized + padding, casefold=True)
    except (ValueError, TypeError) as exc:
        raise ValueError("Invalid TOTP secret") from exc


def hotp(secret: str, counter: int, *, digits: int = DIGITS) -> str:
    digest = hmac.new(_decode_secret(secret), struct.pack(">Q", counter), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code = struct.unpack(">I", digest[offset:offset + 4])[0] & 0x7FFFFFFF
    return str(code % (10 ** digits)).zfill(digits)


def totp(secret: str, *, at: float | None = None, step: int = STEP_SECONDS, digits: int = DIGITS) -> str:
    timestamp = time.time() if at is None else at
    return hotp(secret, int(timestamp // step), digits=digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    at: float | None = None,
    valid_window: int = 1,
    step: int = STEP_SECONDS,
    digits: int = DIGITS,
) -> bool:
    """Accept codes from ``valid_window`` steps either side of ``at`` to absorb clock drift."""
    candidate = (code or "").strip()
    if len(candidate) != digits or not candidate.isdigit():
        return False
    timestamp = time.time() if at is None else at
    counter = int(timestamp // step)
    for drift in range(-valid_window, valid_window + 1):
        if counter + drift < 0:
            continue
        if hmac.compare_digest(hotp(secret, counter + drift, digits=digits), candidate):
            return True
    return False


def provisioning_uri(secret: str, *, account_name: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account_name}")
    query = urlencode({"secret": secret, "issuer": issuer, "digits": DIGITS, "period": STEP_SECONDS})
    return f"otpauth://totp/{label}?{query}"
