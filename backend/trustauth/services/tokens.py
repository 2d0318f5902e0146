"""Signed access tokens and refresh-token digests."""

from __future__ import annotations

import hashlib
import secrets
import time
from datetime import datetime
from uuid import UUID

from jose import JWTError, jwt

from ..config import settings
from ..domain_errors import AuthenticationRequired

ACCESS_TOKEN_TYPE = "access"


def create_session_token(*, user_id: UUID, session_id: UUID, role: str, expires_at: datetime,
                         issued_at: datetime | None = None) -> str:
    """HS256 JWT bound to a server-side session row via the ``sid`` claim."""
    iat = int(issued_at.timestamp()) if issued_at else int(time.time())
    claims = {
        "sub": str(user_id),
        "sid": str(session_id),
        "role": role,
        "type": ACCESS_TOKEN_TYPE,
        "iat": iat,
        "exp": int(expires_at.timestamp()),
    }
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_session_token(token: str, *, now: datetime | None = None) -> dict:
    """Verify the signature and claim shape.

    Expiry is enforced against the session row, not the ``exp`` claim, so that
    revocation and expiry share a single source of truth.
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError:
        raise AuthenticationRequired("Could not validate credentials", code="INVALID_TOKEN") from None

    if payload.get("type") != ACCESS_TOKEN_TYPE:
        raise AuthenticationRequired("Invalid token type", code="INVALID_TOKEN")
    for claim in ("sub", "sid"):
        try:
            UUID(str(payload.get(claim)))
        except (TypeError, ValueError):
            raise AuthenticationRequired("Could not validate credentials", code="INVALID_TOKEN") from None

    iat = payload.get("iat")
    if iat is not None:
        try:
            iat_int = int(iat)
        except (TypeError, ValueError):
            raise AuthenticationRequired("Could not validate credentials", code="INVALID_TOKEN") from None
        # Reject tokens issued far in the future (clock skew / malicious tokens).
        current = int(now.timestamp()) if now else int(time.time())
        if iat_int > current + int(settings.JWT_LEEWAY_SECONDS):
            raise AuthenticationRequired("Could not validate credentials", code="INVALID_TOKEN")
    return payload


def generate_refresh_token() -> str:
    return secrets.token_urlsafe(32)


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
