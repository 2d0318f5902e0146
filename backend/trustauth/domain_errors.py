"""Domain-level exception primitives with stable machine-readable codes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(eq=False)
class DomainError(Exception):
    """Use-case level error with stable code and HTTP mapping."""

    code: str
    http_status: int
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


class AuthenticationRequired(DomainError):
    """No valid session or credential was presented (401)."""

    def __init__(self, message: str = "Authentication required", *, code: str = "AUTHENTICATION_REQUIRED",
                 details: dict[str, Any] | None = None) -> None:
        super().__init__(code=code, http_status=401, message=message, details=details)


class Forbidden(DomainError):
    """Valid session, but role or policy disallows the action (403)."""

    def __init__(self, message: str = "Forbidden", *, code: str = "FORBIDDEN",
                 details: dict[str, Any] | None = None) -> None:
        super().__init__(code=code, http_status=403, message=message, details=details)


class ValidationError(DomainError):
    """Malformed input to a core operation (422)."""

    def __init__(self, message: str, *, code: str = "VALIDATION_ERROR",
                 details: dict[str, Any] | None = None) -> None:
        super().__init__(code=code, http_status=422, message=message, details=details)


class DeviceConflictError(DomainError):
    """Login refused by the single-device policy (409)."""

    def __init__(self, *, old_device: str | None, new_device: str,
                 message: str = "Account is active on another device") -> None:
        super().__init__(
            code="DEVICE_CONFLICT",
            http_status=409,
            message=message,
            details={"old_device": old_device, "new_device": new_device},
        )

    @property
    def old_device(self) -> str | None:
        return (self.details or {}).get("old_device")

    @property
    def new_device(self) -> str:
        return (self.details or {})["new_device"]


class IntegrityViolation(DomainError):
    """Audit chain verification found a hash mismatch. Operator-facing only."""

    def __init__(self, *, first_invalid_id: str | None, checked: int) -> None:
        super().__init__(
            code="AUDIT_CHAIN_INTEGRITY_VIOLATION",
            http_status=500,
            message="Audit log chain verification failed",
            details={"first_invalid_id": first_invalid_id, "checked": checked},
        )


@dataclass(frozen=True)
class BestEffortFailure:
    """Result of a non-fatal side effect (security event / audit append) that did not persist."""

    operation: str
    error: str
