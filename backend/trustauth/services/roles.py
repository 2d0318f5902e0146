"""Closed role set and parsing of external role strings."""

from __future__ import annotations

from enum import Enum

from ..domain_errors import ValidationError


class Role(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    TECHNICIAN = "technician"
    TRANSPORTER = "transporter"
    CUSTOMER = "customer"


def parse_role(value: str | Role | None) -> Role:
    if isinstance(value, Role):
        return value
    if value is None or not str(value).strip():
        raise ValidationError("role is required", code="ROLE_REQUIRED")
    try:
        return Role(str(value).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Unknown role: {value}",
            code="ROLE_UNKNOWN",
            details={"role": str(value)},
        ) from None


def is_single_device_role(role: str | Role, single_device_roles: frozenset[str]) -> bool:
    return parse_role(role).value in single_device_roles
