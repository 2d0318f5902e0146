from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from trustauth.auth import ROLE_PERMISSIONS, PermissionChecker, Principal, check_permission
from trustauth.domain_errors import Forbidden


@pytest.mark.parametrize(
    ("role", "expected"),
    [
        (
            "admin",
            {
                "canViewSecurity": True,
                "canManageSecurity": True,
                "canManageDevices": True,
                "canViewAudit": True,
                "canVerifyAudit": True,
            },
        ),
        (
            "manager",
            {
                "canViewSecurity": True,
                "canManageSecurity": False,
                "canManageDevices": False,
                "canViewAudit": True,
                "canVerifyAudit": False,
            },
        ),
        (
            "technician",
            {
                "canViewSecurity": False,
                "canManageSecurity": False,
                "canManageDevices": False,
                "canViewAudit": False,
                "canVerifyAudit": False,
            },
        ),
        (
            "customer",
            {
                "canViewSecurity": False,
                "canManageSecurity": False,
                "canManageDevices": False,
                "canViewAudit": False,
                "canVerifyAudit": False,
            },
        ),
    ],
)
def test_role_permission_matrix(role: str, expected: dict[str, bool]) -> None:
    assert ROLE_PERMISSIONS[role] == expected
    for permission, allowed in expected.items():
        assert check_permission(SimpleNamespace(role=role), permission) is allowed


def test_unknown_role_or_permission_is_denied() -> None:
    assert check_permission(SimpleNamespace(role="ghost"), "canViewSecurity") is False
    assert check_permission(SimpleNamespace(role="admin"), "canLaunchRockets") is False


def _principal(*, role: str, mfa_enabled: bool = False, mfa_verified_at=None) -> Principal:
    return Principal(
        user=SimpleNamespace(role=role, mfa_enabled=mfa_enabled),
        session=SimpleNamespace(mfa_verified_at=mfa_verified_at),
    )


def test_permission_checker_rejects_missing_permission() -> None:
    checker = PermissionChecker("canManageDevices")

    with pytest.raises(Forbidden) as exc_info:
        checker(principal=_principal(role="manager"))

    assert exc_info.value.code == "PERMISSION_DENIED"
    assert exc_info.value.details == {"permission": "canManageDevices"}


def test_permission_checker_requires_step_up_for_mfa_enrolled_admin() -> None:
    checker = PermissionChecker("canManageDevices")

    with pytest.raises(Forbidden) as exc_info:
        checker(principal=_principal(role="admin", mfa_enabled=True))
    assert exc_info.value.code == "MFA_REQUIRED"

    verified = _principal(role="admin", mfa_enabled=True, mfa_verified_at=datetime.now(timezone.utc))
    assert checker(principal=verified) is verified


def test_admin_without_mfa_enrollment_is_not_blocked() -> None:
    principal = _principal(role="admin", mfa_enabled=False)
    assert principal.mfa_satisfied is True
    assert PermissionChecker("canVerifyAudit")(principal=principal) is principal
