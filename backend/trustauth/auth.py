"""Authentication and authorization dependencies."""
from dataclasses import dataclass
import logging

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from .database import get_db
from .domain_errors import AuthenticationRequired, Forbidden
from .models import User, UserSession
from .use_cases.sessions import validate_session

logger = logging.getLogger(__name__)

# Bearer token scheme; missing credentials are reported by validate_session.
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """Authenticated user together with the session that authenticated the request."""

    user: User
    session: UserSession

    @property
    def mfa_satisfied(self) -> bool:
        if self.user.role != "admin" or not self.user.mfa_enabled:
            return True
        return self.session.mfa_verified_at is not None


def get_current_session(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
) -> UserSession:
    """Resolve the bearer token to a live session or fail with a distinguishable 401."""
    token = credentials.credentials if credentials else None
    result = validate_session(db, token)
    if not result.valid:
        raise AuthenticationRequired(
            result.message or "Authentication required",
            code=f"SESSION_{(result.reason or 'invalid').upper()}",
            details={"reason": result.reason},
        )
    return result.session


def get_current_principal(
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
) -> Principal:
    user = db.query(User).filter(User.id == session.user_id, User.is_active == True).first()  # noqa: E712
    if user is None:
        raise AuthenticationRequired("User not found or inactive", code="USER_INACTIVE")
    if user.role != session.role:
        # Role changed since sign-in; the old session no longer describes the user.
        raise AuthenticationRequired("Role changed; sign in again", code="SESSION_ROLE_CHANGED")
    return Principal(user=user, session=session)


def get_current_user(principal: Principal = Depends(get_current_principal)) -> User:
    return principal.user


# Permission checks
class PermissionChecker:
    """Check user permissions based on role (and step-up MFA for admins)."""

    def __init__(self, required_permission: str):
        self.required_permission = required_permission

    def __call__(self, principal: Principal = Depends(get_current_principal)) -> Principal:
        if not check_permission(principal.user, self.required_permission):
            raise Forbidden(
                f"Permission denied: {self.required_permission} required",
                code="PERMISSION_DENIED",
                details={"permission": self.required_permission},
            )
        if not principal.mfa_satisfied:
            raise Forbidden("MFA verification required", code="MFA_REQUIRED")
        return principal


# Role permissions matrix
ROLE_PERMISSIONS = {
    "admin": {
        "canViewSecurity": True,
        "canManageSecurity": True,
        "canManageDevices": True,
        "canViewAudit": True,
        "canVerifyAudit": True,
    },
    "manager": {
        "canViewSecurity": True,
        "canManageSecurity": False,
        "canManageDevices": False,
        "canViewAudit": True,
        "canVerifyAudit": False,
    },
    "technician": {
        "canViewSecurity": False,
        "canManageSecurity": False,
        "canManageDevices": False,
        "canViewAudit": False,
        "canVerifyAudit": False,
    },
    "transporter": {
        "canViewSecurity": False,
        "canManageSecurity": False,
        "canManageDevices": False,
        "canViewAudit": False,
        "canVerifyAudit": False,
    },
    "customer": {
        "canViewSecurity": False,
        "canManageSecurity": False,
        "canManageDevices": False,
        "canViewAudit": False,
        "canVerifyAudit": False,
    },
}


def check_permission(user: User, permission: str) -> bool:
    """Check if user has specific permission."""
    permissions = ROLE_PERMISSIONS.get(user.role, {})
    return permissions.get(permission, False)
