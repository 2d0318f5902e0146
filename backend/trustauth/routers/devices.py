"""Admin device-lock management."""
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from ..auth import PermissionChecker, Principal
from ..database import get_db
from ..schemas import DeviceConflictResponse, DeviceLockResponse, DeviceUnlockResponse
from ..security import get_client_ip, get_user_agent
from ..use_cases.device_policy import admin_unlock_device, allow_device_override, list_device_conflicts

router = APIRouter(prefix="/admin/devices", tags=["devices"])


@router.post("/{user_id}/unlock", response_model=DeviceUnlockResponse)
def unlock_device(
    user_id: UUID,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canManageDevices")),
    db: Session = Depends(get_db),
):
    """Remove a user's device binding so the next login binds afresh."""
    unlocked = admin_unlock_device(
        db,
        user_id=user_id,
        actor=principal.user,
        session_id=principal.session.id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return DeviceUnlockResponse(user_id=user_id, unlocked=unlocked)


@router.post("/{user_id}/override", response_model=DeviceLockResponse)
def override_device_lock(
    user_id: UUID,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canManageDevices")),
    db: Session = Depends(get_db),
):
    """Allow a single device switch without a conflict."""
    lock = allow_device_override(
        db,
        user_id=user_id,
        actor=principal.user,
        session_id=principal.session.id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return DeviceLockResponse.model_validate(lock)


@router.get("/conflicts", response_model=List[DeviceConflictResponse])
def get_device_conflicts(
    user_id: Optional[UUID] = None,
    limit: int = Query(100, ge=1, le=500),
    principal: Principal = Depends(PermissionChecker("canViewSecurity")),
    db: Session = Depends(get_db),
):
    conflicts = list_device_conflicts(db, user_id=user_id, limit=limit)
    return [DeviceConflictResponse.model_validate(c) for c in conflicts]
