"""Admin TOTP enrollment and step-up endpoints."""
from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session

from ..auth import Principal, get_current_principal
from ..database import get_db
from ..schemas import MfaCodeRequest, MfaSetupResponse, MfaStatusResponse
from ..security import get_client_ip, get_user_agent, set_no_store
from ..use_cases.mfa import complete_mfa_setup, start_mfa_setup, verify_mfa_challenge

router = APIRouter(prefix="/auth/mfa", tags=["mfa"])


def _status(principal: Principal) -> MfaStatusResponse:
    return MfaStatusResponse(
        mfa_enabled=bool(principal.user.mfa_enabled),
        session_mfa_verified=principal.session.mfa_verified_at is not None,
    )


@router.get("/status", response_model=MfaStatusResponse)
def mfa_status(principal: Principal = Depends(get_current_principal)):
    return _status(principal)


@router.post("/setup", response_model=MfaSetupResponse)
def mfa_setup(
    response: Response,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    """Start (or restart) TOTP enrollment. The secret is shown once."""
    set_no_store(response)
    setup = start_mfa_setup(db, user=principal.user)
    return MfaSetupResponse(secret=setup.secret, otpauth_uri=setup.otpauth_uri, expires_at=setup.expires_at)


@router.post("/setup/verify", response_model=MfaStatusResponse)
def mfa_setup_verify(
    payload: MfaCodeRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    complete_mfa_setup(
        db,
        user=principal.user,
        code=payload.code,
        session=principal.session,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return _status(principal)


@router.post("/challenge", response_model=MfaStatusResponse)
def mfa_challenge(
    payload: MfaCodeRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    """Step up the current session with a TOTP code."""
    verify_mfa_challenge(
        db,
        user=principal.user,
        session=principal.session,
        code=payload.code,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return _status(principal)
