"""Auth endpoints: OTP login, refresh, logout, session introspection."""
import logging

import redis
from redis.exceptions import RedisError
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from ..auth import Principal, get_current_principal
from ..config import settings
from ..database import get_db
from ..schemas import (
    EmailOtpRequestPayload,
    EmailOtpVerifyPayload,
    LogoutRequest,
    LogoutResponse,
    MeResponse,
    OtpRequestPayload,
    OtpRequestResponse,
    OtpVerifyPayload,
    RefreshTokenRequest,
    SessionResponse,
    SessionValidateRequest,
    SessionValidateResponse,
    TokenResponse,
    UserResponse,
)
from ..security import get_client_ip, get_user_agent, is_request_https, set_no_store
from ..use_cases.login import login_with_otp_use_case, logout_use_case
from ..use_cases.otp import issue_otp
from ..use_cases.sessions import IssuedSession, refresh_session, validate_session

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)


_redis_client = None


def _get_redis():
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


def _incr_with_ttl(key: str, ttl_seconds: int) -> tuple[int, int]:
    """
    Increment a Redis counter and ensure it has an expiry.
    Returns (value, ttl_remaining_seconds).
    """
    r = _get_redis()
    value = r.incr(key)
    if value == 1:
        r.expire(key, ttl_seconds)
    ttl = r.ttl(key)
    if ttl is None or ttl < 0:
        ttl = ttl_seconds
    return int(value), int(ttl)


def _enforce_ip_rate_limit(request: Request, *, bucket: str, limit: int) -> None:
    ip = get_client_ip(request)
    try:
        attempts, ttl = _incr_with_ttl(f"auth:rl:{bucket}:ip:{ip}", 60)
        if attempts > limit:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many attempts. Try again later.",
                headers={"Retry-After": str(ttl)},
            )
    except RedisError:
        # Fail open if Redis is down to avoid total auth outage.
        logger.exception("Redis error during %s rate limiting (fail-open)", bucket)


def _set_refresh_cookie(response: Response, *, request: Request, token: str) -> None:
    secure = bool(settings.AUTH_REFRESH_COOKIE_SECURE or is_request_https(request))
    response.set_cookie(
        key=settings.AUTH_REFRESH_COOKIE_NAME,
        value=token,
        httponly=True,
        secure=secure,
        samesite=settings.AUTH_REFRESH_COOKIE_SAMESITE,
        path=settings.AUTH_REFRESH_COOKIE_PATH,
        max_age=int(settings.REFRESH_TOKEN_EXPIRE_DAYS) * 86400,
    )


def _clear_refresh_cookie(response: Response, *, request: Request) -> None:
    secure = bool(settings.AUTH_REFRESH_COOKIE_SECURE or is_request_https(request))
    response.delete_cookie(
        key=settings.AUTH_REFRESH_COOKIE_NAME,
        path=settings.AUTH_REFRESH_COOKIE_PATH,
        secure=secure,
        samesite=settings.AUTH_REFRESH_COOKIE_SAMESITE,
    )


def _token_response(issued: IssuedSession, *, user, **extra) -> TokenResponse:
    return TokenResponse(
        access_token=issued.access_token,
        expires_at=issued.expires_at,
        session_id=issued.session.id,
        user=UserResponse.model_validate(user),
        **extra,
    )


def _issue_otp_response(db: Session, request: Request, **identifier) -> OtpRequestResponse:
    issued = issue_otp(
        db,
        **identifier,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to persist OTP request")
        raise HTTPException(status_code=500, detail="Failed to issue OTP")

    expose_code = settings.DEBUG and settings.ENV.lower() != "production"
    return OtpRequestResponse(
        request_id=issued.request.id,
        channel=issued.request.channel,
        expires_at=issued.expires_at,
        dev_code=issued.code if expose_code else None,
    )


def _login_response(
    db: Session,
    request: Request,
    response: Response,
    payload: OtpVerifyPayload | EmailOtpVerifyPayload,
    **identifier,
) -> TokenResponse:
    result = login_with_otp_use_case(
        db=db,
        code=payload.code,
        device_fingerprint=payload.device_fingerprint,
        device_signals=payload.device_signals.model_dump() if payload.device_signals else None,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
        **identifier,
    )
    _set_refresh_cookie(response, request=request, token=result.issued.refresh_token)
    return _token_response(
        result.issued,
        user=result.user,
        mfa_required=result.mfa_required,
        is_new_user=result.is_new_user,
        device_outcome=result.device_decision.outcome,
    )


@router.post("/otp/request", response_model=OtpRequestResponse, status_code=status.HTTP_201_CREATED)
def request_otp(payload: OtpRequestPayload, request: Request, response: Response, db: Session = Depends(get_db)):
    """Issue a login OTP for a phone number."""
    set_no_store(response)
    _enforce_ip_rate_limit(request, bucket="otp_request", limit=settings.AUTH_OTP_REQUEST_IP_LIMIT_PER_MINUTE)
    return _issue_otp_response(
        db,
        request,
        phone=payload.phone,
        channel=payload.channel,
        device_fingerprint=payload.device_fingerprint,
    )


@router.post("/otp/verify", response_model=TokenResponse)
def verify_otp_login(payload: OtpVerifyPayload, request: Request, response: Response, db: Session = Depends(get_db)):
    """Verify an OTP and open a device-bound session."""
    set_no_store(response)
    _enforce_ip_rate_limit(request, bucket="otp_verify", limit=settings.AUTH_OTP_VERIFY_IP_LIMIT_PER_MINUTE)
    return _login_response(db, request, response, payload, phone=payload.phone)


@router.post("/email-otp/request", response_model=OtpRequestResponse, status_code=status.HTTP_201_CREATED)
def request_email_otp(
    payload: EmailOtpRequestPayload, request: Request, response: Response, db: Session = Depends(get_db)
):
    """Issue a login OTP for an email address."""
    set_no_store(response)
    _enforce_ip_rate_limit(request, bucket="otp_request", limit=settings.AUTH_OTP_REQUEST_IP_LIMIT_PER_MINUTE)
    return _issue_otp_response(
        db,
        request,
        email=payload.email,
        device_fingerprint=payload.device_fingerprint,
    )


@router.post("/email-otp/verify", response_model=TokenResponse)
def verify_email_otp_login(
    payload: EmailOtpVerifyPayload, request: Request, response: Response, db: Session = Depends(get_db)
):
    """Verify an emailed OTP and open a device-bound session."""
    set_no_store(response)
    _enforce_ip_rate_limit(request, bucket="otp_verify", limit=settings.AUTH_OTP_VERIFY_IP_LIMIT_PER_MINUTE)
    return _login_response(db, request, response, payload, email=payload.email)


@router.post("/refresh", response_model=TokenResponse)
def refresh(
    request: Request,
    response: Response,
    payload: RefreshTokenRequest | None = None,
    db: Session = Depends(get_db),
):
    """Rotate the refresh token and issue a new session."""
    set_no_store(response)
    _enforce_ip_rate_limit(request, bucket="refresh", limit=settings.AUTH_REFRESH_IP_LIMIT_PER_MINUTE)

    token = request.cookies.get(settings.AUTH_REFRESH_COOKIE_NAME) or (payload.refresh_token if payload else None)
    try:
        issued = refresh_session(
            db,
            token,
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to persist refresh rotation")
        raise HTTPException(status_code=500, detail="Failed to refresh session")

    _set_refresh_cookie(response, request=request, token=issued.refresh_token)
    return _token_response(issued, user=issued.session.user)


@router.post("/logout", response_model=LogoutResponse)
def logout(
    request: Request,
    response: Response,
    payload: LogoutRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    """Revoke the current session (or every session with ``everywhere``)."""
    set_no_store(response)
    revoked = logout_use_case(
        db=db,
        session=principal.session,
        everywhere=bool(payload and payload.everywhere),
    )
    _clear_refresh_cookie(response, request=request)
    return LogoutResponse(revoked_sessions=revoked)


@router.get("/me", response_model=MeResponse)
def me(principal: Principal = Depends(get_current_principal)):
    """Current user and session."""
    return MeResponse(
        user=UserResponse.model_validate(principal.user),
        session=SessionResponse.model_validate(principal.session),
        mfa_satisfied=principal.mfa_satisfied,
    )


@router.post("/session/validate", response_model=SessionValidateResponse)
def validate(payload: SessionValidateRequest, db: Session = Depends(get_db)):
    """Introspect a bearer token for the web tier. Always 200; ``valid`` carries the verdict."""
    result = validate_session(db, payload.token)
    session = result.session
    return SessionValidateResponse(
        valid=result.valid,
        reason=result.reason,
        message=result.message,
        session_id=session.id if session is not None else None,
        user_id=session.user_id if session is not None else None,
        role=session.role if session is not None else None,
        expires_at=session.expires_at if session is not None else None,
    )
