"""Pydantic schemas for API."""
from pydantic import BaseModel, Field, ConfigDict
from typing import Any, Optional
from datetime import datetime
from uuid import UUID


# User / session schemas
class UserResponse(BaseModel):
    id: UUID
    phone_e164: Optional[str] = None
    email: Optional[str] = None
    display_name: Optional[str] = None
    role: str
    is_active: bool
    mfa_enabled: bool
    model_config = ConfigDict(from_attributes=True)


class SessionResponse(BaseModel):
    id: UUID
    role: str
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    status: str
    mfa_verified_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class MeResponse(BaseModel):
    user: UserResponse
    session: SessionResponse
    mfa_satisfied: bool


# Auth schemas
class DeviceSignalsPayload(BaseModel):
    """Raw browser signals; the server derives the fingerprint when no hash is sent."""
    hardware_concurrency: Optional[Any] = None
    user_agent: Optional[str] = None
    platform: Optional[str] = None
    timezone_offset: Optional[Any] = None
    screen_resolution: Optional[str] = None
    touch_support: Optional[Any] = None
    canvas_hash: Optional[str] = None
    webgl_vendor: Optional[str] = None
    webgl_renderer: Optional[str] = None
    language: Optional[str] = None
    cookie_enabled: Optional[bool] = None
    vendor: Optional[str] = None


class OtpRequestPayload(BaseModel):
    phone: str = Field(min_length=10, max_length=20)
    channel: str = Field(default="whatsapp", pattern="^(whatsapp|sms)$")
    device_fingerprint: Optional[str] = Field(default=None, pattern="^[0-9a-fA-F]{64}$")


class OtpRequestResponse(BaseModel):
    request_id: UUID
    channel: str
    expires_at: datetime
    # Only populated outside production; delivery is handled by the notification service.
    dev_code: Optional[str] = None


class OtpVerifyPayload(BaseModel):
    phone: str = Field(min_length=10, max_length=20)
    code: str = Field(min_length=4, max_length=10)
    device_fingerprint: Optional[str] = Field(default=None, pattern="^[0-9a-fA-F]{64}$")
    device_signals: Optional[DeviceSignalsPayload] = None


class EmailOtpRequestPayload(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    device_fingerprint: Optional[str] = Field(default=None, pattern="^[0-9a-fA-F]{64}$")


class EmailOtpVerifyPayload(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    code: str = Field(min_length=4, max_length=10)
    device_fingerprint: Optional[str] = Field(default=None, pattern="^[0-9a-fA-F]{64}$")
    device_signals: Optional[DeviceSignalsPayload] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    session_id: UUID
    user: UserResponse
    mfa_required: bool = False
    is_new_user: bool = False
    device_outcome: Optional[str] = None


class RefreshTokenRequest(BaseModel):
    # Cookie is preferred; body token supports native clients.
    refresh_token: Optional[str] = None


class LogoutRequest(BaseModel):
    everywhere: bool = False


class LogoutResponse(BaseModel):
    revoked_sessions: int


class SessionValidateRequest(BaseModel):
    token: Optional[str] = None


class SessionValidateResponse(BaseModel):
    valid: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    session_id: Optional[UUID] = None
    user_id: Optional[UUID] = None
    role: Optional[str] = None
    expires_at: Optional[datetime] = None


# MFA schemas
class MfaSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str
    expires_at: datetime


class MfaCodeRequest(BaseModel):
    code: str = Field(min_length=6, max_length=6, pattern="^[0-9]{6}$")


class MfaStatusResponse(BaseModel):
    mfa_enabled: bool
    session_mfa_verified: bool


# Device schemas
class DeviceLockResponse(BaseModel):
    user_id: UUID
    device_id: str
    override_allowed: bool
    updated_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class DeviceUnlockResponse(BaseModel):
    user_id: UUID
    unlocked: bool


class DeviceConflictResponse(BaseModel):
    id: UUID
    user_id: UUID
    old_device: str
    new_device: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    resolution: str
    detected_at: datetime
    model_config = ConfigDict(from_attributes=True)


# Security schemas
class SecurityEventResponse(BaseModel):
    id: UUID
    actor_user_id: Optional[UUID] = None
    event_type: str
    severity: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="details")
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class AlertRuleResponse(BaseModel):
    id: UUID
    name: str
    description: Optional[str] = None
    is_active: bool
    severity: str
    source_type: str
    condition: dict[str, Any]
    model_config = ConfigDict(from_attributes=True)


class AlertRuleToggleRequest(BaseModel):
    is_active: bool


class SecurityAlertResponse(BaseModel):
    id: UUID
    rule_id: UUID
    source_type: str
    severity: str
    message: str
    group_key: str
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="details")
    status: str
    created_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[UUID] = None
    model_config = ConfigDict(from_attributes=True)


class AlertRunResponse(BaseModel):
    alerts_created: int
    alert_ids: list[UUID]


# Audit schemas
class AuditLogEntryResponse(BaseModel):
    id: UUID
    seq: int
    created_at: datetime
    actor_user_id: Optional[UUID] = None
    actor_role: Optional[str] = None
    session_id: Optional[UUID] = None
    ip_address: Optional[str] = None
    event_type: str
    entity_type: str
    entity_id: Optional[str] = None
    severity: str
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="details")
    prev_hash: str
    hash: str
    model_config = ConfigDict(from_attributes=True)


class ChainVerificationResponse(BaseModel):
    ok: bool
    first_invalid_id: Optional[str] = None
    checked: int
    reason: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)
