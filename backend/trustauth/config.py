"""Application configuration."""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings."""

    # App
    APP_NAME: str = "TrustAuth"
    ENV: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # Database
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 10

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"

    # Proxy / client IP handling
    # Only trust X-Forwarded-* headers when running behind a trusted reverse proxy (e.g. nginx).
    TRUST_PROXY_HEADERS: bool = False

    # Celery
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"
    ALERT_RULES_INTERVAL_SECONDS: float = 60.0
    AUDIT_CHAIN_VERIFY_INTERVAL_SECONDS: float = 3600.0

    # JWT (access tokens are bound to a server-side session row)
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_LEEWAY_SECONDS: int = 30  # clock skew tolerance for iat validation

    # Session lifetimes per role
    SESSION_TTL_CUSTOMER_HOURS: int = 6
    SESSION_TTL_STAFF_HOURS: int = 12
    SESSION_TTL_ADMIN_HOURS: int = 24
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    # Single-device policy
    SINGLE_DEVICE_ROLES: str = "technician,transporter"
    # "takeover": last login wins and the old device is logged out.
    # "reject": the new login is refused until an admin unlocks or allows an override.
    DEVICE_CONFLICT_MODE: str = "takeover"

    # Login anomaly detection
    ANOMALY_IP_LOOKBACK_DAYS: int = 30
    ANOMALY_LOCAL_UTC_OFFSET_MINUTES: int = 330  # IST
    ANOMALY_ODD_HOUR_START: int = 6
    ANOMALY_ODD_HOUR_END: int = 23

    # OTP
    OTP_LENGTH: int = 6
    OTP_TTL_MINUTES: int = 5
    EMAIL_OTP_TTL_MINUTES: int = 10
    OTP_MAX_ATTEMPTS: int = 5
    OTP_REQUESTS_PER_WINDOW: int = 5
    OTP_REQUEST_WINDOW_MINUTES: int = 15
    OTP_BCRYPT_ROUNDS: int = 10

    # Admin MFA (TOTP)
    MFA_ISSUER: str = "TrustAuth"
    MFA_ENCRYPTION_KEY: str | None = None  # Fernet key; derived from JWT_SECRET_KEY when unset
    MFA_MAX_FAILED_ATTEMPTS: int = 5
    MFA_VALID_WINDOW: int = 1

    # Auth hardening (rate limits)
    # NOTE: These are enforced in the API layer using Redis.
    AUTH_OTP_REQUEST_IP_LIMIT_PER_MINUTE: int = 10
    AUTH_OTP_VERIFY_IP_LIMIT_PER_MINUTE: int = 10
    AUTH_REFRESH_IP_LIMIT_PER_MINUTE: int = 30

    # Auth cookies (refresh token)
    AUTH_REFRESH_COOKIE_NAME: str = "refresh_token"
    AUTH_REFRESH_COOKIE_PATH: str = "/api/v1/auth/refresh"
    AUTH_REFRESH_COOKIE_SAMESITE: str = "lax"  # "lax" or "strict"
    # In production this MUST be True (requires HTTPS).
    AUTH_REFRESH_COOKIE_SECURE: bool = False

    # Out-of-band job trigger (external scheduler -> /security/internal/run-alerts)
    INTERNAL_JOB_SECRET: str | None = None

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def cors_origins(self) -> list[str]:
        """Get CORS origins as list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    @property
    def single_device_roles(self) -> frozenset[str]:
        """Roles restricted to one active device."""
        return frozenset(
            role.strip().lower() for role in self.SINGLE_DEVICE_ROLES.split(",") if role.strip()
        )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
