"""FastAPI application."""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .config import settings
from .database import SessionLocal
from .domain_errors import DomainError
from .problem_details import domain_error_handler
from .routers import auth, devices, mfa, security

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create app
app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Session, device-trust and security audit API",
)

# Production safety checks (fail closed on insecure config).
if settings.ENV.lower() == "production" and not settings.AUTH_REFRESH_COOKIE_SECURE:
    raise RuntimeError("AUTH_REFRESH_COOKIE_SECURE must be true in production (requires HTTPS).")
if settings.ENV.lower() == "production" and not settings.cors_origins:
    raise RuntimeError("ALLOWED_ORIGINS must be set in production (explicit frontend origin required).")
if settings.ENV.lower() == "production" and any(origin.strip() == "*" for origin in settings.cors_origins):
    raise RuntimeError("ALLOWED_ORIGINS must be explicit in production (no wildcard when using credentials).")
if settings.ENV.lower() == "production" and settings.DEVICE_CONFLICT_MODE not in ("takeover", "reject"):
    raise RuntimeError("DEVICE_CONFLICT_MODE must be 'takeover' or 'reject'.")
if settings.ENV.lower() == "production" and not settings.MFA_ENCRYPTION_KEY:
    logger.warning("MFA_ENCRYPTION_KEY is unset; MFA secrets are encrypted with a key derived from JWT_SECRET_KEY")

# CORS
cors_methods = ["GET", "POST", "PATCH", "OPTIONS"]
cors_headers = ["Authorization", "Content-Type"]
if settings.ENV.lower() != "production":
    cors_headers = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=cors_methods,
    allow_headers=cors_headers,
)

app.add_exception_handler(DomainError, domain_error_handler)

# Include routers
app.include_router(auth.router, prefix="/api/v1")
app.include_router(mfa.router, prefix="/api/v1")
app.include_router(devices.router, prefix="/api/v1")
app.include_router(security.router, prefix="/api/v1")


@app.get("/api/v1/system/health")
def health_check():
    """Health check endpoint."""
    database = "ok"
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check database query failed")
        database = "error"
    finally:
        db.close()
    return {
        "status": "ok" if database == "ok" else "degraded",
        "version": "1.0.0",
        "database": database,
    }


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "message": f"{settings.APP_NAME} API",
        "version": "1.0.0",
        "docs": "/docs",
    }
