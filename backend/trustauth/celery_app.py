"""
Celery worker for periodic security jobs: alert rules, audit chain checks, session expiry.
"""
import logging

from celery import Celery

from .config import settings
from .database import SessionLocal
from .domain_errors import IntegrityViolation
from .use_cases.alert_rules import run_alert_rules
from .use_cases.audit_chain import assert_chain_intact
from .use_cases.sessions import expire_stale_sessions

logger = logging.getLogger(__name__)

celery_app = Celery(
    "trustauth",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
)


@celery_app.task(name="process_security_alert_rules")
def process_security_alert_rules():
    """Evaluate every active alert rule once; each rule runs in its own savepoint."""
    db = SessionLocal()
    try:
        alerts = run_alert_rules(db)
        logger.info("Alert rule pass created %d alert(s)", len(alerts))
        return {"alerts_created": len(alerts), "alert_ids": [str(a.id) for a in alerts]}
    except Exception:
        db.rollback()
        logger.exception("Error processing security alert rules")
        raise
    finally:
        db.close()


@celery_app.task(name="verify_audit_chain")
def verify_audit_chain(from_seq: int | None = None, to_seq: int | None = None):
    """Re-hash the audit chain. A broken chain is logged and reported, not retried."""
    db = SessionLocal()
    try:
        result = assert_chain_intact(db, from_seq=from_seq, to_seq=to_seq)
        logger.info("Audit chain intact (%d entries checked)", result.checked)
        return {"ok": True, "checked": result.checked}
    except IntegrityViolation as exc:
        logger.critical("Audit chain integrity violation: %s", exc.details)
        return {"ok": False, **(exc.details or {})}
    finally:
        db.close()


@celery_app.task(name="expire_stale_sessions")
def expire_stale_sessions_task(batch_size: int = 500):
    """Mark sessions past their expiry as revoked so listings reflect reality."""
    db = SessionLocal()
    try:
        expired = expire_stale_sessions(db, batch_size=batch_size)
        db.commit()
        if expired:
            logger.info("Expired %d stale session(s)", expired)
        return {"expired": expired}
    except Exception:
        db.rollback()
        logger.exception("Error expiring stale sessions")
        raise
    finally:
        db.close()


# Schedule periodic processing
celery_app.conf.beat_schedule = {
    'process-security-alert-rules': {
        'task': 'process_security_alert_rules',
        'schedule': settings.ALERT_RULES_INTERVAL_SECONDS,
    },
    'verify-audit-chain': {
        'task': 'verify_audit_chain',
        'schedule': settings.AUDIT_CHAIN_VERIFY_INTERVAL_SECONDS,
    },
    'expire-stale-sessions': {
        'task': 'expire_stale_sessions',
        'schedule': 300.0,
    },
}
