"""One-shot alert rule pass for cron-style schedulers.

Usage: ``python -m trustauth.jobs``. Always exits 0; failures are logged.
"""
import logging

from sqlalchemy.exc import SQLAlchemyError

from .config import settings
from .database import SessionLocal
from .use_cases.alert_rules import run_alert_rules

logger = logging.getLogger("trustauth.jobs")


def main() -> int:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    db = SessionLocal()
    try:
        alerts = run_alert_rules(db)
        logger.info("Alert rule pass created %d alert(s)", len(alerts))
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Alert rule pass failed")
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
