"""SQLAlchemy engine, session factory and declarative base."""
from typing import Any, Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import settings

_engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
# Bounded pools only apply to server databases; SQLite uses a single-connection pool.
if not settings.DATABASE_URL.startswith("sqlite"):
    _engine_kwargs["pool_size"] = max(1, int(settings.DATABASE_POOL_SIZE))
    _engine_kwargs["max_overflow"] = max(0, int(settings.DATABASE_MAX_OVERFLOW))
    _engine_kwargs["pool_recycle"] = 1800

engine = create_engine(settings.DATABASE_URL, **_engine_kwargs)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Iterator[Session]:
    """FastAPI dependency yielding a request-scoped session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
