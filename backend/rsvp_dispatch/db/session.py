"""Database engine, session factory and session helpers"""
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from rsvp_dispatch.models.base import Base
from rsvp_dispatch.core.config import settings


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # Local runs and tests; the dispatcher awaits sends on the event loop thread
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_recycle": 3600, "pool_size": 10, "max_overflow": 20}


engine = create_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope():
    """Session for work outside a request (scheduler ticks, admin scripts); always closed"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create missing tables"""
    import rsvp_dispatch.models  # noqa: F401  registers every table with Base.metadata
    Base.metadata.create_all(bind=engine)
