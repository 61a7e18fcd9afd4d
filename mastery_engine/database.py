from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from datetime import datetime, timezone
import logging

from mastery_engine.config import settings
from mastery_engine.exceptions import PersistenceError

logger = logging.getLogger(__name__)

connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}
engine = create_engine(settings.database_url, connect_args=connect_args)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; every stored datetime uses this convention"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def init_db():
    """Create all tables"""
    import mastery_engine.models  # noqa: F401  (registers models on Base)
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables initialized")


def commit_or_raise(db: Session, action: str):
    """Commit the session, rolling back and raising a retryable error on failure"""
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Failed to %s: %s", action, e)
        raise PersistenceError(action, e) from e
