"""
RiskShield - Database Configuration
PostgreSQL connection using SQLAlchemy
"""
from functools import lru_cache
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base

from .config import get_settings

# Base class for ORM models
Base = declarative_base()


def create_session_factory(database_url: str, echo: bool = False) -> sessionmaker:
    """Build an engine and a session factory bound to it."""
    engine = create_engine(database_url, echo=echo)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@lru_cache
def _default_session_factory() -> sessionmaker:
    return create_session_factory(get_settings().database_url)


def get_engine() -> Engine:
    """Engine used by the API process."""
    return _default_session_factory().kw["bind"]


def get_db():
    """Dependency for FastAPI - yields database session."""
    db = _default_session_factory()()
    try:
        yield db
    finally:
        db.close()


def init_db(engine: Optional[Engine] = None):
    """Initialize database - create all tables."""
    # Importing the models registers every table on Base.metadata
    from .models import db_models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())
