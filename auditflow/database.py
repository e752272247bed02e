import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import get_settings

logger = logging.getLogger(__name__)

# Base class for all models
Base = declarative_base()

# Session factory, bound once the engine exists
SessionLocal = sessionmaker(autocommit=False, autoflush=False)

_engine: Optional[Engine] = None


def build_engine(database_url: str, echo: bool = False) -> Engine:
    if database_url.startswith("sqlite"):
        # sessions are used from worker threads (asyncio.to_thread)
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )
    return create_engine(
        database_url,
        pool_pre_ping=True,              # Detect broken connections
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        echo=echo,
    )


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings.DATABASE_URL, echo=settings.DB_ECHO)
        SessionLocal.configure(bind=_engine)
    return _engine


def get_db():
    """
    FastAPI dependency to provide DB session.
    Usage: db: Session = Depends(get_db)
    """
    get_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(engine: Optional[Engine] = None, drop_all: bool = False) -> None:
    """
    Create the schema if it is missing.

    WARNING: drop_all=True deletes all data; use only in dev/testing.
    """
    engine = engine or get_engine()
    try:
        # Import all models so they register with Base.metadata
        from . import models  # noqa: F401

        if drop_all:
            logger.warning("Dropping all tables! This will delete all data.")
            Base.metadata.drop_all(bind=engine)

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully.")
    except SQLAlchemyError as e:
        logger.error("Database initialization failed: %s", e)
        raise


def dispose_engine() -> None:
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None
        logger.info("Database engine disposed.")
