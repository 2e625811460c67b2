"""
Database engine and table setup
"""

import structlog
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base
from config import settings

logger = structlog.get_logger()


def create_db_engine(url: str = None):
    """Create a SQLAlchemy engine for the given URL (defaults to settings)."""
    url = url or settings.DATABASE_URL
    return create_engine(
        url,
        connect_args={"check_same_thread": False} if "sqlite" in url else {},
        echo=settings.DEBUG,
        pool_pre_ping=True  # Verify connections before using
    )


# Create SQLAlchemy engine
engine = create_db_engine()

# Create Base class for models
Base = declarative_base()


def init_db(bind=None):
    """Initialize database - create all tables"""
    # Models must be imported so their tables register on Base.metadata
    import models  # noqa: F401

    try:
        Base.metadata.create_all(bind=bind or engine)
        logger.info("database_initialized", url=str((bind or engine).url))
    except Exception as e:
        logger.error("database_init_failed", error=str(e))
        raise
