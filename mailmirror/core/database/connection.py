"""
Database connection and session management.
Sync engine and session factory; async callers wrap units of work in
asyncio.to_thread.
"""
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import OperationalError, DBAPIError
from typing import Optional
import logging
import time

from mailmirror.core.config import get_settings

logger = logging.getLogger(__name__)

engine = None
SessionLocal = None


def normalize_database_url(url: str) -> str:
    # Some hosts hand out postgres:// which SQLAlchemy no longer accepts
    if url.startswith('postgres://'):
        return url.replace('postgres://', 'postgresql://', 1)
    return url


def init_db(database_url: Optional[str] = None, max_retries: int = 3, retry_delay: float = 1.0):
    """
    Initialize the database engine and session factory with retry logic.
    Call this once at application startup.

    Args:
        database_url: Override for settings.database_url
        max_retries: Number of connection attempts
        retry_delay: Seconds to wait between retries

    Returns:
        The session factory, or None when no URL is configured

    Raises:
        RuntimeError: If connection fails after all retries
    """
    global engine, SessionLocal

    settings = get_settings()
    url = normalize_database_url(database_url or settings.database_url)
    if not url:
        logger.warning("DATABASE_URL not set - database features disabled")
        return None

    for attempt in range(max_retries):
        try:
            engine = create_engine(
                url,
                pool_pre_ping=True,  # Verify connections before using
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                pool_recycle=3600,
                echo=False,
            )

            # Test connection
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))

            SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

            logger.info(f"Database initialized: {url.split('@')[1] if '@' in url else 'local'}")
            return SessionLocal

        except (OperationalError, DBAPIError) as e:
            logger.warning(f"Database connection attempt {attempt + 1}/{max_retries} failed: {e}")
            if attempt < max_retries - 1:
                time.sleep(retry_delay * (attempt + 1))
            else:
                logger.error(f"Database initialization failed after {max_retries} attempts")
                raise RuntimeError(f"Failed to connect to database: {e}") from e


def get_session_factory() -> sessionmaker:
    if not SessionLocal:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return SessionLocal


def create_tables(bind=None):
    """
    Create all tables (and, on PostgreSQL, the pgvector extension and HNSW index).
    Schema migrations are not managed here.
    """
    bind = bind or engine
    if bind is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    from .models import Base

    is_postgres = bind.dialect.name == "postgresql"
    if is_postgres:
        with bind.begin() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))

    Base.metadata.create_all(bind=bind)

    if is_postgres:
        with bind.begin() as conn:
            conn.execute(text(
                "CREATE INDEX IF NOT EXISTS ix_message_embeddings_vector_hnsw "
                "ON message_embeddings USING hnsw (vector halfvec_ip_ops)"
            ))
    logger.info("Database tables created")
