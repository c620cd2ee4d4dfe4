"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the PayPal deposit service.
"""

import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool
from config import Config
from models import Base

logger = logging.getLogger(__name__)

# Database engine with connection pooling
if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")


def _engine_kwargs(database_url: str) -> dict:
    """Pool settings per backend; SQLite has no server-side pool to tune"""
    if database_url.startswith("sqlite"):
        return {
            "connect_args": {"check_same_thread": False},
            "echo": False,
        }
    return {
        "poolclass": QueuePool,
        "pool_size": 5,          # Webhook bursts are short-lived
        "max_overflow": 10,
        "pool_pre_ping": True,   # Validate connections before use
        "pool_recycle": 3600,    # Recycle connections every hour
        "pool_timeout": 30,
        "echo": False,
        "connect_args": {
            "connect_timeout": 10,
            "application_name": "paypal_deposit_service",  # For monitoring in pg_stat_activity
        },
    }


engine = create_engine(Config.DATABASE_URL, **_engine_kwargs(Config.DATABASE_URL))

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine
)


def create_tables():
    """Create all database tables if they don't exist"""
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")

        Base.metadata.create_all(bind=engine, checkfirst=True)

        from sqlalchemy import inspect
        existing_tables = inspect(engine).get_table_names()
        logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
        logger.info(f"📋 Tables: {', '.join(sorted(existing_tables))}")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}", exc_info=True)
        return False


@contextmanager
def managed_session(session_factory=None):
    """Sync context manager for database sessions"""
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()


def test_connection():
    """Test database connection"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
            return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
