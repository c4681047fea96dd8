"""
============================================================================
Canteen Order Engine v1.0.0
Database Session - SQLAlchemy Engine & Session Management
============================================================================

Reliability Level: L6 Critical (Order Integrity)
Input Constraints: DATABASE_URL (SQLite or PostgreSQL)
Side Effects: Database connections

MANDATE:
- Every order mutation is a conditional UPDATE; no row locks are held
  across requests
- SQLite connections wait on a busy timeout instead of failing fast
- Connection pooling for request-path performance

============================================================================
"""

import os
from typing import Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


# ============================================================================
# DATABASE CONFIGURATION
# ============================================================================

# Seconds a SQLite writer waits for the database lock
SQLITE_BUSY_TIMEOUT_SECONDS = 30


def get_database_url() -> str:
    """
    Read the connection URL from the environment.

    Environment Variables:
        DATABASE_URL: SQLAlchemy URL (default: sqlite:///./canteen.db)
    """
    return os.getenv("DATABASE_URL", "sqlite:///./canteen.db")


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine tuned for the given backend.

    SQLite connections are shared across the request threadpool and the
    sweep, so same-thread checking is disabled and writers wait on the
    busy timeout. Other backends get a pre-pinged, recycled pool.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={
                "check_same_thread": False,
                "timeout": SQLITE_BUSY_TIMEOUT_SECONDS,
            },
        )

        @event.listens_for(engine, "connect")
        def set_sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_SECONDS * 1000}")
            cursor.close()

        return engine

    return create_engine(
        database_url,
        echo=echo,
        pool_size=10,           # Maintain 10 connections
        max_overflow=20,        # Allow up to 20 additional connections under load
        pool_timeout=30,        # Wait up to 30s for a connection
        pool_recycle=1800,      # Recycle connections after 30 minutes
        pool_pre_ping=True,     # Verify connections before use
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


# ============================================================================
# SQLALCHEMY ENGINE
# ============================================================================

DATABASE_URL = get_database_url()

engine = build_engine(
    DATABASE_URL,
    echo=os.getenv("DB_ECHO", "false").lower() == "true",
)


# ============================================================================
# SESSION FACTORY
# ============================================================================

SessionLocal = build_session_factory(engine)


# ============================================================================
# HEALTH CHECK
# ============================================================================

def check_database_connection(target: Optional[Engine] = None) -> bool:
    """
    Verify database connectivity.

    Raises:
        Exception: If database connection fails
    """
    try:
        with (target or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        raise Exception(f"Database connection failed: {e}")


# ============================================================================
# END OF DATABASE SESSION MODULE
# ============================================================================
