"""
============================================================================
ChangeWLD Exchange
Database Session - SQLAlchemy Engine & Schema Management
============================================================================

Reliability Level: L5 High
Input Constraints: DATABASE_URL must be a SQLAlchemy URL
Side Effects: Database connections, DDL on init_schema()

Orders, the order id counter and identity records live in three tables.
The counter row is incremented in place by the database
(UPDATE ... SET value = value + 1), so id allocation stays atomic across
processes sharing the same database.

============================================================================
"""

import os
import logging
from typing import Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

ORDER_COUNTER = "orders"


# ============================================================================
# DATABASE CONFIGURATION
# ============================================================================

def get_database_url() -> str:
    """
    Database URL from the environment.

    Environment Variables:
        DATABASE_URL: SQLAlchemy URL (default: sqlite:///./changewld.db)
    """
    return os.getenv("DATABASE_URL", "sqlite:///./changewld.db")


# ============================================================================
# SQLALCHEMY ENGINE
# ============================================================================

def create_database_engine(url: Optional[str] = None) -> Engine:
    """
    Create an engine for `url`.

    SQLite engines are shared across the worker threads that run store
    calls; an in-memory SQLite URL gets a single static connection so every
    caller sees the same database.
    """
    url = url or get_database_url()
    echo = os.getenv("DB_ECHO", "false").lower() == "true"

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, echo=echo, **kwargs)
        event.listen(engine, "connect", _set_sqlite_pragmas)
    else:
        engine = create_engine(
            url,
            pool_size=10,
            max_overflow=20,
            pool_timeout=30,
            pool_recycle=1800,
            pool_pre_ping=True,
            echo=echo,
        )

    logger.info(f"[DB] Engine created | dialect={engine.dialect.name}")
    return engine


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA busy_timeout = 5000")
    cursor.close()


_engine: Optional[Engine] = None


def get_engine() -> Engine:
    """Process-wide engine, created on first access."""
    global _engine
    if _engine is None:
        _engine = create_database_engine()
    return _engine


def reset_engine() -> None:
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


# ============================================================================
# SCHEMA
# ============================================================================

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS orders (
        id INTEGER PRIMARY KEY,
        identity_handle VARCHAR(256) NOT NULL,
        bank_destination VARCHAR(64) NOT NULL,
        account_holder VARCHAR(256) NOT NULL,
        account_number VARCHAR(64) NOT NULL,
        amount_source VARCHAR(64) NOT NULL,
        amount_target VARCHAR(64) NOT NULL,
        status VARCHAR(32) NOT NULL,
        status_history TEXT NOT NULL,
        created_at VARCHAR(40) NOT NULL,
        updated_at VARCHAR(40) NOT NULL,
        inventory_date VARCHAR(10) NOT NULL,
        profit_margin VARCHAR(64) NOT NULL,
        onchain_reference VARCHAR(80)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_orders_identity_created
        ON orders (identity_handle, created_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_orders_onchain_reference
        ON orders (onchain_reference)
    """,
    """
    CREATE TABLE IF NOT EXISTS counters (
        name VARCHAR(64) PRIMARY KEY,
        value INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS identities (
        identity_handle VARCHAR(256) PRIMARY KEY,
        wallet_address VARCHAR(42),
        verified_at VARCHAR(40),
        created_at VARCHAR(40) NOT NULL,
        updated_at VARCHAR(40) NOT NULL
    )
    """,
)


def init_schema(engine: Engine) -> None:
    """Create tables if missing and seed the order counter row."""
    with engine.begin() as conn:
        for statement in SCHEMA_STATEMENTS:
            conn.execute(text(statement))
        conn.execute(
            text("""
                INSERT INTO counters (name, value)
                SELECT :name, 0
                WHERE NOT EXISTS (SELECT 1 FROM counters WHERE name = :name)
            """),
            {"name": ORDER_COUNTER},
        )
    logger.info("[DB] Schema ready | tables=orders,counters,identities")


# ============================================================================
# HEALTH CHECK
# ============================================================================

def check_database_connection(engine: Optional[Engine] = None) -> bool:
    """
    Verify database connectivity.

    Raises:
        Exception: If database connection fails
    """
    engine = engine or get_engine()
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        raise Exception(f"Database connection failed: {e}")


# ============================================================================
# END OF DATABASE SESSION MODULE
# ============================================================================
