# ============================================================================
# ChangeWLD Exchange
# Database Module - SQLAlchemy Engine & Schema
# ============================================================================

from app.database.session import (
    create_database_engine,
    get_engine,
    init_schema,
    check_database_connection,
)

__all__ = [
    "create_database_engine",
    "get_engine",
    "init_schema",
    "check_database_connection",
]
