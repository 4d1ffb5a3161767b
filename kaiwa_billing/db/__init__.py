"""Database module for async SQLAlchemy (PostgreSQL in production)."""

from kaiwa_billing.db.session import DatabaseManager, get_db_manager, init_db_manager

__all__ = [
    # Session management
    "DatabaseManager",
    "get_db_manager",
    "init_db_manager",
]
