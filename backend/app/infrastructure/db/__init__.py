"""
Database Infrastructure Package for Koffers

Exports database utilities, models, and repositories.
"""

from app.infrastructure.db.database import (
    DatabaseManager,
    get_db_manager,
    get_session_context,
    init_db,
    close_db,
)


__all__ = [
    "DatabaseManager",
    "get_db_manager",
    "get_session_context",
    "init_db",
    "close_db",
]
