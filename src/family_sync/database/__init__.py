"""Database module for family calendar synchronization.

This module provides:
- SQLAlchemy async database connection
- Connection and event tables
- Encrypted storage for sensitive data (OAuth tokens)
- Repository implementations used by the sync engine
"""

from family_sync.database.connection import (
    close_db,
    create_session_factory,
    create_tables,
    get_session_factory,
    init_db,
)
from family_sync.database.models import (
    Base,
    CalendarConnectionRecord,
    EventRecord,
)
from family_sync.database.repositories import (
    SqlConnectionRepository,
    SqlEventRepository,
)

__all__ = [
    # Connection
    "init_db",
    "close_db",
    "create_tables",
    "create_session_factory",
    "get_session_factory",
    # Models
    "Base",
    "CalendarConnectionRecord",
    "EventRecord",
    # Repositories
    "SqlConnectionRepository",
    "SqlEventRepository",
]
