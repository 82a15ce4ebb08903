"""
Database module.
Contains database connection, models, and the SQL queue and blob store.
"""

from queuepump.db.connection import (
    close_db,
    create_engine,
    create_session_factory,
    get_engine,
    init_db,
    session_scope,
)
from queuepump.db.models import Base, OverflowBlob, QueueMessageRecord
from queuepump.db.repository import SqlBlobStore, SqlQueueClient

__all__ = [
    "session_scope",
    "create_engine",
    "create_session_factory",
    "get_engine",
    "init_db",
    "close_db",
    "Base",
    "QueueMessageRecord",
    "OverflowBlob",
    "SqlQueueClient",
    "SqlBlobStore",
]
