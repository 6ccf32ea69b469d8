"""
Database package
"""
from .tables import Base, AgentRunRow, AgentAuditLogRow, AgentMemoryItemRow, AgentLongTermMemoryRow
from .async_connection import (
    async_engine,
    AsyncSessionLocal,
    create_engine_for,
    create_session_factory,
    get_async_database_url,
    get_async_db_context,
    init_async_db,
    close_async_db,
)
from .stores import SqlAuditLogger, SqlCheckpointStore, SqlMemoryStore

__all__ = [
    # tables
    "Base", "AgentRunRow", "AgentAuditLogRow", "AgentMemoryItemRow", "AgentLongTermMemoryRow",
    # connection
    "async_engine", "AsyncSessionLocal", "create_engine_for", "create_session_factory",
    "get_async_database_url", "get_async_db_context", "init_async_db", "close_async_db",
    # stores
    "SqlAuditLogger", "SqlCheckpointStore", "SqlMemoryStore",
]
