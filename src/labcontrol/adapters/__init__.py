"""Database adapters package.

Provides the ``DatabaseClient`` Protocol and the async SQLite adapter used
by both stores.

Usage:
    from labcontrol.adapters import DatabaseClient, AsyncSqliteAdapter
"""

from labcontrol.adapters.base import DatabaseClient
from labcontrol.adapters.sqlite import AsyncSqliteAdapter, create_sqlite_engine

__all__ = [
    "DatabaseClient",
    "AsyncSqliteAdapter",
    "create_sqlite_engine",
]
