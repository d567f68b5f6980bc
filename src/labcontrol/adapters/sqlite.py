"""Async SQLite database adapter.

Provides ``AsyncSqliteAdapter``, an async implementation of the
``DatabaseClient`` protocol using SQLAlchemy's async engine with the
``aiosqlite`` driver.  Each store owns one adapter over its own file; there
is never a connection spanning two store files.

Usage:
    from labcontrol.adapters.sqlite import AsyncSqliteAdapter

    adapter = AsyncSqliteAdapter("/workspace/cargo.sqlite")
    rows = await adapter.select("pieces", "id, tag_id")
    await adapter.close()
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)


def create_sqlite_engine(database_path: str | Path, **kwargs: Any) -> AsyncEngine:
    """Create an async SQLAlchemy engine over a SQLite file.

    Default settings:

    - ``timeout=15``: seconds the driver waits on a locked database file.
    - ``PRAGMA foreign_keys=ON`` on every new connection, so same-store
      references (link -> piece) are enforced.

    Args:
        database_path: Path to the SQLite file.  Parent directories must exist.
        **kwargs: Additional keyword arguments forwarded to
            ``create_async_engine``.

    Returns:
        Configured ``AsyncEngine``.
    """
    url = f"sqlite+aiosqlite:///{Path(database_path)}"

    defaults: dict[str, Any] = {
        "connect_args": {"timeout": 15},
        "echo": False,
    }
    # Caller kwargs override defaults
    merged = {**defaults, **kwargs}

    engine = create_async_engine(url, **merged)

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):  # noqa: ARG001
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


class AsyncSqliteAdapter:
    """Async SQLite implementation of the ``DatabaseClient`` protocol.

    Writes are serialized with an ``asyncio.Lock`` in addition to SQLite's
    own file lock, so one store has exactly one writer at a time.  The lock
    is not re-entrant: code running inside ``transaction()`` must use the
    yielded connection, not ``insert``/``update``/``delete``.

    Args:
        database_path: Path to the SQLite file.
        json_columns: Optional list of column names stored as JSON text.
            Values are ``json.dumps``-ed on write and ``json.loads``-ed on read.
        **engine_kwargs: Additional keyword arguments forwarded to
            ``create_sqlite_engine``.
    """

    def __init__(
        self,
        database_path: str | Path,
        json_columns: list[str] | None = None,
        **engine_kwargs: Any,
    ) -> None:
        self.database_path = Path(database_path)
        self._json_columns: frozenset[str] = frozenset(json_columns or [])
        self._engine: AsyncEngine = create_sqlite_engine(self.database_path, **engine_kwargs)
        self._write_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # CRUD Methods
    # ------------------------------------------------------------------

    async def select(
        self,
        table: str,
        columns: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[dict]:
        """Select rows matching every filter, decoded into dicts."""
        where, params = _where(filters, "p")
        order = f" ORDER BY {order_by}" if order_by else ""
        query = text(f"SELECT {columns} FROM {table}{where}{order}")

        async with self._engine.connect() as conn:
            result = await conn.execute(query, params)
            return [self._deserialize_row(dict(row._mapping)) for row in result.fetchall()]

    async def insert(self, table: str, data: dict) -> dict:
        """Insert one row and return it as stored (ids and defaults filled in).

        Keys starting with ``_`` are treated as caller metadata and dropped.
        """
        values = {k: self._serialize_param(k, v) for k, v in data.items() if not k.startswith("_")}
        names = ", ".join(values)
        placeholders = ", ".join(f":{k}" for k in values)
        query = text(f"INSERT INTO {table} ({names}) VALUES ({placeholders}) RETURNING *")

        async with self.transaction() as conn:
            result = await conn.execute(query, values)
            return self._deserialize_row(dict(result.fetchone()._mapping))

    async def update(self, table: str, data: dict, filters: dict[str, Any]) -> dict:
        """Update matching rows and return the first one after the change.

        Raises:
            ValueError: If nothing matched ``filters``.
        """
        params = {f"set_{i}": self._serialize_param(k, v) for i, (k, v) in enumerate(data.items())}
        assignments = ", ".join(f"{k} = :set_{i}" for i, k in enumerate(data))
        where, where_params = _where(filters, "where")
        params.update(where_params)
        query = text(f"UPDATE {table} SET {assignments}{where} RETURNING *")

        async with self.transaction() as conn:
            rows = (await conn.execute(query, params)).fetchall()
        if not rows:
            raise ValueError(f"No rows matched filters: {filters}")
        return self._deserialize_row(dict(rows[0]._mapping))

    async def delete(self, table: str, filters: dict[str, Any]) -> None:
        """Delete matching rows.  Matching nothing is not an error.

        Raises:
            ValueError: If ``filters`` is empty.
        """
        if not filters:
            raise ValueError(f"Refusing to delete every row of {table}")
        where, params = _where(filters, "p")
        async with self.transaction() as conn:
            await conn.execute(text(f"DELETE FROM {table}{where}"), params)

    async def execute(self, sql: str, params: dict | None = None) -> None:
        """Execute a single raw SQL statement (DDL or other non-query operations).

        SQLite executes one statement per call; split scripts before calling.
        """
        async with self.transaction() as conn:
            await conn.execute(text(sql), params or {})

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        """Open a serialized write transaction.

        Uses ``engine.begin()`` for automatic commit on success, rollback on
        error.
        """
        async with self._write_lock:
            async with self._engine.begin() as conn:
                yield conn

    async def snapshot_into(self, destination: Path) -> None:
        """Write a consistent copy of the database file with ``VACUUM INTO``.

        ``VACUUM INTO`` refuses to overwrite, so an existing destination is
        removed first.
        """
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        if destination.exists():
            destination.unlink()

        async with self._write_lock:
            async with self._engine.connect() as conn:
                conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
                await conn.execute(text("VACUUM INTO :path"), {"path": str(destination)})
        logger.debug("Snapshot of %s written to %s", self.database_path, destination)

    async def close(self) -> None:
        """Close the async engine and dispose of the connection pool."""
        if self._engine:
            await self._engine.dispose()

    # ------------------------------------------------------------------
    # Connection Test
    # ------------------------------------------------------------------

    async def test_connection(self) -> bool:
        """Run ``SELECT 1`` to verify the database file is usable."""
        async with self._engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            return result.scalar() == 1

    # ------------------------------------------------------------------
    # Serialization Helpers
    # ------------------------------------------------------------------

    def _serialize_param(self, column: str, value: Any) -> Any:
        """Convert Python values to SQLite-compatible bind parameters."""
        if value is None:
            return None
        if column in self._json_columns or isinstance(value, dict):
            return json.dumps(value)
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        return value

    def _deserialize_row(self, row: dict) -> dict:
        """Decode JSON columns in a result row."""
        for key in self._json_columns & row.keys():
            raw = row[key]
            if isinstance(raw, str):
                try:
                    row[key] = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Column %s holds non-JSON text; returned as-is", key)
        return row


def _where(filters: dict[str, Any] | None, prefix: str) -> tuple[str, dict[str, Any]]:
    """Build `` WHERE a = :p_0 AND ...`` and its bind parameters."""
    if not filters:
        return "", {}
    params = {f"{prefix}_{i}": v for i, v in enumerate(filters.values())}
    conditions = " AND ".join(f"{k} = :{prefix}_{i}" for i, k in enumerate(filters))
    return f" WHERE {conditions}", params
