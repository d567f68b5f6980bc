"""Store client protocol.

``DatabaseClient`` is what ``SqliteStore`` talks to.  Every method is a
coroutine except ``transaction()``, which returns an async context manager
yielding the connection to run several statements on atomically.

Usage:
    from labcontrol.adapters.base import DatabaseClient

    async def retire(client: DatabaseClient, tag_id: str) -> None:
        pieces = await client.select("pieces", "id, status", filters={"tag_id": tag_id})
        async with client.transaction() as conn:
            await conn.execute(
                text("UPDATE pieces SET status = 'inactive' WHERE id = :id"),
                {"id": pieces[0]["id"]},
            )
"""

from contextlib import AbstractAsyncContextManager
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncConnection


class DatabaseClient(Protocol):
    """Row-level access to one store file.

    Rows go in and come out as plain dicts keyed by column name.
    """

    async def select(
        self,
        table: str,
        columns: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[dict]:
        """Rows of ``table`` whose columns equal every value in ``filters``.

        Args:
            table: Table (or table-valued function) to read.
            columns: Column list as written in SQL, e.g. ``"id, tag_id"`` or ``"*"``.
            filters: Equality conditions joined with AND.
            order_by: ORDER BY expression, e.g. ``"id DESC"``.
        """
        ...

    async def insert(self, table: str, data: dict) -> dict:
        """Insert ``data`` and return the stored row, generated id included.

        Raises:
            sqlalchemy.exc.IntegrityError: On a unique or check constraint
                violation.
        """
        ...

    async def update(self, table: str, data: dict, filters: dict[str, Any]) -> dict:
        """Apply ``data`` to the rows matching ``filters``; return the first.

        Raises:
            ValueError: If no rows match filters.
        """
        ...

    async def delete(self, table: str, filters: dict[str, Any]) -> None:
        ...

    async def execute(self, sql: str, params: dict | None = None) -> None:
        """Run one statement that returns no rows, such as DDL."""
        ...

    def transaction(self) -> AbstractAsyncContextManager[AsyncConnection]:
        """Open a write transaction.

        Commits when the block exits normally, rolls back on error.  Writes
        through one client are serialized.
        """
        ...

    async def snapshot_into(self, destination: Path) -> None:
        """Write a consistent copy of the backing file to ``destination``."""
        ...

    async def close(self) -> None:
        ...
