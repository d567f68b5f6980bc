"""Common lifecycle for file-backed stores.

Every store follows the same explicit contract, visible at the call site:

    store = CargoStore(path)
    await store.initialize()   # connects if needed, creates tables, validates
    ...
    await store.close()

There are no module-level store instances; whoever owns the process
lifecycle constructs and closes them (see ``labcontrol.factory``).
"""

import logging
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

from labcontrol.adapters.base import DatabaseClient
from labcontrol.adapters.sqlite import AsyncSqliteAdapter
from labcontrol.errors import SchemaMismatchError, StoreNotConnectedError
from labcontrol.schema.inspection import read_column_names, validate_schema

logger = logging.getLogger(__name__)


def utc_now() -> str:
    """ISO-8601 UTC timestamp used for every ``*_at`` column."""
    return datetime.now(timezone.utc).isoformat()


class SqliteStore:
    """Base class for the main and cargo stores.

    Subclasses declare ``name``, ``DDL`` (one statement per entry, executed
    in order and idempotent) and ``EXPECTED_COLUMNS``.

    Args:
        database_path: Store file.  Its parent directory is created on
            ``connect()``.
        adapter: Optional pre-built client, mainly for tests.  When omitted an
            ``AsyncSqliteAdapter`` is created on ``connect()``.
    """

    name: str = "store"
    DDL: tuple[str, ...] = ()
    EXPECTED_COLUMNS: dict[str, set[str]] = {}
    JSON_COLUMNS: tuple[str, ...] = ()

    def __init__(self, database_path: str | Path, adapter: DatabaseClient | None = None) -> None:
        self.path = Path(database_path)
        self._adapter: DatabaseClient | None = adapter
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._adapter is not None

    @property
    def adapter(self) -> DatabaseClient:
        if self._adapter is None:
            raise StoreNotConnectedError(f"{self.name} store is not connected")
        return self._adapter

    async def connect(self) -> None:
        """Open the store file, creating it if absent."""
        if self._adapter is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._adapter = AsyncSqliteAdapter(self.path, json_columns=list(self.JSON_COLUMNS))
        logger.info("%s store connected: %s", self.name, self.path)

    async def initialize(self) -> None:
        """Create missing tables and indexes, then validate the live schema.

        Raises:
            SchemaMismatchError: If expected tables or columns are still
                missing after the DDL ran (e.g. an old file with a table of
                the same name but different columns).
        """
        if self._initialized:
            return
        await self.connect()

        try:
            for statement in self.DDL:
                await self.adapter.execute(statement)
        except SQLAlchemyError:
            # An index on a missing column fails first; report the schema instead
            await self._validate()
            raise
        await self._validate()

        self._initialized = True
        logger.info("%s store initialized", self.name)

    async def _validate(self) -> None:
        actual = await read_column_names(self.adapter)
        result = validate_schema(actual, self.EXPECTED_COLUMNS)
        if not result.valid:
            raise SchemaMismatchError(self.name, result.format_report())
        if result.extra_tables:
            logger.debug(
                "%s store has extra tables: %s", self.name, ", ".join(result.extra_tables)
            )

    async def close(self) -> None:
        """Dispose of the connection pool.  Safe to call more than once."""
        if self._adapter is None:
            return
        await self._adapter.close()
        self._adapter = None
        self._initialized = False
        logger.info("%s store closed", self.name)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def snapshot(self, destination: str | Path) -> Path:
        """Write a consistent copy of the store file to ``destination``."""
        destination = Path(destination)
        await self.adapter.snapshot_into(destination)
        return destination
