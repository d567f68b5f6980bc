"""Tests for store schema inspection, validation and store lifecycle."""

from pathlib import Path

import pytest

from labcontrol.adapters.sqlite import AsyncSqliteAdapter
from labcontrol.errors import SchemaMismatchError, StoreNotConnectedError
from labcontrol.schema.inspection import read_column_names, validate_schema
from labcontrol.stores.cargo import CargoStore
from labcontrol.stores.main import MainStore


# ============================================================================
# validate_schema (pure)
# ============================================================================


class TestValidateSchema:
    """Set comparison between live and expected columns."""

    def test_identical_is_valid(self) -> None:
        """Matching tables and columns validate."""
        result = validate_schema({"t": {"a", "b"}}, {"t": {"a", "b"}})
        assert result.valid
        assert result.error_count == 0
        assert result.format_report() == "Schema valid"

    def test_missing_table(self) -> None:
        """A missing expected table is an error."""
        result = validate_schema({}, {"t": {"a"}})
        assert not result.valid
        assert result.missing_tables == ["t"]

    def test_missing_column(self) -> None:
        """A missing column is reported as table.column."""
        result = validate_schema({"t": {"a"}}, {"t": {"a", "b"}})
        assert not result.valid
        assert [(d.table, d.column) for d in result.missing_columns] == [("t", "b")]
        assert "t.b" in result.format_report()

    def test_extra_table_is_warning_only(self) -> None:
        """Unexpected tables never invalidate the schema."""
        result = validate_schema({"t": {"a"}, "legacy": {"x"}}, {"t": {"a"}})
        assert result.valid
        assert result.extra_tables == ["legacy"]

    def test_extra_columns_ignored(self) -> None:
        """Columns beyond the expected set are allowed."""
        assert validate_schema({"t": {"a", "extra"}}, {"t": {"a"}}).valid


# ============================================================================
# read_column_names (live file)
# ============================================================================


class TestReadColumnNames:
    """Introspection through sqlite_master and pragma_table_info."""

    @pytest.mark.asyncio
    async def test_reads_user_tables_only(self, tmp_path: Path) -> None:
        """Internal sqlite_ tables are skipped; user tables and columns are read."""
        adapter = AsyncSqliteAdapter(tmp_path / "x.sqlite")
        try:
            await adapter.execute(
                "CREATE TABLE items (id INTEGER PRIMARY KEY AUTOINCREMENT, code TEXT)"
            )
            await adapter.insert("items", {"code": "A"})  # creates sqlite_sequence
            columns = await read_column_names(adapter)
        finally:
            await adapter.close()

        assert columns == {"items": {"id", "code"}}


# ============================================================================
# Store lifecycle
# ============================================================================


class TestStoreLifecycle:
    """connect -> initialize -> close contract."""

    @pytest.mark.asyncio
    async def test_initialize_creates_all_tables(self, tmp_path: Path) -> None:
        """A fresh main store file gets every expected table."""
        store = MainStore(tmp_path / "nested" / "database.sqlite")
        await store.initialize()
        try:
            columns = await read_column_names(store.adapter)
        finally:
            await store.close()
        assert set(MainStore.EXPECTED_COLUMNS) <= set(columns)

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, tmp_path: Path) -> None:
        """Initializing twice, and reopening, keeps data."""
        store = CargoStore(tmp_path / "cargo.sqlite")
        await store.initialize()
        await store.add_piece("TAG-1", "A")
        await store.initialize()
        await store.close()

        reopened = CargoStore(tmp_path / "cargo.sqlite")
        await reopened.initialize()
        try:
            assert (await reopened.get_piece_by_tag("TAG-1")) is not None
        finally:
            await reopened.close()

    @pytest.mark.asyncio
    async def test_mismatched_file_raises(self, tmp_path: Path) -> None:
        """An old file whose table lacks expected columns fails validation."""
        path = tmp_path / "cargo.sqlite"
        adapter = AsyncSqliteAdapter(path)
        await adapter.execute("CREATE TABLE pieces (id INTEGER PRIMARY KEY, tag_id TEXT)")
        await adapter.close()

        store = CargoStore(path)
        with pytest.raises(SchemaMismatchError) as exc_info:
            await store.initialize()
        await store.close()

        assert exc_info.value.store == "cargo"
        assert "pieces.cycle_count" in exc_info.value.report

    @pytest.mark.asyncio
    async def test_use_after_close_raises(self, tmp_path: Path) -> None:
        """Operations on a closed store raise StoreNotConnectedError."""
        store = CargoStore(tmp_path / "cargo.sqlite")
        await store.initialize()
        await store.close()
        await store.close()  # idempotent

        with pytest.raises(StoreNotConnectedError):
            await store.list_pieces()
