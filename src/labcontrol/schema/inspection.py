"""Live schema inspection and comparison for SQLite store files.

``read_column_names`` asks SQLite for the tables and columns actually present
in a store file; ``validate_schema`` compares them with the columns the store
expects.  The comparison is pure set logic with no I/O.

Usage:
    from labcontrol.schema.inspection import read_column_names, validate_schema

    actual = await read_column_names(adapter)
    result = validate_schema(actual, {"pieces": {"id", "tag_id"}})
    if not result.valid:
        print(result.format_report())
"""

from labcontrol.adapters.base import DatabaseClient
from labcontrol.schema.models import MissingColumn, SchemaValidationResult

# SQLite bookkeeping tables never belong to a store's schema
_INTERNAL_PREFIX = "sqlite_"


async def read_column_names(adapter: DatabaseClient) -> dict[str, set[str]]:
    """Return ``{table: {column, ...}}`` for every user table in the file.

    Args:
        adapter: Connected store adapter.

    Returns:
        Dict mapping table name to the set of its column names.
    """
    tables = await adapter.select(
        "sqlite_master",
        "name",
        filters={"type": "table"},
        order_by="name",
    )

    columns: dict[str, set[str]] = {}
    for row in tables:
        name = row["name"]
        if name.startswith(_INTERNAL_PREFIX):
            continue
        info = await adapter.select(f"pragma_table_info('{name}')", "name")
        columns[name] = {col["name"] for col in info}
    return columns


def validate_schema(
    actual_columns: dict[str, set[str]],
    expected_columns: dict[str, set[str]],
) -> SchemaValidationResult:
    """Compare a store file's tables and columns with what the store expects.

    Extra tables are reported but never make the result invalid, so an older
    store file opened by newer code still loads once missing pieces are added.

    Examples:
        >>> validate_schema({"pieces": {"id"}}, {"pieces": {"id", "tag_id"}}).valid
        False
        >>> validate_schema({"pieces": {"id"}, "old": {"x"}}, {"pieces": {"id"}}).extra_tables
        ['old']
    """
    present = set(actual_columns)
    wanted = set(expected_columns)

    missing_columns = [
        MissingColumn(table=table, column=column)
        for table in sorted(present & wanted)
        for column in sorted(expected_columns[table] - actual_columns[table])
    ]
    missing_tables = sorted(wanted - present)

    return SchemaValidationResult(
        valid=not missing_tables and not missing_columns,
        missing_tables=missing_tables,
        missing_columns=missing_columns,
        extra_tables=sorted(present - wanted),
    )
