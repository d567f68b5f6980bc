"""Pydantic models for store schema checks."""

from pydantic import BaseModel, Field


class MissingColumn(BaseModel):
    """A column a store needs that its file does not have."""

    table: str
    column: str

    @property
    def qualified(self) -> str:
        return f"{self.table}.{self.column}"


class SchemaValidationResult(BaseModel):
    """Live tables and columns of one store file checked against the store's needs.

    Example:
        >>> SchemaValidationResult(valid=True).format_report()
        'Schema valid'
    """

    valid: bool
    missing_tables: list[str] = Field(default_factory=list)
    missing_columns: list[MissingColumn] = Field(default_factory=list)
    extra_tables: list[str] = Field(default_factory=list)  # never invalidates

    @property
    def error_count(self) -> int:
        return len(self.missing_tables) + len(self.missing_columns)

    def format_report(self) -> str:
        """One line per problem, for error messages and ``labcontrol status``."""
        if self.valid:
            return "Schema valid"

        lines = [f"{self.error_count} schema problem(s):"]
        lines.extend(f"  table {table} is missing" for table in self.missing_tables)
        lines.extend(f"  column {c.qualified} is missing" for c in self.missing_columns)
        if self.extra_tables:
            lines.append(f"  (ignored extra tables: {', '.join(self.extra_tables)})")
        return "\n".join(lines)


class ConnectionResult(BaseModel):
    """Outcome of opening and checking one store in ``connect_and_validate()``.

    Example:
        >>> ConnectionResult(success=True, store="cargo", schema_valid=True).success
        True
    """

    success: bool
    store: str
    path: str | None = None
    schema_valid: bool | None = None
    error: str | None = None
