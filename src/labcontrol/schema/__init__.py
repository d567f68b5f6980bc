"""Store schema inspection and validation.

Usage:
    from labcontrol.schema import read_column_names, validate_schema
"""

from labcontrol.schema.inspection import read_column_names, validate_schema
from labcontrol.schema.models import ConnectionResult, MissingColumn, SchemaValidationResult

__all__ = [
    "read_column_names",
    "validate_schema",
    "MissingColumn",
    "ConnectionResult",
    "SchemaValidationResult",
]
