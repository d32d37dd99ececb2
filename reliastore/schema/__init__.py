"""
Schema module: structural validation and ordered migrations.
"""

from reliastore.schema.validator import FieldSpec, Schema, validate, type_name
from reliastore.schema.migrations import (
    Migration,
    FunctionMigration,
    MigrationEngine,
    MigrationReport,
)

__all__ = [
    "FieldSpec",
    "Schema",
    "validate",
    "type_name",
    "Migration",
    "FunctionMigration",
    "MigrationEngine",
    "MigrationReport",
]
