"""
Migration Engine
================

Ordered, version-gated transforms applied to a record on load.

Every registered version above the record's ``schemaVersion`` runs in
ascending order. A migration that succeeds stamps ``schemaVersion`` with
its own version; one that raises (or returns something other than a
mapping) is logged, reported and skipped without advancing
``schemaVersion``. A failing migration never fails the load.

Each transform receives a deep copy of the record, so a transform that
fails half-way leaves no partial mutation behind. A transform may return
the new record or mutate its argument in place and return ``None``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, Union, runtime_checkable

from reliastore.core import constants as C
from reliastore.core.errors import MigrationError
from reliastore.core.paths import deep_copy
from reliastore.core.types import Record

logger = logging.getLogger(__name__)

TransformFn = Callable[[Record], Optional[Record]]


@runtime_checkable
class Migration(Protocol):
    """A single schema step."""

    version: int

    def apply(self, record: Record) -> Optional[Record]: ...


@dataclass(frozen=True)
class FunctionMigration:
    """Adapts a plain callable to the ``Migration`` protocol."""

    version: int
    transform: TransformFn
    description: str = ""

    def apply(self, record: Record) -> Optional[Record]:
        return self.transform(record)


@dataclass
class MigrationReport:
    """Outcome of one ``MigrationEngine.apply`` call."""

    record: Record
    applied: list[int] = field(default_factory=list)
    failures: list[MigrationError] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.applied)

    @property
    def ok(self) -> bool:
        return not self.failures


def schema_version_of(record: Record) -> int:
    value = record.get(C.SCHEMA_VERSION_FIELD, 0)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


class MigrationEngine:
    """
    Registry of migrations keyed by integer version.

    Example:
        engine = MigrationEngine()
        engine.register(1, lambda r: {**r, "Gems": 0})
        engine.register(2, rename_coins)
        report = engine.apply(record)
    """

    __slots__ = ("_migrations",)

    def __init__(self) -> None:
        self._migrations: dict[int, Migration] = {}

    def register(
        self,
        version: int,
        transform: Union[TransformFn, Migration],
    ) -> None:
        """Register ``transform`` for ``version``, replacing any previous one."""
        if isinstance(version, bool) or not isinstance(version, int):
            raise TypeError(f"Migration version must be an int, got {type(version).__name__}")
        if isinstance(transform, Migration):
            migration = transform
        elif callable(transform):
            migration = FunctionMigration(version, transform)
        else:
            raise TypeError("Migration transform must be callable")
        if version in self._migrations:
            logger.info("Replacing migration %d", version)
        self._migrations[version] = migration

    def versions(self) -> list[int]:
        return sorted(self._migrations)

    def __len__(self) -> int:
        return len(self._migrations)

    def apply(self, record: Record) -> MigrationReport:
        """Run every pending migration over ``record``. Never raises."""
        current = schema_version_of(record)
        report = MigrationReport(record=record)

        for version in self.versions():
            if version <= current:
                continue
            migration = self._migrations[version]
            working = deep_copy(report.record)
            try:
                result: Any = migration.apply(working)
            except Exception as e:
                error = MigrationError.transform_failed(version, e)
                logger.error("Migration %d failed: %s", version, e)
                report.failures.append(error)
                continue

            if result is None:
                result = working
            if not isinstance(result, dict):
                error = MigrationError.invalid_result(version, type(result).__name__)
                logger.error("%s", error.message)
                report.failures.append(error)
                continue

            result[C.SCHEMA_VERSION_FIELD] = version
            report.record = result
            report.applied.append(version)
            logger.debug("Applied migration %d", version)

        return report
