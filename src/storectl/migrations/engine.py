"""Versioned migrations for instance records.

Each instance record carries ``RegistrySchemaVersion``. The engine applies,
in ascending order, every registered migration whose version is greater than
the recorded one, persisting the new version after each success and stopping
at the first failure.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from ..logging import OperationScope
from ..pipeline import StepResult
from ..state.instances import InstanceStore

LOGGER = logging.getLogger(__name__)

UP_TO_DATE_MESSAGE = "Registry schema is up to date"


class MigrationError(RuntimeError):
    """Raised when the migration list itself is invalid."""


class Migration:
    """Base class for a versioned, idempotent record migration.

    Subclasses set :attr:`version` and :attr:`description` and implement
    :meth:`apply`. ``apply`` must detect whether its target state already
    exists and never destroy data it did not introduce.
    """

    version: int = 0
    description: str = ""

    def apply(self, site: str) -> StepResult:
        """Advance the record of *site* to this migration's shape."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} v{self.version}>"


@dataclass(slots=True)
class MigrationOutcome:
    """Result of one engine run."""

    success: bool
    message: str = ""
    error_message: str = ""
    applied_versions: list[int] = field(default_factory=list)
    failed_versions: list[int] = field(default_factory=list)
    starting_version: int = 0

    @property
    def applied_count(self) -> int:
        """Return the number of migrations applied during the run."""
        return len(self.applied_versions)

    @property
    def up_to_date(self) -> bool:
        """Return ``True`` when nothing needed to be applied."""
        return self.success and not self.applied_versions and not self.failed_versions

    @property
    def schema_version(self) -> int:
        """Return the version the record ends on after this run."""
        if self.applied_versions:
            return self.applied_versions[-1]
        return self.starting_version

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "success": self.success,
            "message": self.message,
            "error_message": self.error_message,
            "applied_versions": list(self.applied_versions),
            "failed_versions": list(self.failed_versions),
            "applied_count": self.applied_count,
            "schema_version": self.schema_version,
        }


class MigrationEngine:
    """Apply pending migrations to instance records."""

    def __init__(self, instances: InstanceStore, migrations: Iterable[Migration]) -> None:
        """Validate and store the ordered migration list."""
        self._instances = instances
        self._migrations = _validated(list(migrations))

    @property
    def migrations(self) -> list[Migration]:
        """Return the registered migrations in ascending version order."""
        return list(self._migrations)

    @property
    def latest_version(self) -> int:
        """Return the highest registered migration version (``0`` when none)."""
        return self._migrations[-1].version if self._migrations else 0

    def current_version(self, site: str) -> int | None:
        """Return the recorded schema version, ``None`` when it cannot be read."""
        try:
            return self._instances.get_schema_version(site)
        except Exception as exc:  # noqa: BLE001 - read failures only disable migration
            LOGGER.warning("Unable to read schema version for %s: %s", site, exc)
            return None

    def pending(self, site: str) -> list[Migration]:
        """Return migrations newer than the recorded schema version of *site*."""
        current = self.current_version(site)
        if current is None:
            return []
        return [migration for migration in self._migrations if migration.version > current]

    def run(self, site: str, *, op: OperationScope | None = None) -> MigrationOutcome:
        """Apply every pending migration for *site* in ascending order."""
        current = self.current_version(site)
        if current is None:
            return MigrationOutcome(success=True, message=UP_TO_DATE_MESSAGE)

        outcome = MigrationOutcome(success=True, starting_version=current)
        pending = [migration for migration in self._migrations if migration.version > current]
        LOGGER.info("Schema version for %s is %s; %d migration(s) pending", site, current, len(pending))
        if not pending:
            outcome.message = UP_TO_DATE_MESSAGE
            return outcome

        for migration in pending:
            LOGGER.info("Running migration v%s for %s: %s", migration.version, site, migration.description)
            result = self._apply(migration, site)
            if result.success:
                stamped = self._persist(site, migration.version)
                if not stamped.success:
                    result = stamped
            if not result.success:
                outcome.success = False
                outcome.failed_versions.append(migration.version)
                outcome.error_message = (
                    f"Migration v{migration.version} failed: {result.error_message}"
                    if result.error_message
                    else f"Migration v{migration.version} failed"
                )
                LOGGER.error("Migration v%s for %s failed: %s", migration.version, site, result.error_message)
                if op is not None:
                    op.add_step(
                        f"migration.v{migration.version}",
                        status="failed",
                        detail={"error": result.error_message},
                    )
                break

            outcome.applied_versions.append(migration.version)
            if op is not None:
                op.add_step(
                    f"migration.v{migration.version}",
                    detail={"description": migration.description, "message": result.message},
                )

        if outcome.success:
            outcome.message = f"Applied {outcome.applied_count} migration(s) successfully"
        else:
            outcome.message = (
                f"Applied {outcome.applied_count} migration(s) before v{outcome.failed_versions[0]} failed"
            )
        return outcome

    # ------------------------------------------------------------------
    def _apply(self, migration: Migration, site: str) -> StepResult:
        try:
            return migration.apply(site)
        except Exception as exc:  # noqa: BLE001 - a raised error is a failed migration
            LOGGER.exception("Migration v%s raised for %s", migration.version, site)
            return StepResult.fail(str(exc) or type(exc).__name__)

    def _persist(self, site: str, version: int) -> StepResult:
        try:
            if self._instances.get_record(site) is None:
                # Nothing to stamp yet; the install flow writes the record first.
                LOGGER.info("No record for %s; schema version v%s not persisted", site, version)
                return StepResult.ok("Schema version not persisted")
            self._instances.set_schema_version(site, version, migrated_at=datetime.now(UTC))
        except Exception as exc:  # noqa: BLE001 - an unrecorded version is a failed migration
            LOGGER.exception("Could not record schema v%s for %s", version, site)
            return StepResult.fail(f"could not record schema version: {exc}")
        return StepResult.ok(f"Schema version set to v{version}")


def _validated(migrations: Sequence[Migration]) -> list[Migration]:
    previous: int | None = None
    for migration in migrations:
        version = migration.version
        if not isinstance(version, int) or isinstance(version, bool) or version <= 0:
            raise MigrationError(f"{migration!r} must declare a positive integer version.")
        if previous is not None and version <= previous:
            kind = "Duplicate" if version == previous else "Out-of-order"
            raise MigrationError(f"{kind} migration version v{version} after v{previous}.")
        previous = version
    return list(migrations)


__all__ = [
    "Migration",
    "MigrationEngine",
    "MigrationError",
    "MigrationOutcome",
    "UP_TO_DATE_MESSAGE",
]
