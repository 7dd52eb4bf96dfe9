"""Migrations shipped with storectl."""
from __future__ import annotations

import logging
from datetime import UTC, datetime

from ..pipeline import StepResult
from ..providers.database import build_connection_string
from ..state.instances import (
    CONNECTION_ENCRYPTED,
    LAST_MIGRATION_DATE,
    LEGACY_DB_NAME,
    LEGACY_DB_SERVER,
    SCHEMA_VERSION,
    SITE_NAME,
    WELL_KNOWN_FIELDS,
    InstanceStore,
)
from .engine import Migration

LOGGER = logging.getLogger(__name__)

# Programs-list value names that map onto instance record fields.
_PROGRAM_FIELD_MAP = {
    "InstallLocation": "InstallPath",
    "DisplayVersion": "Version",
}


class InitialSchema(Migration):
    """Stamp legacy records with schema version 1."""

    version = 1
    description = "Initialize configuration record structure"

    def __init__(self, instances: InstanceStore) -> None:
        self.instances = instances

    def apply(self, site: str) -> StepResult:
        """Mark a legacy record as v1, adopting a pre-versioning entry when needed."""
        record = self.instances.get_record(site)
        if record is None:
            legacy = self._legacy_fields(site)
            if not legacy:
                # Brand-new site; the install flow writes the record itself.
                return StepResult.ok("No record yet; nothing to initialise")
            written = self.instances.fill_missing(site, legacy)
            LOGGER.info("Adopted legacy entry for %s (%s)", site, ", ".join(written))
        elif record.has_schema_marker:
            return StepResult.ok("Record already carries a schema version")

        self.instances.fill_missing(
            site,
            {
                SCHEMA_VERSION: self.version,
                LAST_MIGRATION_DATE: datetime.now(UTC).isoformat(),
            },
        )
        return StepResult.ok("Legacy installation upgraded to schema v1")

    def _legacy_fields(self, site: str) -> dict[str, str | int]:
        program = self.instances.get_program(site)
        if not program:
            return {}
        fields: dict[str, str | int] = {}
        for name, value in program.items():
            target = _PROGRAM_FIELD_MAP.get(name, name)
            if target in WELL_KNOWN_FIELDS and isinstance(value, (str, int)) and value != "":
                fields.setdefault(target, value)
        fields.setdefault(SITE_NAME, site)
        return fields


class EncryptConnectionString(Migration):
    """Replace plaintext database fields with an encrypted connection string."""

    version = 2
    description = "Migrate database credentials to an encrypted connection string"

    def __init__(self, instances: InstanceStore) -> None:
        self.instances = instances

    def apply(self, site: str) -> StepResult:
        """Encrypt ``DatabaseServer``/``DatabaseName`` then drop the plaintext."""
        record = self.instances.get_record(site)
        if record is None:
            return StepResult.ok("No record yet; nothing to encrypt")

        server = record.text(LEGACY_DB_SERVER)
        database = record.text(LEGACY_DB_NAME)
        encrypted = record.text(CONNECTION_ENCRYPTED)
        message = "No plaintext database fields present"
        if (server or database) and not encrypted:
            # Either field alone is still carried into the encrypted value.
            self.instances.set_secret(
                site,
                CONNECTION_ENCRYPTED,
                build_connection_string(server or "", database or ""),
                overwrite=False,
            )
            message = "Database connection string encrypted"

        removed = self.instances.remove_fields(site, [LEGACY_DB_SERVER, LEGACY_DB_NAME])
        if removed:
            LOGGER.info("Removed plaintext database fields for %s: %s", site, ", ".join(removed))
        return StepResult.ok(message)


def default_migrations(instances: InstanceStore) -> list[Migration]:
    """Return the built-in migrations in ascending version order."""
    return [InitialSchema(instances), EncryptConnectionString(instances)]


__all__ = ["EncryptConnectionString", "InitialSchema", "default_migrations"]
