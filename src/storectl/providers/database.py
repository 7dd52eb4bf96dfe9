"""SQL Server provider driven through ``sqlcmd`` and the migrations bundle."""
from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..runner import CommandError, CommandResult, CommandRunner, raise_for_status
from ..templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

_SERVER_KEYS = {"server", "data source", "address", "addr"}
_DATABASE_KEYS = {"database", "initial catalog"}


class DatabaseError(RuntimeError):
    """Raised when a database operation fails."""


def build_connection_string(server: str, database: str) -> str:
    """Return the integrated-security connection string the application expects."""
    return (
        f"Server={server};Database={database};Trusted_Connection=True;"
        "MultipleActiveResultSets=true;TrustServerCertificate=True"
    )


def parse_connection_string(text: str) -> tuple[str, str] | None:
    """Extract ``(server, database)`` from *text*; ``None`` when either is missing."""
    server: str | None = None
    database: str | None = None
    for part in text.split(";"):
        if "=" not in part:
            continue
        key, value = part.split("=", 1)
        normalized = " ".join(key.strip().lower().split())
        value = value.strip()
        if not value:
            continue
        if normalized in _SERVER_KEYS and server is None:
            server = value
        elif normalized in _DATABASE_KEYS and database is None:
            database = value
    if server and database:
        return server, database
    return None


@dataclass(slots=True)
class DatabaseStats:
    """Live statistics read from an instance database (``-1`` when unknown)."""

    product_count: int = -1
    order_count: int = -1
    user_count: int = -1
    company_name: str | None = None


@dataclass(slots=True)
class SchemaResult:
    """Outcome of applying the schema bundle."""

    applied: bool
    message: str


@dataclass(slots=True)
class SqlServerProvider:
    """Provision, inspect and drop instance databases."""

    runner: CommandRunner
    templates: TemplateEngine
    sqlcmd_bin: str = "sqlcmd"

    def database_exists(self, server: str, database: str) -> bool:
        """Return ``True`` when *database* exists on *server*."""
        result = self._sqlcmd(
            server,
            "master",
            "sql/database_exists.sql.j2",
            {"database": database},
            f"Checking database '{database}'",
        )
        return _first_int(result.stdout) > 0

    def create_database(self, server: str, database: str) -> bool:
        """Create *database* when missing; return ``True`` when it was created."""
        result = self._sqlcmd(
            server,
            "master",
            "sql/create_database.sql.j2",
            {"database": database},
            f"Creating database '{database}'",
        )
        return "CREATED" in _lines(result.stdout)

    def apply_schema(
        self,
        server: str,
        database: str,
        bundle: Path,
        *,
        timeout: float | None = None,
    ) -> SchemaResult:
        """Run the migrations bundle against *database*."""
        if not bundle.exists():
            message = f"Migrations bundle not found at {bundle}; schema left unchanged."
            LOGGER.warning(message)
            return SchemaResult(applied=False, message=message)
        connection = build_connection_string(server, database)
        try:
            result = self.runner.run(str(bundle), ["--connection", connection], timeout=timeout)
        except CommandError as exc:
            raise DatabaseError(f"Schema migration could not run: {exc}") from exc
        raise_for_status(result, f"Schema migration for '{database}'", DatabaseError)
        return SchemaResult(applied=True, message="Database schema updated successfully")

    def grant_access(self, server: str, database: str, login: str) -> None:
        """Grant *login* ``db_owner`` on *database*."""
        self._sqlcmd(
            server,
            "master",
            "sql/grant_access.sql.j2",
            {"database": database, "login": login},
            f"Granting '{login}' access to '{database}'",
        )

    def count_admins(self, server: str, database: str) -> int:
        """Return the number of users holding the Admin role."""
        result = self._sqlcmd(
            server,
            database,
            "sql/count_admins.sql.j2",
            {},
            "Counting admin users",
        )
        return max(_first_int(result.stdout), 0)

    def create_admin(self, server: str, database: str, email: str, password_hash: str) -> bool:
        """Create the admin account; return ``False`` when the email already exists."""
        result = self._sqlcmd(
            server,
            database,
            "sql/create_admin.sql.j2",
            {"email": email, "password_hash": password_hash},
            f"Creating admin user '{email}'",
        )
        return "ADMIN_CREATED" in _lines(result.stdout)

    def drop_database(self, server: str, database: str) -> bool:
        """Drop *database*; return ``False`` when it did not exist."""
        result = self._sqlcmd(
            server,
            "master",
            "sql/drop_database.sql.j2",
            {"database": database},
            f"Dropping database '{database}'",
        )
        return "DATABASE_DROPPED" in _lines(result.stdout)

    def probe(self, server: str, database: str, *, timeout: float | None = None) -> DatabaseStats:
        """Read record counts and the configured company name."""
        result = self._sqlcmd(
            server,
            database,
            "sql/stats.sql.j2",
            {},
            f"Probing database '{database}'",
            extra_args=("-l", str(int(timeout))) if timeout else (),
            timeout=timeout,
        )
        stats = DatabaseStats()
        for line in _lines(result.stdout):
            key, _, value = line.partition("=")
            if key == "Products":
                stats.product_count = _to_int(value)
            elif key == "Orders":
                stats.order_count = _to_int(value)
            elif key == "Users":
                stats.user_count = _to_int(value)
            elif key == "CompanyName" and value.strip():
                stats.company_name = value.strip()
        return stats

    # ------------------------------------------------------------------
    def _sqlcmd(
        self,
        server: str,
        database: str,
        template: str,
        context: Mapping[str, object],
        error_prefix: str,
        *,
        extra_args: Sequence[str] = (),
        timeout: float | None = None,
    ) -> CommandResult:
        script = self.templates.render_to_string(template, context)
        args = ["-S", server, "-d", database, "-E", "-b", "-h", "-1", "-W", *extra_args, "-i"]
        try:
            result = self.runner.run(
                self.sqlcmd_bin,
                args,
                script=script,
                script_suffix=".sql",
                timeout=timeout,
            )
        except CommandError as exc:
            raise DatabaseError(f"{error_prefix} could not run: {exc}") from exc
        return raise_for_status(result, error_prefix, DatabaseError)


def _lines(output: str) -> list[str]:
    return [line.strip() for line in output.splitlines() if line.strip()]


def _to_int(value: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        return -1


def _first_int(output: str) -> int:
    for line in _lines(output):
        try:
            return int(line)
        except ValueError:
            continue
    return -1


__all__ = [
    "DatabaseError",
    "DatabaseStats",
    "SchemaResult",
    "SqlServerProvider",
    "build_connection_string",
    "parse_connection_string",
]
