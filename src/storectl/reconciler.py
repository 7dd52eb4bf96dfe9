"""Discover installed instances and merge their state from every source.

Sources, in order of authority:

1. instance records under ``SOFTWARE\\<Product>`` in every store view;
2. Programs-list entries named after the product (older installs);
3. a live probe of the instance database, which only fills fields the
   store left empty.

A failure while analysing one instance is recorded on that instance and
never aborts the enumeration of the others.
"""
from __future__ import annotations

import concurrent.futures
import json
import logging
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Protocol

from packaging.version import InvalidVersion, Version

from .crypto import SecretCodecError
from .providers.database import DatabaseStats, parse_connection_string
from .state.instances import (
    COMPANY_NAME,
    CONNECTION_ENCRYPTED,
    LEGACY_DB_NAME,
    LEGACY_DB_SERVER,
    SERVICE_NAME,
    VERSION,
    WEB_APP_URL,
    InstanceRecord,
    InstanceStore,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 5.0

ISSUE_NO_DIRECTORY = "Installation directory not found"
ISSUE_NO_DATABASE = "Cannot connect to database"
ISSUE_NO_CONFIGURATION = "Configuration file not found"

SOURCE_ENCRYPTED = "encrypted"
SOURCE_PLAINTEXT = "plaintext"
SOURCE_APPSETTINGS = "appsettings"

ORIGIN_STORE = "store"
ORIGIN_PROGRAMS = "programs"


class DatabaseProbe(Protocol):
    """Anything able to read live statistics from an instance database."""

    def probe(self, server: str, database: str, *, timeout: float | None = None) -> DatabaseStats:
        """Return statistics for *database* on *server*."""


@dataclass(slots=True)
class ExistingInstallation:
    """Merged, read-only view of one installed instance."""

    site_name: str
    install_path: str | None = None
    version: str | None = None
    database_server: str | None = None
    database_name: str | None = None
    has_database: bool = False
    product_count: int = -1
    order_count: int = -1
    user_count: int = -1
    company_name: str | None = None
    web_url: str | None = None
    port: int | None = None
    service_name: str | None = None
    schema_version: int = 0
    is_healthy: bool = True
    issues: list[str] = field(default_factory=list)
    connection_source: str | None = None
    origin: str = ORIGIN_STORE

    def add_issue(self, issue: str) -> None:
        """Record *issue* and mark the instance unhealthy."""
        self.is_healthy = False
        if issue not in self.issues:
            self.issues.append(issue)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return asdict(self)


class InstallationReconciler:
    """Enumerate instances and resolve their database and health state."""

    def __init__(
        self,
        instances: InstanceStore,
        database: DatabaseProbe | None = None,
        *,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ) -> None:
        """Store the accessor, optional database probe and its timeout."""
        self._instances = instances
        self._database = database
        self._probe_timeout = probe_timeout

    # ------------------------------------------------------------------
    def discover(self, *, probe: bool = True) -> list[ExistingInstallation]:
        """Return every installed instance, de-duplicated by install path."""
        executor = self._executor() if probe and self._database is not None else None
        found: list[ExistingInstallation] = []
        seen_paths: set[str] = set()
        seen_sites: set[str] = set()
        try:
            for site in self._instances.list_sites():
                installation = self._isolated(site, ORIGIN_STORE, executor)
                _remember(installation, found, seen_paths, seen_sites)

            for _, key_name, values in self._instances.list_programs():
                site = _site_from_program_key(key_name, self._instances.product_name)
                if not site or site.lower() in seen_sites:
                    continue
                path = _text(values, "InstallLocation")
                if path and _path_key(path) in seen_paths:
                    continue
                installation = self._isolated(site, ORIGIN_PROGRAMS, executor, program=values)
                _remember(installation, found, seen_paths, seen_sites)
        finally:
            if executor is not None:
                executor.shutdown(wait=False, cancel_futures=True)
        return found

    def find(self, site: str, *, probe: bool = True) -> ExistingInstallation | None:
        """Return the merged view of *site*, ``None`` when it is not installed."""
        executor = self._executor() if probe and self._database is not None else None
        try:
            if self._instances.get_record(site) is not None:
                return self._isolated(site, ORIGIN_STORE, executor)
            program = self._instances.get_program(site)
            if program is not None:
                return self._isolated(site, ORIGIN_PROGRAMS, executor, program=program)
        finally:
            if executor is not None:
                executor.shutdown(wait=False, cancel_futures=True)
        return None

    def has_instances(self) -> bool:
        """Return ``True`` when at least one instance is registered."""
        if self._instances.list_sites():
            return True
        return bool(self._instances.list_programs())

    def resolve_connection(
        self,
        site: str,
        record: InstanceRecord | None,
        install_path: str | None,
    ) -> tuple[str, str, str] | None:
        """Return ``(server, database, source)`` from the first usable source."""
        if record is not None and record.text(CONNECTION_ENCRYPTED):
            try:
                decrypted = self._instances.get_secret(site, CONNECTION_ENCRYPTED)
            except SecretCodecError as exc:
                LOGGER.warning("Unable to decrypt connection string for %s: %s", site, exc)
                decrypted = None
            parsed = parse_connection_string(decrypted or "")
            if parsed:
                return parsed[0], parsed[1], SOURCE_ENCRYPTED

        if record is not None:
            server = record.text(LEGACY_DB_SERVER)
            database = record.text(LEGACY_DB_NAME)
            if server and database:
                return server, database, SOURCE_PLAINTEXT

        if install_path:
            connection = read_appsettings_connection(Path(install_path))
            parsed = parse_connection_string(connection or "")
            if parsed:
                return parsed[0], parsed[1], SOURCE_APPSETTINGS
        return None

    # ------------------------------------------------------------------
    def _isolated(
        self,
        site: str,
        origin: str,
        executor: concurrent.futures.ThreadPoolExecutor | None,
        *,
        program: Mapping[str, Any] | None = None,
    ) -> ExistingInstallation:
        installation = ExistingInstallation(site_name=site, origin=origin)
        try:
            self._analyse(installation, executor, program)
        except Exception as exc:  # noqa: BLE001 - one bad instance must not hide the rest
            LOGGER.exception("Analysis of %s failed", site)
            installation.add_issue(f"Analysis error: {exc}")
        return installation

    def _analyse(
        self,
        installation: ExistingInstallation,
        executor: concurrent.futures.ThreadPoolExecutor | None,
        program: Mapping[str, Any] | None,
    ) -> None:
        site = installation.site_name
        record = self._instances.get_record(site) if installation.origin == ORIGIN_STORE else None

        if record is not None:
            installation.install_path = record.install_path
            installation.version = record.text(VERSION)
            installation.company_name = record.text(COMPANY_NAME)
            installation.web_url = record.text(WEB_APP_URL)
            installation.port = record.port
            installation.service_name = record.text(SERVICE_NAME)
            installation.schema_version = record.schema_version
        if program:
            installation.install_path = installation.install_path or _text(program, "InstallLocation")
            installation.version = installation.version or _text(program, "DisplayVersion")

        path = installation.install_path
        if not path or not Path(path).is_dir():
            LOGGER.warning("Installation directory not found for %s: %s", site, path)
            installation.add_issue(ISSUE_NO_DIRECTORY)

        resolved = self.resolve_connection(site, record, path)
        if resolved is None:
            installation.add_issue(ISSUE_NO_CONFIGURATION)
            return
        server, database, source = resolved
        installation.database_server = server
        installation.database_name = database
        installation.connection_source = source

        if executor is None or self._database is None:
            return
        stats = self._probe(executor, server, database)
        if stats is None:
            installation.has_database = False
            installation.add_issue(ISSUE_NO_DATABASE)
            return
        installation.has_database = True
        installation.product_count = stats.product_count
        installation.order_count = stats.order_count
        installation.user_count = stats.user_count
        installation.company_name = installation.company_name or stats.company_name

    def _probe(
        self,
        executor: concurrent.futures.ThreadPoolExecutor,
        server: str,
        database: str,
    ) -> DatabaseStats | None:
        assert self._database is not None
        future = executor.submit(
            self._database.probe, server, database, timeout=self._probe_timeout
        )
        try:
            return future.result(timeout=self._probe_timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            LOGGER.warning(
                "Database probe for %s on %s timed out after %.1fs",
                database,
                server,
                self._probe_timeout,
            )
        except Exception as exc:  # noqa: BLE001 - probe failures degrade health only
            LOGGER.warning("Database probe for %s on %s failed: %s", database, server, exc)
        return None

    def _executor(self) -> concurrent.futures.ThreadPoolExecutor:
        return concurrent.futures.ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="storectl-probe"
        )


def upgrade_status(installation: ExistingInstallation, current_version: str) -> str:
    """Compare the installed version with *current_version*.

    Returns ``upgrade``, ``reinstall``, ``downgrade`` or ``unknown``.
    """
    if not installation.version:
        return "unknown"
    try:
        installed = Version(installation.version)
        current = Version(current_version)
    except InvalidVersion:
        return "unknown"
    if current > installed:
        return "upgrade"
    if current == installed:
        return "reinstall"
    return "downgrade"


def read_appsettings_connection(install_path: Path) -> str | None:
    """Return ``ConnectionStrings.DefaultConnection`` from ``appsettings.json``."""
    settings = install_path / "appsettings.json"
    if not settings.is_file():
        return None
    try:
        data = json.loads(settings.read_text(encoding="utf-8-sig"))
    except (OSError, ValueError) as exc:
        LOGGER.warning("Unable to read %s: %s", settings, exc)
        return None
    if not isinstance(data, Mapping):
        return None
    connections = data.get("ConnectionStrings")
    if not isinstance(connections, Mapping):
        return None
    value = connections.get("DefaultConnection")
    return value if isinstance(value, str) and value.strip() else None


def _remember(
    installation: ExistingInstallation,
    found: list[ExistingInstallation],
    seen_paths: set[str],
    seen_sites: set[str],
) -> None:
    if installation.install_path:
        key = _path_key(installation.install_path)
        if key in seen_paths:
            return
        seen_paths.add(key)
    seen_sites.add(installation.site_name.lower())
    found.append(installation)


def _path_key(path: str) -> str:
    return path.replace("/", "\\").rstrip("\\").lower()


def _site_from_program_key(key_name: str, product_name: str) -> str | None:
    prefix = f"{product_name}_"
    if key_name.lower().startswith(prefix.lower()):
        return key_name[len(prefix) :] or None
    return None


def _text(values: Mapping[str, Any], name: str) -> str | None:
    lowered = name.lower()
    for key, value in values.items():
        if key.lower() == lowered and value is not None and str(value).strip():
            return str(value).strip()
    return None


__all__ = [
    "DEFAULT_PROBE_TIMEOUT",
    "DatabaseProbe",
    "ExistingInstallation",
    "ISSUE_NO_CONFIGURATION",
    "ISSUE_NO_DATABASE",
    "ISSUE_NO_DIRECTORY",
    "InstallationReconciler",
    "read_appsettings_connection",
    "upgrade_status",
]
