"""Per-instance accessors on top of the configuration store.

Layout (every path below is relative to the store root of a view)::

    SOFTWARE\\<Product>                          shared parent, never deleted
    SOFTWARE\\<Product>\\<SiteName>               instance record
    SOFTWARE\\Microsoft\\Windows\\CurrentVersion\\Uninstall\\<Product>_<SiteName>
                                                Programs-list entry per site
    SOFTWARE\\Microsoft\\Windows\\CurrentVersion\\Uninstall\\<Product>
                                                global entry for the tool

Older releases registered sites as ``...\\Uninstall\\<SiteName>``; that form is
read and removed but never written.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from packaging.version import InvalidVersion, Version

from ..crypto import SecretCodec, decrypt_text, encrypt_text
from .store import ConfigStore, StoreError, StoreValue, join_key

UNINSTALL_ROOT = "SOFTWARE\\Microsoft\\Windows\\CurrentVersion\\Uninstall"
SESSION_MANAGER_KEY = "SYSTEM\\CurrentControlSet\\Control\\Session Manager"
PENDING_RENAMES_VALUE = "PendingFileRenameOperations"

# Instance record value names.
SITE_NAME = "SiteName"
COMPANY_NAME = "CompanyName"
INSTALL_PATH = "InstallPath"
WEB_PATH = "WebPath"
SERVICE_PATH = "ServicePath"
SERVICE_NAME = "ServiceName"
VERSION = "Version"
INSTALL_DATE = "InstallDate"
WEB_APP_URL = "WebAppUrl"
PORT = "LocalhostPort"
SCHEMA_VERSION = "RegistrySchemaVersion"
LAST_MIGRATION_DATE = "LastMigrationDate"
CONNECTION_ENCRYPTED = "ConnectionStringEncrypted"
JWT_SECRET = "JwtSecretKey"
JWT_ISSUER = "JwtIssuer"
JWT_AUDIENCE = "JwtAudience"
LEGACY_DB_SERVER = "DatabaseServer"
LEGACY_DB_NAME = "DatabaseName"

WELL_KNOWN_FIELDS = (
    SITE_NAME,
    COMPANY_NAME,
    INSTALL_PATH,
    WEB_PATH,
    SERVICE_PATH,
    SERVICE_NAME,
    VERSION,
    WEB_APP_URL,
    PORT,
)


def normalize_display_version(version: str) -> str:
    """Return *version* reduced to three numeric components (``1.2.3``)."""
    try:
        parsed = Version(version)
    except InvalidVersion:
        parts = [part for part in version.strip().split(".") if part.isdigit()]
        parts = (parts + ["0", "0", "0"])[:3]
        return ".".join(parts)
    return f"{parsed.major}.{parsed.minor}.{parsed.micro}"


def _value(values: Mapping[str, Any], name: str) -> Any:
    lowered = name.lower()
    for key, value in values.items():
        if key.lower() == lowered:
            return value
    return None


def _text(values: Mapping[str, Any], name: str) -> str | None:
    value = _value(values, name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class InstanceRecord:
    """Read-only snapshot of one instance key."""

    site_name: str
    values: Mapping[str, Any] = field(default_factory=dict)
    view: str = "64"

    def get(self, name: str) -> Any:
        """Return the raw value *name* (case-insensitive) or ``None``."""
        return _value(self.values, name)

    def text(self, name: str) -> str | None:
        """Return the value *name* as stripped text, ``None`` when blank."""
        return _text(self.values, name)

    @property
    def install_path(self) -> str | None:
        """Return the install path recorded for the site."""
        return self.text(INSTALL_PATH) or self.text(WEB_PATH)

    @property
    def port(self) -> int | None:
        """Return the bound port, when it is a valid integer."""
        raw = self.get(PORT)
        try:
            port = int(raw)
        except (TypeError, ValueError):
            return None
        return port if port > 0 else None

    @property
    def has_schema_marker(self) -> bool:
        """Return ``True`` when the record carries a schema version."""
        return self.get(SCHEMA_VERSION) is not None

    @property
    def schema_version(self) -> int:
        """Return the schema version (``0`` when the marker is missing)."""
        raw = self.get(SCHEMA_VERSION)
        if raw is None:
            return 0
        try:
            return int(raw)
        except (TypeError, ValueError) as exc:
            raise StoreError(
                f"Instance '{self.site_name}' has a malformed {SCHEMA_VERSION}: {raw!r}"
            ) from exc

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation with secrets masked."""
        data: dict[str, object] = {}
        for key, value in self.values.items():
            if key.lower() in {CONNECTION_ENCRYPTED.lower(), JWT_SECRET.lower()}:
                data[key] = "<encrypted>"
            else:
                data[key] = value
        return data


@dataclass(slots=True)
class InstanceStore:
    """Configuration store accessor scoped to one product."""

    stores: Sequence[ConfigStore]
    codec: SecretCodec
    product_name: str = "EcommerceStarter"

    def __post_init__(self) -> None:
        """Validate that at least one store view was supplied."""
        if not self.stores:
            raise StoreError("InstanceStore requires at least one store view.")

    @property
    def primary(self) -> ConfigStore:
        """Return the view new records are written to."""
        return self.stores[0]

    # Key helpers -----------------------------------------------------
    @property
    def product_key(self) -> str:
        """Return the shared parent key of every instance record."""
        return join_key("SOFTWARE", self.product_name)

    def instance_key(self, site: str) -> str:
        """Return the instance record key for *site*."""
        return join_key(self.product_key, _require_site(site))

    def program_key(self, site: str) -> str:
        """Return the Programs-list key for *site*."""
        return join_key(UNINSTALL_ROOT, f"{self.product_name}_{_require_site(site)}")

    def legacy_program_key(self, site: str) -> str:
        """Return the pre-versioning Programs-list key for *site*."""
        return join_key(UNINSTALL_ROOT, _require_site(site))

    @property
    def tool_program_key(self) -> str:
        """Return the global Programs-list key of the deployment tool."""
        return join_key(UNINSTALL_ROOT, self.product_name)

    # Instance records ------------------------------------------------
    def list_sites(self) -> list[str]:
        """Return every site name that has an instance key in any view."""
        seen: dict[str, str] = {}
        for store in self.stores:
            for name in store.list_subkeys(self.product_key):
                seen.setdefault(name.lower(), name)
        return sorted(seen.values(), key=str.lower)

    def record_view(self, site: str) -> ConfigStore | None:
        """Return the first view holding the instance key for *site*."""
        key = self.instance_key(site)
        for store in self.stores:
            if store.key_exists(key):
                return store
        return None

    def get_record(self, site: str) -> InstanceRecord | None:
        """Return the instance record for *site* or ``None`` when absent."""
        key = self.instance_key(site)
        for store in self.stores:
            values = store.read_values(key)
            if values is not None:
                return InstanceRecord(site_name=site, values=values, view=store.view)
        return None

    def write_record(self, site: str, fields: Mapping[str, StoreValue]) -> None:
        """Create or update the instance record for *site*."""
        target = self.record_view(site) or self.primary
        payload: dict[str, StoreValue] = {SITE_NAME: site}
        payload.update(fields)
        target.set_values(self.instance_key(site), payload)

    def fill_missing(self, site: str, fields: Mapping[str, StoreValue]) -> list[str]:
        """Write only the fields absent from the record; return their names."""
        target = self.record_view(site) or self.primary
        return target.set_missing_values(self.instance_key(site), fields)

    def remove_fields(self, site: str, names: Iterable[str]) -> list[str]:
        """Delete *names* from the record in every view; return those removed."""
        wanted = list(names)
        removed: list[str] = []
        key = self.instance_key(site)
        for store in self.stores:
            removed.extend(store.delete_values(key, wanted))
        return removed

    def get_schema_version(self, site: str) -> int:
        """Return the schema version of *site* (``0`` when absent)."""
        record = self.get_record(site)
        return 0 if record is None else record.schema_version

    def set_schema_version(
        self,
        site: str,
        version: int,
        *,
        migrated_at: datetime | None = None,
    ) -> None:
        """Persist *version* for *site*; versions never move backwards."""
        current = self.get_schema_version(site)
        if version < current:
            raise StoreError(
                f"Refusing to lower schema version of '{site}' from {current} to {version}."
            )
        stamp = (migrated_at or datetime.now(UTC)).isoformat()
        self.write_record(site, {SCHEMA_VERSION: int(version), LAST_MIGRATION_DATE: stamp})

    def set_secret(self, site: str, name: str, plaintext: str, *, overwrite: bool = True) -> bool:
        """Encrypt *plaintext* into value *name*; return ``True`` when written."""
        record = self.get_record(site)
        if not overwrite and record is not None and record.get(name) not in (None, ""):
            return False
        self.write_record(site, {name: encrypt_text(self.codec, plaintext)})
        return True

    def get_secret(self, site: str, name: str) -> str | None:
        """Return the decrypted value *name* or ``None`` when absent."""
        record = self.get_record(site)
        if record is None:
            return None
        encoded = record.text(name)
        if encoded is None:
            return None
        return decrypt_text(self.codec, encoded)

    def remove_instance(self, site: str) -> list[str]:
        """Delete the record and both Programs-list forms for *site*.

        Only keys owned by *site* are deleted; ``SOFTWARE\\<Product>`` stays in
        place so sibling instances keep their parent.
        """
        removed = self.remove_program(site)
        key = self.instance_key(site)
        for store in self.stores:
            if store.delete_key(key):
                removed.append(f"{store.view}:{key}")
        return removed

    # Programs list -----------------------------------------------------
    def register_program(self, site: str, fields: Mapping[str, StoreValue]) -> None:
        """Create or update the Programs-list entry for *site*."""
        self.primary.set_values(self.program_key(site), fields)

    def get_program(self, site: str) -> dict[str, Any] | None:
        """Return the Programs-list entry for *site* (current or legacy form)."""
        for key in (self.program_key(site), self.legacy_program_key(site)):
            for store in self.stores:
                values = store.read_values(key)
                if values is not None:
                    return values
        return None

    def remove_program(self, site: str) -> list[str]:
        """Delete both Programs-list forms for *site*; return ``view:key`` entries removed."""
        removed: list[str] = []
        for store in self.stores:
            for key in (self.program_key(site), self.legacy_program_key(site)):
                if key.lower() == self.tool_program_key.lower():
                    continue
                if store.delete_key(key):
                    removed.append(f"{store.view}:{key}")
        return removed

    def list_programs(self) -> list[tuple[str, str, dict[str, Any]]]:
        """Return ``(view, key name, values)`` for product entries in every view."""
        entries: list[tuple[str, str, dict[str, Any]]] = []
        prefix = f"{self.product_name}_".lower()
        for store in self.stores:
            for name in store.list_subkeys(UNINSTALL_ROOT):
                if not name.lower().startswith(prefix):
                    continue
                values = store.read_values(join_key(UNINSTALL_ROOT, name)) or {}
                entries.append((store.view, name, values))
        return entries

    def register_tool(self, fields: Mapping[str, StoreValue]) -> None:
        """Create or update the global Programs-list entry for the tool."""
        self.primary.set_values(self.tool_program_key, fields)

    def get_tool(self) -> dict[str, Any] | None:
        """Return the global tool entry or ``None``."""
        for store in self.stores:
            values = store.read_values(self.tool_program_key)
            if values is not None:
                return values
        return None

    def remove_tool(self) -> bool:
        """Delete the global tool entry from every view."""
        removed = False
        for store in self.stores:
            removed = store.delete_key(self.tool_program_key) or removed
        return removed

    # Deferred deletion -------------------------------------------------
    def schedule_deferred_delete(self, path: str) -> None:
        """Queue *path* for removal when the host next restarts."""
        store = self.primary
        existing = store.get_value(SESSION_MANAGER_KEY, PENDING_RENAMES_VALUE, default=[])
        queue = [str(item) for item in existing] if isinstance(existing, list) else []
        queue.extend([f"\\??\\{path}", ""])
        store.set_values(SESSION_MANAGER_KEY, {PENDING_RENAMES_VALUE: queue})

    def pending_deletes(self) -> list[str]:
        """Return paths currently queued for removal at restart."""
        existing = self.primary.get_value(SESSION_MANAGER_KEY, PENDING_RENAMES_VALUE, default=[])
        if not isinstance(existing, list):
            return []
        return [str(item)[4:] for item in existing[::2] if str(item).startswith("\\??\\")]


def _require_site(site: str) -> str:
    normalized = site.strip()
    if not normalized or "\\" in normalized or "/" in normalized:
        raise StoreError(f"Invalid site name: {site!r}")
    return normalized


__all__ = [
    "COMPANY_NAME",
    "CONNECTION_ENCRYPTED",
    "INSTALL_DATE",
    "INSTALL_PATH",
    "InstanceRecord",
    "InstanceStore",
    "JWT_AUDIENCE",
    "JWT_ISSUER",
    "JWT_SECRET",
    "LAST_MIGRATION_DATE",
    "LEGACY_DB_NAME",
    "LEGACY_DB_SERVER",
    "PORT",
    "SCHEMA_VERSION",
    "SERVICE_NAME",
    "SERVICE_PATH",
    "SITE_NAME",
    "UNINSTALL_ROOT",
    "VERSION",
    "WEB_APP_URL",
    "WEB_PATH",
    "WELL_KNOWN_FIELDS",
    "normalize_display_version",
]
