"""Tests for the install orchestrator."""
from __future__ import annotations

import shutil
from dataclasses import replace
from pathlib import Path
from types import SimpleNamespace

import pytest
from fakes import Host

from storectl import install as install_module
from storectl.install import DEMO_MESSAGE, SUCCESS_MESSAGE
from storectl.locking import LockTimeoutError
from storectl.pipeline import ProgressEvent
from storectl.providers import build_connection_string
from storectl.state import InstanceStore, StoreError
from storectl.state.instances import CONNECTION_ENCRYPTED, JWT_SECRET


def test_fresh_install_completes(host: Host) -> None:
    """A fresh install deploys every component and records the instance."""
    events: list[ProgressEvent] = []

    result = host.installer.install(host.request("DemoShop"), observer=events.append)

    assert result.success is True, result.error_message
    assert result.message == SUCCESS_MESSAGE
    assert result.warnings == []
    assert result.chosen_port == 8080
    assert result.web_app_url == "http://localhost:8080"
    assert events[-1].percentage == 100
    assert [e.percentage for e in events] == sorted(e.percentage for e in events)

    site = host.site_path("DemoShop")
    assert (site / "EcommerceStarter.dll").exists()
    assert (site / "web.config").exists()
    assert not (site / "appsettings.Development.json").exists()
    assert (site / "service" / "EcommerceStarter.WindowsService.exe").exists()
    assert not (site / "service" / "appsettings.json").exists()

    record = host.instances.get_record("DemoShop")
    assert record is not None
    assert record.port == 8080
    assert record.schema_version == 2
    assert record.text("CompanyName") == "DemoShop Inc"
    assert record.text("ServiceName") == "EcommerceStarter-DemoShop"
    assert host.instances.get_secret("DemoShop", CONNECTION_ENCRYPTED) == build_connection_string(
        "localhost\\SQLEXPRESS", "EcommerceStarter_DemoShop"
    )
    assert host.instances.get_secret("DemoShop", JWT_SECRET)

    program = host.instances.get_program("DemoShop")
    assert program is not None
    assert program["DisplayName"] == "EcommerceStarter - DemoShop Inc"
    assert program["NoRepair"] == 1
    assert host.instances.get_tool() is not None
    assert result.migration is not None and result.migration.applied_versions == [1, 2]


def test_demo_shop_install_reaches_latest_schema(host: Host) -> None:
    """A plain HTTP install on a free port ends at 100% on the newest record schema."""
    events: list[ProgressEvent] = []
    request = host.request("DemoShop", database_name="DemoShopDb", port=8080)

    result = host.installer.install(request, observer=events.append)

    record = host.instances.get_record("DemoShop")
    assert result.success is True
    assert result.failed_stage is None
    assert result.warnings == []
    assert events[-1].percentage == 100
    assert result.chosen_port == 8080
    assert record is not None
    assert record.port == 8080
    assert record.schema_version == host.migrations.latest_version
    assert host.migrations.pending("DemoShop") == []
    [create] = host.runner.matching("CREATE DATABASE")
    assert "DemoShopDb" in (create.script or "")


def test_requested_port_in_use_moves_to_next(host: Host) -> None:
    """A bound port is replaced by the next free one with a warning."""
    host.runner.on("Get-ChildItem IIS:\\Sites", stdout="Default Web Site|8080\n")

    result = host.installer.install(host.request("DemoShop", port=8080))

    assert result.success is True
    assert result.chosen_port == 8081
    assert result.warnings == ["Port 8080 is in use; site bound to port 8081"]


def test_second_site_avoids_recorded_port(host: Host) -> None:
    """Ports recorded for sibling instances count as taken."""
    host.installer.install(host.request("ShopA"))

    result = host.installer.install(host.request("ShopB"))

    assert result.chosen_port == 8081
    assert host.instances.list_sites() == ["ShopA", "ShopB"]


def test_missing_critical_file_aborts(host: Host) -> None:
    """Fatal stage failures stop before IIS is touched."""
    (host.config.bundle_dir / "EcommerceStarter.dll").unlink()

    result = host.installer.install(host.request("DemoShop"))

    assert result.success is False
    assert result.failed_stage == "files"
    assert result.error_message == "Critical file/folder missing in bundle: EcommerceStarter.dll"
    assert host.runner.matching("New-WebAppPool") == []
    assert host.instances.get_record("DemoShop") is None


def test_missing_bundle_fails_prerequisites(host: Host) -> None:
    """Nothing runs when the application bundle is absent."""
    shutil.rmtree(host.config.bundle_dir)

    result = host.installer.install(host.request("DemoShop"))

    assert result.failed_stage == "prerequisites"
    assert host.runner.calls == []


def test_relative_install_path_is_rejected(host: Host) -> None:
    """Install paths must be absolute."""
    result = host.installer.install(host.request("DemoShop", install_path="relative/dir"))

    assert result.failed_stage == "prerequisites"
    assert "must be absolute" in result.error_message


def test_install_path_with_invalid_characters_is_rejected(host: Host) -> None:
    """Characters Windows forbids in paths fail the prerequisites."""
    result = host.installer.install(
        host.request("DemoShop", install_path=host.site_path("Demo|Shop"))
    )

    assert result.failed_stage == "prerequisites"
    assert result.error_message == "Installation path contains invalid characters."


def test_long_install_path_is_a_warning(host: Host) -> None:
    """Paths close to the Windows limit are allowed with a warning."""
    long_path = host.root / ("x" * 120) / ("y" * 120)

    result = host.installer.install(host.request("DemoShop", install_path=long_path, debug=True))

    assert result.success is True
    assert result.warnings == ["Path is very long. Consider using a shorter path to avoid issues."]


def test_insufficient_disk_space_fails_prerequisites(
    host: Host, monkeypatch: pytest.MonkeyPatch
) -> None:
    """The install volume must hold the configured amount of free space."""
    host.installer.config = replace(host.config, min_free_space_mb=2048)
    monkeypatch.setattr(
        install_module.shutil, "disk_usage", lambda path: SimpleNamespace(free=512 * 1024 * 1024)
    )

    result = host.installer.install(host.request("DemoShop"))

    assert result.failed_stage == "prerequisites"
    assert result.error_message == "Insufficient disk space. Required: 2048 MB, Available: 512 MB"
    assert host.runner.calls == []


def test_unwritable_install_path_fails_prerequisites(
    host: Host, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A location that refuses a test file stops the install before any change."""
    original = Path.write_text

    def refuse(self: Path, *args: object, **kwargs: object) -> int:
        if self.name.startswith("test_") and self.suffix == ".tmp":
            raise PermissionError("access denied")
        return original(self, *args, **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(Path, "write_text", refuse)

    result = host.installer.install(host.request("DemoShop"))

    site = host.site_path("DemoShop")
    assert result.failed_stage == "prerequisites"
    assert result.error_message == f"No write permission for {site}. Run storectl as Administrator."
    assert list(site.iterdir()) == []


def test_database_failure_is_fatal(host: Host) -> None:
    """Database creation errors abort the install."""
    host.runner.on("CREATE DATABASE", returncode=1, stderr="Login failed for user")

    result = host.installer.install(host.request("DemoShop"))

    assert result.failed_stage == "database"
    assert result.error_message.startswith("Database creation failed:")
    assert "Login failed for user" in result.error_message


def test_missing_service_bundle_is_a_warning(host: Host) -> None:
    """The service stage failing does not fail the install."""
    shutil.rmtree(host.config.service_bundle_dir)

    result = host.installer.install(host.request("DemoShop"))

    assert result.success is True
    assert "Windows Service files not included in installer package" in result.warnings
    assert host.instances.get_record("DemoShop") is not None


def test_missing_migrations_bundle_is_a_warning(host: Host) -> None:
    """Schema application is skipped with a warning when the bundle is missing."""
    host.config.migrations_bundle.unlink()

    result = host.installer.install(host.request("DemoShop"))

    assert result.success is True
    assert any("Migrations bundle not found" in warning for warning in result.warnings)


def test_dry_run_changes_nothing(host: Host) -> None:
    """Demo mode replays progress without side effects."""
    events: list[ProgressEvent] = []

    result = host.installer.install(host.request("DemoShop", dry_run=True), observer=events.append)

    assert result.success is True
    assert result.message == DEMO_MESSAGE
    assert host.runner.calls == []
    assert not host.site_path("DemoShop").exists()
    assert host.instances.list_sites() == []
    assert all(event.message.startswith("DEMO: ") for event in events)
    assert events[-1].percentage == 100


def test_debug_mode_skips_deployment(host: Host) -> None:
    """Debug mode only validates prerequisites."""
    events: list[ProgressEvent] = []

    result = host.installer.install(host.request("DemoShop", debug=True), observer=events.append)

    assert result.success is True
    assert host.runner.calls == []
    assert host.instances.get_record("DemoShop") is None
    assert "Debug mode: database provisioning skipped" in [event.message for event in events]


def test_existing_database_is_not_created(host: Host) -> None:
    """Existing databases only receive schema updates."""
    result = host.installer.install(host.request("DemoShop", use_existing_database=True))

    assert result.success is True
    assert host.runner.matching("CREATE DATABASE") == []
    assert host.runner.matching("--connection")


def test_missing_existing_database_is_fatal(host: Host) -> None:
    """Reusing a database that is not on the server fails the database stage."""
    host.runner.on("FROM sys.databases", stdout="0\n")

    result = host.installer.install(host.request("DemoShop", use_existing_database=True))

    assert result.failed_stage == "database"
    assert result.error_message == (
        "Database 'EcommerceStarter_DemoShop' was not found on localhost\\SQLEXPRESS"
    )
    assert host.runner.matching("--connection") == []


def test_admin_user_is_created_with_hashed_password(host: Host) -> None:
    """Admin credentials are sent as an identity hash, never in plaintext."""
    result = host.installer.install(
        host.request("DemoShop", admin_email="admin@example.com", admin_password="S3cure!pass")
    )

    [call] = host.runner.matching("INSERT INTO AspNetUsers")
    assert result.success is True
    assert "admin@example.com" in (call.script or "")
    assert "S3cure!pass" not in (call.script or "")


def test_existing_admins_skip_admin_creation(host: Host) -> None:
    """No admin account is added to a database that already has one."""
    host.runner.on("INNER JOIN AspNetRoles", stdout="2\n")

    result = host.installer.install(
        host.request("DemoShop", admin_email="admin@example.com", admin_password="S3cure!pass")
    )

    assert result.success is True
    assert host.runner.matching("INSERT INTO AspNetUsers") == []


def test_admin_count_failure_still_creates_admin(host: Host) -> None:
    """An unreadable admin count does not prevent creating the first admin."""
    host.runner.on("INNER JOIN AspNetRoles", returncode=1, stderr="Invalid object name")

    result = host.installer.install(
        host.request("DemoShop", admin_email="admin@example.com", admin_password="S3cure!pass")
    )

    assert result.success is True
    assert len(host.runner.matching("INSERT INTO AspNetUsers")) == 1


def test_https_generates_certificate(host: Host) -> None:
    """HTTPS installs create a PFX and report an https URL."""
    host.runner.on("New-WebAppPool", stdout="SCHEME=https\nPORT=8080\n")

    result = host.installer.install(host.request("DemoShop", enable_https=True))

    assert result.web_app_url == "https://localhost:8080"
    assert (host.config.state_dir / "certs" / "EcommerceStarter-DemoShop.pfx").exists()
    [call] = host.runner.matching("New-WebAppPool")
    assert "EcommerceStarter-DemoShop.pfx" in (call.script or "")


def test_reconfigure_updates_company_and_port(host: Host) -> None:
    """Reconfiguration keeps the database and rewrites the record."""
    host.installer.install(host.request("DemoShop"))
    installation = host.reconciler.find("DemoShop", probe=False)
    assert installation is not None

    result = host.installer.reconfigure(installation, company_name="New Co", port=9000)

    record = host.instances.get_record("DemoShop")
    assert result.success is True
    assert record is not None
    assert record.text("CompanyName") == "New Co"
    assert record.port == 9000
    assert len(host.runner.matching("CREATE DATABASE")) == 1


def test_install_waits_for_site_lock(host: Host) -> None:
    """A concurrent operation on the same site blocks the install."""
    with host.locks.instance_lock("demoshop"):
        with pytest.raises(LockTimeoutError):
            host.installer.install(host.request("DemoShop"))


def test_record_write_failure_is_a_warning(host: Host, monkeypatch: pytest.MonkeyPatch) -> None:
    """A deployed site is reported as installed even when its record cannot be written."""

    def refuse(self: InstanceStore, site: str, fields: object) -> None:
        raise StoreError("registry is read-only")

    monkeypatch.setattr(InstanceStore, "write_record", refuse)

    result = host.installer.install(host.request("DemoShop"))

    assert result.success is True
    assert result.failed_stage is None
    assert "Could not write configuration to registry: registry is read-only" in result.warnings
    assert any(warning.startswith("Registry migration issue:") for warning in result.warnings)
    assert (host.site_path("DemoShop") / "web.config").exists()
