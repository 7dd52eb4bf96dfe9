"""Test doubles and stack builders shared by the test suite."""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from storectl.config import AppConfig, load_config
from storectl.crypto import FernetSecretCodec
from storectl.install import CRITICAL_FILES, InstallOrchestrator, InstallRequest
from storectl.locking import LockManager
from storectl.migrations import MigrationEngine, default_migrations
from storectl.providers import IISProvider, SqlServerProvider, WindowsServiceProvider
from storectl.reconciler import InstallationReconciler
from storectl.runner import CommandResult
from storectl.state import InstanceStore, open_views
from storectl.templates import TemplateEngine
from storectl.uninstall import UninstallOrchestrator


@dataclass
class RecordedCall:
    """One invocation captured by :class:`FakeRunner`."""

    executable: str
    args: tuple[str, ...]
    script: str | None
    timeout: float | None

    @property
    def text(self) -> str:
        """Return everything a rule can match against."""
        return "\n".join([self.executable, *self.args, self.script or ""])


@dataclass
class _Rule:
    needle: str
    executable: str | None
    returncode: int
    stdout: str
    stderr: str
    raises: Exception | None


@dataclass
class FakeRunner:
    """Command runner that records calls and replays scripted results.

    Rules are matched newest first against the executable, arguments and
    script body of each call; unmatched calls succeed with no output.
    """

    calls: list[RecordedCall] = field(default_factory=list)
    _rules: list[_Rule] = field(default_factory=list)

    def on(
        self,
        needle: str,
        *,
        executable: str | None = None,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        raises: Exception | None = None,
    ) -> None:
        """Script the result of calls whose text contains *needle*."""
        self._rules.insert(0, _Rule(needle, executable, returncode, stdout, stderr, raises))

    def run(
        self,
        executable: str,
        args: Sequence[str] = (),
        *,
        script: str | None = None,
        script_suffix: str = ".ps1",
        timeout: float | None = None,
    ) -> CommandResult:
        call = RecordedCall(executable, tuple(args), script, timeout)
        self.calls.append(call)
        for rule in self._rules:
            if rule.executable is not None and rule.executable != executable:
                continue
            if rule.needle not in call.text:
                continue
            if rule.raises is not None:
                raise rule.raises
            return CommandResult(call.args, rule.returncode, rule.stdout, rule.stderr)
        return CommandResult(call.args, 0)

    def matching(self, needle: str) -> list[RecordedCall]:
        """Return recorded calls whose text contains *needle*."""
        return [call for call in self.calls if needle in call.text]


@dataclass
class Host:
    """Fully wired orchestration stack over a temporary directory."""

    root: Path
    config: AppConfig
    runner: FakeRunner
    locks: LockManager
    templates: TemplateEngine
    instances: InstanceStore
    iis: IISProvider
    service: WindowsServiceProvider
    database: SqlServerProvider
    migrations: MigrationEngine
    reconciler: InstallationReconciler
    installer: InstallOrchestrator
    uninstaller: UninstallOrchestrator

    def site_path(self, site: str) -> Path:
        """Return the install path used for *site* in tests."""
        return self.root / "inetpub" / site

    def request(self, site: str, **overrides: object) -> InstallRequest:
        """Return an install request for *site* with sensible defaults."""
        values: dict[str, object] = {
            "site_name": site,
            "company_name": f"{site} Inc",
            "install_path": self.site_path(site),
            "database_name": f"EcommerceStarter_{site}",
            "database_server": "localhost\\SQLEXPRESS",
        }
        values.update(overrides)
        return InstallRequest(**values)  # type: ignore[arg-type]


def make_config(root: Path, **overrides: object) -> AppConfig:
    """Return a configuration rooted entirely under *root*."""
    values: dict[str, object] = {
        "state_dir": str(root / "state"),
        "templates_dir": str(root / "templates"),
        "tool_dir": str(root / "tool"),
        "lock_timeout": 1.0,
        "min_free_space_mb": 0,
        "demo": {"step_delay": 0},
        "database": {"probe_timeout": 1.0},
    }
    values.update(overrides)
    return load_config(config_file=root / "missing.yml", env={}, overrides=values)


def build_bundle(config: AppConfig) -> None:
    """Create the application, service and migrations bundles under the tool dir."""
    app_dir = config.bundle_dir
    app_dir.mkdir(parents=True, exist_ok=True)
    for name in CRITICAL_FILES:
        if "." in name:
            (app_dir / name).write_text("binary", encoding="utf-8")
        else:
            (app_dir / name).mkdir(exist_ok=True)
    (app_dir / "wwwroot" / "index.html").write_text("<html></html>", encoding="utf-8")
    (app_dir / "appsettings.json").write_text("{}", encoding="utf-8")
    (app_dir / "appsettings.Development.json").write_text("{}", encoding="utf-8")

    service_dir = config.service_bundle_dir
    service_dir.mkdir(parents=True, exist_ok=True)
    (service_dir / "EcommerceStarter.WindowsService.exe").write_text("exe", encoding="utf-8")
    (service_dir / "appsettings.json").write_text("{}", encoding="utf-8")

    config.migrations_bundle.parent.mkdir(parents=True, exist_ok=True)
    config.migrations_bundle.write_text("bundle", encoding="utf-8")


def build_host(root: Path, runner: FakeRunner | None = None) -> Host:
    """Wire the whole stack the way the CLI does, over a fake runner."""
    config = make_config(root)
    runner = runner or FakeRunner()
    runner.on(
        "query",
        executable=config.tools.sc_bin,
        returncode=1060,
        stdout="[SC] OpenService FAILED 1060",
    )
    runner.on("CREATE DATABASE", stdout="CREATED\n")
    runner.on("FROM sys.databases", stdout="1\n")
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    instances = InstanceStore(
        stores=open_views(config.store_dir, locks=locks),
        codec=FernetSecretCodec(config.key_file),
        product_name=config.product_name,
    )
    iis = IISProvider(runner, templates)
    service = WindowsServiceProvider(runner, templates, settle_seconds=0)
    database = SqlServerProvider(runner, templates)
    migrations = MigrationEngine(instances, default_migrations(instances))
    reconciler = InstallationReconciler(instances, database, probe_timeout=1.0)
    installer = InstallOrchestrator(
        config,
        instances=instances,
        database=database,
        iis=iis,
        service=service,
        migrations=migrations,
        templates=templates,
        locks=locks,
        sleep=lambda _seconds: None,
    )
    uninstaller = UninstallOrchestrator(
        config,
        instances=instances,
        reconciler=reconciler,
        database=database,
        iis=iis,
        service=service,
        locks=locks,
        pool_settle_seconds=0,
        sleep=lambda _seconds: None,
    )
    return Host(
        root=root,
        config=config,
        runner=runner,
        locks=locks,
        templates=templates,
        instances=instances,
        iis=iis,
        service=service,
        database=database,
        migrations=migrations,
        reconciler=reconciler,
        installer=installer,
        uninstaller=uninstaller,
    )


__all__ = ["FakeRunner", "Host", "RecordedCall", "build_bundle", "build_host", "make_config"]
