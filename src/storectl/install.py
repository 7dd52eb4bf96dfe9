"""Install orchestrator: seven declarative stages from prerequisites to finalize."""
from __future__ import annotations

import base64
import logging
import secrets
import shutil
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path, PureWindowsPath

from . import __version__
from .config import AppConfig
from .crypto import SecretCodecError
from .identity import hash_password
from .locking import LockManager
from .logging import OperationScope
from .migrations import MigrationEngine, MigrationOutcome
from .pipeline import (
    Criticality,
    PipelineRunner,
    ProgressObserver,
    Stage,
    StepResult,
    step_recorder,
)
from .ports import PortAllocationError, PortAllocator, recorded_ports
from .providers.database import DatabaseError, SqlServerProvider, build_connection_string
from .providers.iis import IISError, IISProvider
from .providers.service import ServiceError, WindowsServiceProvider
from .reconciler import ExistingInstallation
from .state.instances import (
    COMPANY_NAME,
    CONNECTION_ENCRYPTED,
    INSTALL_DATE,
    INSTALL_PATH,
    JWT_AUDIENCE,
    JWT_ISSUER,
    JWT_SECRET,
    PORT,
    SERVICE_NAME,
    SERVICE_PATH,
    SITE_NAME,
    VERSION,
    WEB_APP_URL,
    WEB_PATH,
    InstanceStore,
    normalize_display_version,
)
from .state.store import StoreError, StoreValue
from .templates import TemplateEngine, TemplateRenderError
from .tls import TLSConfigurationError, generate_site_certificate

LOGGER = logging.getLogger(__name__)

CRITICAL_FILES = (
    "EcommerceStarter.dll",
    "EcommerceStarter.deps.json",
    "EcommerceStarter.runtimeconfig.json",
    "wwwroot",
)
DEVELOPMENT_SETTINGS = "appsettings.Development.json"
SERVICE_DIR_NAME = "service"
TOOL_EXECUTABLE = "storectl.exe"
ENTRY_ASSEMBLY = "EcommerceStarter.dll"
INVALID_PATH_CHARS = frozenset('<>"|?*')
MAX_PATH_LENGTH = 240

DEMO_MESSAGE = "Demo installation completed successfully (no real changes were made)"
SUCCESS_MESSAGE = "Installation completed successfully!"


@dataclass(slots=True)
class InstallRequest:
    """Everything the install pipeline needs to deploy one site."""

    site_name: str
    company_name: str
    install_path: Path
    database_name: str
    database_server: str = ""
    admin_email: str | None = None
    admin_password: str | None = None
    use_existing_database: bool = False
    enable_https: bool = False
    port: int | None = None
    web_app_url: str | None = None
    debug: bool = False
    dry_run: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a loggable representation without the admin password."""
        return {
            "site_name": self.site_name,
            "company_name": self.company_name,
            "install_path": str(self.install_path),
            "database_server": self.database_server,
            "database_name": self.database_name,
            "admin_email": self.admin_email,
            "use_existing_database": self.use_existing_database,
            "enable_https": self.enable_https,
            "port": self.port,
            "web_app_url": self.web_app_url,
            "debug": self.debug,
            "dry_run": self.dry_run,
        }


@dataclass(slots=True)
class InstallResult:
    """Outcome returned by :meth:`InstallOrchestrator.install`."""

    success: bool
    message: str = ""
    error_message: str = ""
    warnings: list[str] = field(default_factory=list)
    chosen_port: int | None = None
    web_app_url: str | None = None
    failed_stage: str | None = None
    migration: MigrationOutcome | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "success": self.success,
            "message": self.message,
            "error_message": self.error_message,
            "warnings": list(self.warnings),
            "chosen_port": self.chosen_port,
            "web_app_url": self.web_app_url,
            "failed_stage": self.failed_stage,
            "migration": self.migration.to_dict() if self.migration else None,
        }


@dataclass(slots=True)
class InstallRun:
    """Mutable state threaded through the stages of one install."""

    request: InstallRequest
    server: str
    report: Callable[[int, str], None] = lambda percentage, message: None
    op: OperationScope | None = None
    database_created: bool = False
    port: int | None = None
    scheme: str = "http"
    web_app_url: str | None = None
    service_name: str | None = None
    migration: MigrationOutcome | None = None

    @property
    def install_path(self) -> Path:
        """Return the target directory of the web application."""
        return Path(self.request.install_path)

    @property
    def service_path(self) -> Path:
        """Return the directory holding the background service binaries."""
        return self.install_path / SERVICE_DIR_NAME


def _not_debug(run: InstallRun) -> bool:
    return not run.request.debug


def _is_absolute(path: Path | str) -> bool:
    return Path(path).is_absolute() or PureWindowsPath(str(path)).is_absolute()


def _has_invalid_path_chars(text: str) -> bool:
    if any(char in INVALID_PATH_CHARS or ord(char) < 32 for char in text):
        return True
    # A colon is only valid as the drive separator.
    return ":" in text[2:] or text[:1] == ":"


def _nearest_existing(path: Path) -> Path:
    for candidate in (path, *path.parents):
        if candidate.exists():
            return candidate
    return Path.cwd()


def _missing_critical(root: Path) -> str | None:
    for name in CRITICAL_FILES:
        if not (root / name).exists():
            return name
    return None


class InstallOrchestrator:
    """Deploy (or redeploy) one site through the install pipeline."""

    def __init__(
        self,
        config: AppConfig,
        *,
        instances: InstanceStore,
        database: SqlServerProvider,
        iis: IISProvider,
        service: WindowsServiceProvider,
        migrations: MigrationEngine,
        templates: TemplateEngine,
        locks: LockManager | None = None,
        product_version: str = __version__,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        """Wire the providers and store accessors used by the stages."""
        self.config = config
        self.instances = instances
        self.database = database
        self.iis = iis
        self.service = service
        self.migrations = migrations
        self.templates = templates
        self.locks = locks
        self.product_version = product_version
        self._sleep = sleep
        self._clock = clock
        self._ports = PortAllocator(config.ports.base, config.ports.strategy)

    # ------------------------------------------------------------------
    def stages(self) -> list[Stage[InstallRun]]:
        """Return the ordered install stages."""
        return [
            Stage(
                name="prerequisites",
                action=self._check_prerequisites,
                start_percent=10,
                end_percent=20,
                start_message="Checking prerequisites...",
                done_message="Prerequisites verified!",
            ),
            Stage(
                name="database",
                action=self._provision_database,
                start_percent=25,
                end_percent=40,
                start_message="Preparing database...",
                done_message="Database ready!",
                run_if=_not_debug,
                skip_message="Debug mode: database provisioning skipped",
            ),
            Stage(
                name="files",
                action=self._deploy_files,
                start_percent=45,
                end_percent=60,
                start_message="Preparing application files...",
                done_message="Application deployed!",
                run_if=_not_debug,
                skip_message="Debug mode: file deployment skipped",
            ),
            Stage(
                name="iis",
                action=self._configure_iis,
                start_percent=65,
                end_percent=80,
                start_message="Creating IIS application pool...",
                done_message="IIS configured successfully!",
                run_if=_not_debug,
                skip_message="Debug mode: IIS configuration skipped",
            ),
            Stage(
                name="configuration",
                action=self._apply_configuration,
                start_percent=85,
                end_percent=90,
                start_message="Applying your settings...",
                done_message="Configuration applied!",
                run_if=_not_debug,
                skip_message="Debug mode: configuration skipped",
            ),
            Stage(
                name="service",
                action=self._install_service,
                start_percent=92,
                end_percent=94,
                start_message="Installing Windows Service...",
                done_message="Windows Service installed!",
                criticality=Criticality.WARNING,
                run_if=_not_debug,
                skip_message="Debug mode: service installation skipped",
            ),
            Stage(
                name="finalize",
                action=self._finalize,
                start_percent=95,
                end_percent=100,
                start_message="Finalizing installation...",
                done_message="Installation complete!",
                run_if=_not_debug,
                skip_message="Installation complete!",
            ),
        ]

    def install(
        self,
        request: InstallRequest,
        *,
        observer: ProgressObserver | None = None,
        op: OperationScope | None = None,
    ) -> InstallResult:
        """Run the install pipeline for *request*."""
        recorder = step_recorder(op, "install")
        runner: PipelineRunner[InstallRun] = PipelineRunner(
            self.stages(), observer=observer, recorder=recorder
        )
        if request.dry_run:
            runner.simulate(delay=self.config.demo.step_delay, sleep=self._sleep)
            return InstallResult(success=True, message=DEMO_MESSAGE)

        run = InstallRun(
            request=request,
            server=request.database_server or self.config.database.server,
            report=runner.report,
            op=op,
        )
        with self._site_lock(request.site_name, op):
            outcome = runner.run(run)

        if not outcome.success:
            LOGGER.error("Install of %s failed at %s", request.site_name, outcome.failed_stage)
            return InstallResult(
                success=False,
                message="Installation failed",
                error_message=outcome.error_message,
                warnings=outcome.warnings,
                chosen_port=run.port,
                web_app_url=run.web_app_url,
                failed_stage=outcome.failed_stage,
                migration=run.migration,
            )
        return InstallResult(
            success=True,
            message=SUCCESS_MESSAGE,
            warnings=outcome.warnings,
            chosen_port=run.port,
            web_app_url=run.web_app_url,
            migration=run.migration,
        )

    def reconfigure(
        self,
        installation: ExistingInstallation,
        *,
        company_name: str | None = None,
        port: int | None = None,
        enable_https: bool | None = None,
        dry_run: bool = False,
        observer: ProgressObserver | None = None,
        op: OperationScope | None = None,
    ) -> InstallResult:
        """Re-run the pipeline against an installed site, keeping its database."""
        if not installation.install_path:
            return InstallResult(
                success=False,
                message="Reconfiguration failed",
                error_message=f"No install path recorded for '{installation.site_name}'.",
            )
        if not installation.database_name:
            return InstallResult(
                success=False,
                message="Reconfiguration failed",
                error_message=f"No database recorded for '{installation.site_name}'.",
            )
        current_https = (installation.web_url or "").lower().startswith("https")
        request = InstallRequest(
            site_name=installation.site_name,
            company_name=company_name or installation.company_name or installation.site_name,
            install_path=Path(installation.install_path),
            database_name=installation.database_name,
            database_server=installation.database_server or "",
            use_existing_database=True,
            enable_https=current_https if enable_https is None else enable_https,
            port=port or installation.port,
            dry_run=dry_run,
        )
        return self.install(request, observer=observer, op=op)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def _check_prerequisites(self, run: InstallRun) -> StepResult:
        request = run.request
        site = request.site_name.strip()
        if not site or any(char in site for char in "\\/"):
            return StepResult.fail(f"Invalid site name: {request.site_name!r}")
        if not request.company_name.strip():
            return StepResult.fail("Company name is required.")
        if not request.database_name.strip():
            return StepResult.fail("Database name is required.")
        warnings: list[str] = []
        path_text = str(request.install_path).strip()
        if not path_text or path_text == ".":
            return StepResult.fail("Installation path cannot be empty.")
        if _has_invalid_path_chars(path_text):
            return StepResult.fail("Installation path contains invalid characters.")
        if not _is_absolute(request.install_path):
            return StepResult.fail(f"Install path must be absolute: {request.install_path}")
        if len(path_text) > MAX_PATH_LENGTH:
            warnings.append("Path is very long. Consider using a shorter path to avoid issues.")
        if request.port is not None and not 0 < request.port <= 65535:
            return StepResult.fail(f"Port must be between 1 and 65535, got {request.port}.")
        if request.debug:
            return StepResult.ok("Prerequisites verified", warnings=warnings)
        if not self.config.bundle_dir.is_dir():
            return StepResult.fail(f"Bundled application files not found at {self.config.bundle_dir}")
        error = self._check_install_location(run.install_path)
        if error is not None:
            return StepResult.fail(error)
        return StepResult.ok("Prerequisites verified", warnings=warnings)

    def _check_install_location(self, path: Path) -> str | None:
        """Return why *path* cannot receive the application, or ``None``."""
        required = self.config.min_free_space_mb * 1024 * 1024
        try:
            available = shutil.disk_usage(_nearest_existing(path)).free
            if available < required:
                return (
                    f"Insufficient disk space. Required: {self.config.min_free_space_mb} MB, "
                    f"Available: {available // (1024 * 1024)} MB"
                )
            path.mkdir(parents=True, exist_ok=True)
            marker = path / f"test_{uuid.uuid4().hex}.tmp"
            marker.write_text("test", encoding="utf-8")
            marker.unlink()
        except PermissionError:
            return f"No write permission for {path}. Run storectl as Administrator."
        except OSError as exc:
            return f"Path validation error: {exc}"
        return None

    def _provision_database(self, run: InstallRun) -> StepResult:
        request = run.request
        warnings: list[str] = []
        bundle = self.config.migrations_bundle
        try:
            if request.use_existing_database:
                if not self.database.database_exists(run.server, request.database_name):
                    return StepResult.fail(
                        f"Database '{request.database_name}' was not found on {run.server}"
                    )
                run.report(30, "Applying database schema updates...")
                schema = self.database.apply_schema(run.server, request.database_name, bundle)
                if not schema.applied:
                    warnings.append(schema.message)
                run.report(35, "Database schema updated successfully!")
            else:
                run.report(30, "Creating database...")
                run.database_created = self.database.create_database(
                    run.server, request.database_name
                )
                schema = self.database.apply_schema(run.server, request.database_name, bundle)
                if not schema.applied:
                    warnings.append(schema.message)
        except DatabaseError as exc:
            kind = "Migration" if request.use_existing_database else "Database creation"
            return StepResult.fail(f"{kind} failed: {exc}")

        run.report(38, "Configuring database permissions...")
        login = f"IIS APPPOOL\\{request.site_name}"
        try:
            self.database.grant_access(run.server, request.database_name, login)
        except DatabaseError as exc:
            warnings.append(f"Could not auto-configure database permissions: {exc}")
        return StepResult.ok("Database ready", warnings=warnings)

    def _deploy_files(self, run: InstallRun) -> StepResult:
        bundle = self.config.bundle_dir
        missing = _missing_critical(bundle)
        if missing is not None:
            return StepResult.fail(f"Critical file/folder missing in bundle: {missing}")
        try:
            run.install_path.mkdir(parents=True, exist_ok=True)
            run.report(55, "Deploying files...")
            shutil.copytree(bundle, run.install_path, dirs_exist_ok=True)
        except OSError as exc:
            return StepResult.fail(f"Application deployment failed: {exc}")
        missing = _missing_critical(run.install_path)
        if missing is not None:
            return StepResult.fail(f"Critical file/folder missing after deployment: {missing}")
        return StepResult.ok("Application deployed successfully")

    def _configure_iis(self, run: InstallRun) -> StepResult:
        request = run.request
        site = request.site_name
        try:
            used = self.iis.bound_ports(exclude_site=site) | recorded_ports(
                self.instances, exclude_site=site
            )
            port = self._ports.pick(request.port, used)
            if request.port and port != request.port:
                LOGGER.info("Port %s is in use; %s will bind %s", request.port, site, port)
            certificate = None
            if request.enable_https:
                certificate = generate_site_certificate(
                    site,
                    self.config.state_dir / "certs",
                    product_name=self.config.product_name,
                )
            run.report(72, "Configuring website...")
            binding = self.iis.configure_site(site, run.install_path, port, certificate=certificate)
        except (IISError, PortAllocationError, TLSConfigurationError) as exc:
            return StepResult.fail(f"IIS configuration failed: {exc}")

        run.port = binding.port
        run.scheme = binding.scheme
        run.web_app_url = request.web_app_url or binding.url
        warnings = list(binding.warnings)
        if request.port and binding.port != request.port:
            warnings.append(f"Port {request.port} is in use; site bound to port {binding.port}")
        return StepResult.ok(f"IIS configured successfully. URL: {run.web_app_url}", warnings=warnings)

    def _apply_configuration(self, run: InstallRun) -> StepResult:
        request = run.request
        https_port = run.port if run.scheme == "https" else None
        try:
            self.templates.render_to_path(
                "web/web.config.j2",
                run.install_path / "web.config",
                {
                    "entry_assembly": ENTRY_ASSEMBLY,
                    "environment_name": "Production",
                    "site_name": request.site_name,
                    "log_level": "Warning",
                    "https_port": https_port,
                },
            )
        except (TemplateRenderError, OSError) as exc:
            return StepResult.fail(f"Configuration failed: {exc}")

        development = run.install_path / DEVELOPMENT_SETTINGS
        try:
            development.unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.warning("Could not remove %s: %s", development, exc)

        warnings: list[str] = []
        run.report(88, "Creating admin user...")
        if request.use_existing_database:
            LOGGER.info("Skipping admin user creation; existing database keeps its admins")
        elif not (request.admin_email and request.admin_password):
            LOGGER.info("Skipping admin user creation; no credentials supplied")
        else:
            problem = self._create_admin(run, request.admin_email, request.admin_password)
            if problem is not None:
                warnings.append(problem)
        return StepResult.ok("Production configuration applied successfully", warnings=warnings)

    def _create_admin(self, run: InstallRun, email: str, password: str) -> str | None:
        """Create the first admin account; return a warning when that fails."""
        database = run.request.database_name
        try:
            existing = self.database.count_admins(run.server, database)
        except DatabaseError as exc:
            LOGGER.warning("Could not count admin users, creating one anyway: %s", exc)
            existing = 0
        if existing > 0:
            LOGGER.info("Found %d existing admin user(s) - skipping admin creation", existing)
            return None
        try:
            created = self.database.create_admin(run.server, database, email, hash_password(password))
        except (DatabaseError, ValueError) as exc:
            return f"Could not create admin user: {exc}"
        if not created:
            LOGGER.info("Admin user %s already exists", email)
        return None

    def _install_service(self, run: InstallRun) -> StepResult:
        request = run.request
        source = self.config.service_bundle_dir
        if not source.is_dir():
            return StepResult.fail("Windows Service files not included in installer package")
        service_name = self.service.service_name(request.site_name)
        try:
            self.service.remove(service_name)
            run.service_path.mkdir(parents=True, exist_ok=True)
            shutil.copytree(
                source,
                run.service_path,
                dirs_exist_ok=True,
                ignore=shutil.ignore_patterns("appsettings*.json"),
            )
            run.service_name = self.service.install(
                request.site_name,
                run.service_path,
                company_name=request.company_name,
            )
        except (ServiceError, OSError) as exc:
            return StepResult.fail(f"Could not install Windows Service: {exc}")
        return StepResult.ok(f"Windows Service '{run.service_name}' installed and started")

    def _finalize(self, run: InstallRun) -> StepResult:
        request = run.request
        site = request.site_name
        warnings: list[str] = []

        try:
            self._register_programs(run)
        except (StoreError, OSError) as exc:
            warnings.append(f"Could not register in Programs & Features: {exc}")

        fields = self._record_fields(run)
        try:
            self.instances.write_record(site, fields)
            self.instances.set_secret(
                site,
                CONNECTION_ENCRYPTED,
                build_connection_string(run.server, request.database_name),
            )
            jwt_secret = base64.b64encode(secrets.token_bytes(32)).decode("ascii")
            self.instances.set_secret(site, JWT_SECRET, jwt_secret, overwrite=False)
        except (StoreError, SecretCodecError) as exc:
            warnings.append(f"Could not write configuration to registry: {exc}")

        try:
            repaired = self.instances.fill_missing(site, fields)
        except StoreError as exc:
            warnings.append(f"Registry integrity check: {exc}")
        else:
            if repaired:
                LOGGER.info("Filled missing record fields for %s: %s", site, ", ".join(repaired))

        run.migration = self.migrations.run(site, op=run.op)
        if not run.migration.success:
            warnings.append(f"Registry migration issue: {run.migration.error_message}")
        elif run.migration.applied_count:
            LOGGER.info("Applied %d registry migration(s) for %s", run.migration.applied_count, site)
        return StepResult.ok("Installation finalized", warnings=warnings)

    # ------------------------------------------------------------------
    def _record_fields(self, run: InstallRun) -> dict[str, StoreValue]:
        request = run.request
        product = self.config.product_name
        fields: dict[str, StoreValue] = {
            SITE_NAME: request.site_name,
            COMPANY_NAME: request.company_name,
            INSTALL_PATH: str(run.install_path),
            WEB_PATH: str(run.install_path),
            SERVICE_PATH: str(run.service_path),
            SERVICE_NAME: self.service.service_name(request.site_name),
            VERSION: self.product_version,
            INSTALL_DATE: self._clock().date().isoformat(),
            JWT_ISSUER: product,
            JWT_AUDIENCE: product,
        }
        if run.web_app_url:
            fields[WEB_APP_URL] = run.web_app_url
        if run.port is not None:
            fields[PORT] = int(run.port)
        return fields

    def _register_programs(self, run: InstallRun) -> None:
        request = run.request
        product = self.config.product_name
        tool = str(self.config.tool_dir / TOOL_EXECUTABLE)
        version = normalize_display_version(self.product_version)
        install_date = self._clock().strftime("%Y%m%d")
        common: dict[str, StoreValue] = {
            "DisplayVersion": version,
            "Publisher": self.config.publisher,
            "DisplayIcon": f"{tool},0",
            "NoModify": 0,
            "NoRepair": 1,
            "InstallDate": install_date,
        }
        self.instances.register_tool(
            {
                **common,
                "DisplayName": product,
                "InstallLocation": str(self.config.tool_dir),
                "SystemComponent": 0,
                "UninstallString": f'"{tool}" --uninstall-installer',
                "ModifyPath": f'"{tool}" --maintenance',
            }
        )
        self.instances.register_program(
            request.site_name,
            {
                **common,
                "DisplayName": f"{product} - {request.company_name}",
                "InstallLocation": str(run.install_path),
                "ModifyPath": f'"{tool}" --reconfigure --sitename="{request.site_name}"',
                "UninstallString": f'"{tool}" --uninstall --sitename="{request.site_name}"',
            },
        )

    @contextmanager
    def _site_lock(self, site: str, op: OperationScope | None) -> Iterator[None]:
        guard = self.locks.instance_lock(site) if self.locks is not None else nullcontext()
        with guard as handle:
            if op is not None and handle is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            yield


__all__ = [
    "CRITICAL_FILES",
    "DEMO_MESSAGE",
    "InstallOrchestrator",
    "InstallRequest",
    "InstallResult",
    "InstallRun",
    "SUCCESS_MESSAGE",
]
