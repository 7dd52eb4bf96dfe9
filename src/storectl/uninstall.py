"""Uninstall orchestrator.

Teardown never aborts: every stage is warning-only so a partially broken
instance is still removed as far as possible, and a final verification pass
reports whatever survived.
"""
from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import AbstractContextManager, contextmanager, nullcontext
from dataclasses import dataclass, field
from pathlib import Path

from .config import AppConfig
from .locking import LockHandle, LockManager
from .logging import OperationScope
from .pipeline import (
    Criticality,
    PipelineRunner,
    ProgressObserver,
    Stage,
    StepResult,
    step_recorder,
)
from .providers.database import DatabaseError, SqlServerProvider
from .providers.iis import IISError, IISProvider
from .providers.service import ServiceError, WindowsServiceProvider
from .reconciler import ExistingInstallation, InstallationReconciler
from .state.instances import InstanceStore
from .state.store import StoreError

LOGGER = logging.getLogger(__name__)

PROTECTED_DIRS = ("wwwroot/uploads", "logs", "App_Data")
SERVICE_DIR_NAME = "service"

NOT_FOUND_MESSAGE = "No installation found. EcommerceStarter may already be uninstalled."
DEMO_MESSAGE = "Demo uninstall completed successfully (no real changes were made)"
SUCCESS_MESSAGE = "Uninstallation complete!"

ORPHAN_PROGRAM_ENTRY = "Programs & Features registry entry"
ORPHAN_RECORD = "Application configuration registry"
ORPHAN_SERVICE = "Windows Service still installed"
ORPHAN_WEBSITE = "IIS Website still exists"
ORPHAN_APPLICATION = "IIS Application still exists"
ORPHAN_WEB_FILES = "Web application files still exist"
ORPHAN_SERVICE_FILES = "Windows Service files still exist"


@dataclass(slots=True)
class UninstallRequest:
    """Parameters for removing one site."""

    site_name: str
    remove_database: bool = False
    keep_user_data: bool = False
    database_server: str | None = None
    database_name: str | None = None
    dry_run: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a loggable representation."""
        return {
            "site_name": self.site_name,
            "remove_database": self.remove_database,
            "keep_user_data": self.keep_user_data,
            "database_server": self.database_server,
            "database_name": self.database_name,
            "dry_run": self.dry_run,
        }


@dataclass(slots=True)
class UninstallResult:
    """Outcome of an uninstall; warnings never flip success."""

    success: bool
    message: str = ""
    error_message: str = ""
    warnings: list[str] = field(default_factory=list)
    orphans: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "success": self.success,
            "message": self.message,
            "error_message": self.error_message,
            "warnings": list(self.warnings),
            "orphans": list(self.orphans),
            "deferred": list(self.deferred),
        }


@dataclass(slots=True)
class UninstallRun:
    """Mutable state threaded through the uninstall stages."""

    request: UninstallRequest
    installation: ExistingInstallation
    service_name: str
    orphans: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)

    @property
    def install_path(self) -> Path | None:
        """Return the recorded install path, if any."""
        path = self.installation.install_path
        return Path(path) if path else None


@dataclass(slots=True)
class RemovalReport:
    """Result of deleting one directory tree."""

    removed: int = 0
    kept: int = 0
    deferred: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def remove_tree(
    root: Path,
    *,
    keep: Sequence[str] = (),
    defer: Callable[[str], None] | None = None,
) -> RemovalReport:
    """Delete *root* bottom-up, skipping paths under *keep* (relative, any case).

    Files that cannot be deleted are handed to *defer* when supplied, and
    otherwise reported as failed.
    """
    report = RemovalReport()
    if not root.exists():
        return report
    protected = [tuple(part.lower() for part in Path(item).parts) for item in keep]

    def is_protected(path: Path) -> bool:
        parts = tuple(part.lower() for part in path.relative_to(root).parts)
        return any(parts[: len(prefix)] == prefix for prefix in protected)

    for current, dirnames, filenames in os.walk(root, topdown=False):
        directory = Path(current)
        for name in filenames:
            path = directory / name
            if protected and is_protected(path):
                report.kept += 1
                continue
            try:
                path.unlink()
                report.removed += 1
            except OSError as exc:
                _defer_or_fail(report, path, exc, defer)
        for name in dirnames:
            path = directory / name
            if protected and is_protected(path):
                continue
            _remove_empty_dir(path)
    if report.deferred and defer is not None:
        defer(str(root))
    _remove_empty_dir(root)
    return report


def _defer_or_fail(
    report: RemovalReport,
    path: Path,
    exc: OSError,
    defer: Callable[[str], None] | None,
) -> None:
    if defer is None:
        LOGGER.warning("Could not delete %s: %s", path, exc)
        report.failed.append(str(path))
        return
    LOGGER.info("Scheduling %s for removal at restart: %s", path, exc)
    defer(str(path))
    report.deferred.append(str(path))


def _remove_empty_dir(path: Path) -> None:
    try:
        if path.is_dir() and not path.is_symlink() and not any(path.iterdir()):
            path.rmdir()
    except OSError as exc:
        LOGGER.debug("Leaving directory %s in place: %s", path, exc)


def _left_behind(path: Path, queued: set[str]) -> bool:
    """Return ``True`` when *path* survived and is not queued for restart deletion."""
    return path.exists() and str(path).lower() not in queued


class UninstallOrchestrator:
    """Remove a site, or the deployment tool itself once no site remains."""

    def __init__(
        self,
        config: AppConfig,
        *,
        instances: InstanceStore,
        reconciler: InstallationReconciler,
        database: SqlServerProvider,
        iis: IISProvider,
        service: WindowsServiceProvider,
        locks: LockManager | None = None,
        pool_settle_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Wire the providers used by the teardown stages."""
        self.config = config
        self.instances = instances
        self.reconciler = reconciler
        self.database = database
        self.iis = iis
        self.service = service
        self.locks = locks
        self.pool_settle_seconds = pool_settle_seconds
        self._sleep = sleep

    # ------------------------------------------------------------------
    def stages(self) -> list[Stage[UninstallRun]]:
        """Return the ordered teardown stages followed by verification."""
        warn = Criticality.WARNING
        return [
            Stage(
                name="service",
                action=self._remove_service,
                start_percent=5,
                end_percent=12,
                start_message="Stopping Windows Service...",
                done_message="Windows Service removed",
                criticality=warn,
            ),
            Stage(
                name="app_pool",
                action=self._stop_app_pool,
                start_percent=13,
                end_percent=25,
                start_message="Stopping IIS Application Pool...",
                done_message="Application pool stopped",
                criticality=warn,
            ),
            Stage(
                name="website",
                action=self._remove_website,
                start_percent=26,
                end_percent=37,
                start_message="Removing IIS Website...",
                done_message="IIS Website removed",
                criticality=warn,
            ),
            Stage(
                name="database",
                action=self._drop_database,
                start_percent=38,
                end_percent=50,
                start_message="Dropping database...",
                done_message="Database removed",
                criticality=warn,
                run_if=lambda run: run.request.remove_database,
                skip_message="Skipping database removal (keeping data)...",
            ),
            Stage(
                name="files",
                action=self._delete_web_files,
                start_percent=51,
                end_percent=62,
                start_message="Deleting web application files...",
                done_message="Web application files deleted",
                criticality=warn,
            ),
            Stage(
                name="service_files",
                action=self._delete_service_files,
                start_percent=63,
                end_percent=75,
                start_message="Deleting Windows Service files...",
                done_message="Windows Service files deleted",
                criticality=warn,
            ),
            Stage(
                name="tool_files",
                action=self._delete_tool_files,
                start_percent=76,
                end_percent=87,
                start_message="Removing installer files...",
                done_message="Installer files removed",
                criticality=warn,
                run_if=self._is_last_instance,
                skip_message="Keeping shared installer files (other instances remain)",
            ),
            Stage(
                name="store",
                action=self._remove_store_entries,
                start_percent=88,
                end_percent=95,
                start_message="Cleaning all registry entries...",
                done_message="Registry entries removed",
                criticality=warn,
            ),
            Stage(
                name="verify",
                action=self._verify,
                start_percent=96,
                end_percent=100,
                start_message="Verifying complete removal...",
                done_message=SUCCESS_MESSAGE,
                criticality=warn,
            ),
        ]

    def uninstall(
        self,
        request: UninstallRequest,
        *,
        observer: ProgressObserver | None = None,
        op: OperationScope | None = None,
    ) -> UninstallResult:
        """Tear down the site named in *request*."""
        runner: PipelineRunner[UninstallRun] = PipelineRunner(
            self.stages(), observer=observer, recorder=step_recorder(op, "uninstall")
        )
        if request.dry_run:
            runner.simulate(delay=self.config.demo.step_delay, sleep=self._sleep)
            return UninstallResult(success=True, message=DEMO_MESSAGE)

        with self._lock(self.locks.instance_lock(request.site_name) if self.locks else None, op):
            installation = self.reconciler.find(request.site_name, probe=False)
            if installation is None:
                return UninstallResult(success=False, error_message=NOT_FOUND_MESSAGE)
            run = UninstallRun(
                request=request,
                installation=installation,
                service_name=installation.service_name
                or self.service.service_name(request.site_name),
            )
            outcome = runner.run(run)

        return UninstallResult(
            success=True,
            message=SUCCESS_MESSAGE,
            warnings=outcome.warnings,
            orphans=run.orphans,
            deferred=run.deferred,
        )

    def uninstall_tool(
        self,
        *,
        dry_run: bool = False,
        op: OperationScope | None = None,
    ) -> UninstallResult:
        """Remove the deployment tool; refused while any instance exists."""
        with self._lock(self.locks.global_lock() if self.locks else None, op):
            sites = self.instances.list_sites()
            if sites or self.reconciler.has_instances():
                remaining = ", ".join(sites) if sites else "unregistered entries"
                message = (
                    "Cannot uninstall the deployment tool while instances remain: "
                    f"{remaining}. Uninstall each instance first."
                )
                return UninstallResult(success=False, error_message=message)
            if dry_run:
                return UninstallResult(success=True, message=DEMO_MESSAGE)

            warnings: list[str] = []
            report = remove_tree(
                self.config.tool_dir, defer=self.instances.schedule_deferred_delete
            )
            if report.failed:
                warnings.append(f"{len(report.failed)} installer file(s) could not be removed")
            try:
                self.instances.remove_tool()
            except StoreError as exc:
                warnings.append(f"Could not remove Programs & Features entry: {exc}")
            if op is not None:
                op.add_step("uninstall_tool.files", detail={"deferred": report.deferred})
        return UninstallResult(
            success=True,
            message="Deployment tool uninstalled",
            warnings=warnings,
            deferred=report.deferred,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def _remove_service(self, run: UninstallRun) -> StepResult:
        try:
            removed = self.service.remove(run.service_name)
        except ServiceError as exc:
            return StepResult.fail(f"Could not remove Windows Service: {exc}")
        if removed:
            return StepResult.ok(f"Service '{run.service_name}' removed")
        return StepResult.ok(f"Service '{run.service_name}' was not installed")

    def _stop_app_pool(self, run: UninstallRun) -> StepResult:
        try:
            stopped = self.iis.stop_app_pool(run.request.site_name)
        except IISError as exc:
            return StepResult.fail(f"Could not stop application pool: {exc}")
        if stopped:
            # Let open connections drain before the site is removed.
            self._sleep(self.pool_settle_seconds)
        return StepResult.ok("Application pool stopped" if stopped else "No application pool found")

    def _remove_website(self, run: UninstallRun) -> StepResult:
        try:
            removed = self.iis.remove_site(run.request.site_name)
        except IISError as exc:
            return StepResult.fail(f"Could not remove IIS website: {exc}")
        return StepResult.ok(f"Removed: {', '.join(removed)}" if removed else "No IIS objects found")

    def _drop_database(self, run: UninstallRun) -> StepResult:
        server = run.request.database_server or run.installation.database_server
        database = run.request.database_name or run.installation.database_name
        if not server or not database:
            return StepResult.fail("Database removal warning: no database recorded for this site")
        try:
            dropped = self.database.drop_database(server, database)
        except DatabaseError as exc:
            return StepResult.fail(f"Database removal warning: {exc}")
        return StepResult.ok("Database dropped successfully" if dropped else "Database not found")

    def _delete_web_files(self, run: UninstallRun) -> StepResult:
        path = run.install_path
        if path is None:
            return StepResult.ok("No install path recorded")
        keep = PROTECTED_DIRS if run.request.keep_user_data else ()
        report = remove_tree(path, keep=keep)
        if report.failed:
            return StepResult.fail(
                f"{len(report.failed)} web application file(s) could not be removed from {path}"
            )
        return StepResult.ok(f"Removed {report.removed} file(s), kept {report.kept}")

    def _delete_service_files(self, run: UninstallRun) -> StepResult:
        path = run.install_path
        if path is None:
            return StepResult.ok("No install path recorded")
        report = remove_tree(path / SERVICE_DIR_NAME)
        if report.failed:
            return StepResult.fail(f"{len(report.failed)} service file(s) could not be removed")
        return StepResult.ok(f"Removed {report.removed} service file(s)")

    def _delete_tool_files(self, run: UninstallRun) -> StepResult:
        report = remove_tree(self.config.tool_dir, defer=self.instances.schedule_deferred_delete)
        run.deferred.extend(report.deferred)
        message = f"Removed {report.removed} installer file(s)"
        if report.deferred:
            message += f"; {len(report.deferred)} scheduled for removal at restart"
        return StepResult.ok(message)

    def _remove_store_entries(self, run: UninstallRun) -> StepResult:
        try:
            removed = self.instances.remove_instance(run.request.site_name)
        except StoreError as exc:
            return StepResult.fail(f"Could not remove registry entries: {exc}")
        return StepResult.ok(f"Removed {len(removed)} registry key(s)")

    def _verify(self, run: UninstallRun) -> StepResult:
        site = run.request.site_name
        orphans: list[str] = []
        if self.instances.get_program(site) is not None:
            orphans.append(ORPHAN_PROGRAM_ENTRY)
        if self.instances.get_record(site) is not None:
            orphans.append(ORPHAN_RECORD)
        try:
            if self.service.exists(run.service_name):
                orphans.append(ORPHAN_SERVICE)
        except ServiceError as exc:
            LOGGER.warning("Could not verify service removal: %s", exc)
        try:
            state = self.iis.site_state(site)
        except IISError as exc:
            LOGGER.warning("Could not verify IIS removal: %s", exc)
            state = set()
        if "ROOT_WEBSITE_EXISTS" in state:
            orphans.append(ORPHAN_WEBSITE)
        if "APP_EXISTS" in state:
            orphans.append(ORPHAN_APPLICATION)

        try:
            queued = {item.lower() for item in self.instances.pending_deletes()}
        except StoreError as exc:
            LOGGER.warning("Could not read the restart deletion queue: %s", exc)
            queued = set()
        path = run.install_path
        # Reported even when user data was kept on purpose.
        if path is not None and _left_behind(path, queued):
            orphans.append(ORPHAN_WEB_FILES)
        if path is not None and _left_behind(path / SERVICE_DIR_NAME, queued):
            orphans.append(ORPHAN_SERVICE_FILES)

        warnings: list[str] = []
        scheduled = [item for item in run.deferred if item.lower() in queued]
        if scheduled:
            warnings.append(f"{len(scheduled)} file(s) scheduled for removal at restart")
        run.orphans = orphans
        if orphans:
            warnings.append(f"Found {len(orphans)} orphaned items: {', '.join(orphans)}")
            return StepResult.ok("Verification found leftovers", warnings=warnings)
        return StepResult.ok("All components removed", warnings=warnings)

    # ------------------------------------------------------------------
    def _is_last_instance(self, run: UninstallRun) -> bool:
        site = run.request.site_name.lower()
        others = [name for name in self.instances.list_sites() if name.lower() != site]
        if others:
            return False
        prefix = f"{self.instances.product_name}_".lower()
        for _, key_name, _ in self.instances.list_programs():
            lowered = key_name.lower()
            if lowered != prefix + site:
                return False
        return True

    @contextmanager
    def _lock(
        self,
        guard: AbstractContextManager[LockHandle] | None,
        op: OperationScope | None,
    ) -> Iterator[None]:
        with guard if guard is not None else nullcontext() as handle:
            if op is not None and handle is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            yield


__all__ = [
    "DEMO_MESSAGE",
    "NOT_FOUND_MESSAGE",
    "PROTECTED_DIRS",
    "RemovalReport",
    "UninstallOrchestrator",
    "UninstallRequest",
    "UninstallResult",
    "UninstallRun",
    "remove_tree",
]
