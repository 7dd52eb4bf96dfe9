"""Typer-powered command line for ``storectl``.

Every command builds its collaborators from :class:`RuntimeContext`, wraps
its work in a structured-log operation, and maps failures onto the exit codes
in :mod:`storectl.exit_codes`.
"""
from __future__ import annotations

import re
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__, get_version
from .config import AppConfig, ConfigError, load_config
from .crypto import FernetSecretCodec, SecretCodecError
from .exit_codes import ExitCode
from .install import InstallOrchestrator, InstallRequest, InstallResult
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .migrations import MigrationEngine, default_migrations
from .pipeline import ProgressEvent, ProgressObserver
from .providers import IISProvider, SqlServerProvider, WindowsServiceProvider
from .reconciler import ExistingInstallation, InstallationReconciler, upgrade_status
from .runner import SubprocessRunner
from .state import InstanceStore, StoreError, open_views
from .templates import TemplateEngine
from .uninstall import UninstallOrchestrator, UninstallRequest, UninstallResult

console = Console()

SITE_NAME_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]{0,63}")

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to storectl's YAML config file.",
)
SITE_NAME_OPTION = typer.Option(
    ...,
    "--sitename",
    "-s",
    help="Site name identifying the instance.",
)
DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Replay the progress sequence without changing anything.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of a table.",
)
YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Skip the confirmation prompt and proceed non-interactively.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        EcommerceStarter multi-instance deployment CLI.

        Installs, reconfigures, detects and removes side-by-side instances
        of the storefront, each identified by its site name.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    instances: InstanceStore
    iis: IISProvider
    service: WindowsServiceProvider
    database: SqlServerProvider
    migrations: MigrationEngine
    reconciler: InstallationReconciler
    installer: InstallOrchestrator
    uninstaller: UninstallOrchestrator


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    instances = InstanceStore(
        stores=open_views(config.store_dir, locks=locks),
        codec=FernetSecretCodec(config.key_file),
        product_name=config.product_name,
    )
    runner = SubprocessRunner(script_dir=config.runtime_dir)
    iis = IISProvider(runner, templates, powershell_bin=config.tools.powershell_bin)
    service = WindowsServiceProvider(
        runner,
        templates,
        product_name=config.product_name,
        powershell_bin=config.tools.powershell_bin,
        sc_bin=config.tools.sc_bin,
    )
    database = SqlServerProvider(runner, templates, sqlcmd_bin=config.database.sqlcmd_bin)
    migrations = MigrationEngine(instances, default_migrations(instances))
    reconciler = InstallationReconciler(
        instances, database, probe_timeout=config.database.probe_timeout
    )
    installer = InstallOrchestrator(
        config,
        instances=instances,
        database=database,
        iis=iis,
        service=service,
        migrations=migrations,
        templates=templates,
        locks=locks,
    )
    uninstaller = UninstallOrchestrator(
        config,
        instances=instances,
        reconciler=reconciler,
        database=database,
        iis=iis,
        service=service,
        locks=locks,
    )
    runtime = RuntimeContext(
        config=config,
        locks=locks,
        logger=logger,
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
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the storectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"storectl {get_version()}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _validate_site_name(name: str) -> str:
    """Validate and normalise a site name."""
    normalised = name.strip()
    if not normalised:
        raise ValueError("Site name must be a non-empty string.")
    if not SITE_NAME_PATTERN.fullmatch(normalised):
        raise ValueError(
            "Site name must start with a letter or digit and contain only "
            "letters, digits, '.', '_' or '-' (max 64 characters)."
        )
    return normalised


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: list[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _site_name_or_exit(op: OperationScope, name: str) -> str:
    try:
        return _validate_site_name(name)
    except ValueError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)


def _progress_printer() -> ProgressObserver:
    """Return an observer printing one line per progress event."""

    def _print(event: ProgressEvent) -> None:
        if event.message.startswith("Warning:"):
            style = "yellow"
        elif event.completed:
            style = "green"
        else:
            style = "cyan"
        badge = escape(f"[{event.percentage:>3}%]")
        console.print(f"[{style}]{badge}[/{style}] {escape(event.message)}")

    return _print


def _print_warnings(warnings: list[str]) -> None:
    for warning in warnings:
        console.print(f"  [yellow]warning:[/yellow] {escape(warning)}")


def _finish_install(op: OperationScope, result: InstallResult, *, action: str) -> None:
    context = result.to_dict()
    if not result.success:
        _print_warnings(result.warnings)
        rc = ExitCode.ENVIRONMENT if result.failed_stage == "prerequisites" else ExitCode.PROVIDER
        stage = f" at stage '{result.failed_stage}'" if result.failed_stage else ""
        message = f"{action} failed{stage}: {result.error_message}"
        console.print(f"[red]{escape(message)}[/red]")
        op.error(message, errors=[result.error_message], rc=int(rc), context=context)
        raise typer.Exit(code=int(rc))

    if result.web_app_url:
        console.print(f"Site available at [bold]{escape(result.web_app_url)}[/bold]")
    if result.warnings:
        console.print(f"[yellow]{escape(result.message)} (with warnings)[/yellow]")
        _print_warnings(result.warnings)
        op.warning(result.message, warnings=result.warnings, changed=1, context=context)
        return
    console.print(f"[green]{escape(result.message)}[/green]")
    op.success(result.message, changed=0 if "Demo" in result.message else 1, context=context)


def _finish_uninstall(op: OperationScope, result: UninstallResult) -> None:
    context = result.to_dict()
    if not result.success:
        _command_error(op, result.error_message, rc=ExitCode.ENVIRONMENT)
    if result.deferred:
        console.print(
            f"[yellow]{len(result.deferred)} path(s) will be removed after the next reboot.[/yellow]"
        )
    if result.warnings:
        console.print(f"[yellow]{escape(result.message)} (with warnings)[/yellow]")
        _print_warnings(result.warnings)
        op.warning(result.message, warnings=result.warnings, changed=1, context=context)
        return
    console.print(f"[green]{escape(result.message)}[/green]")
    op.success(result.message, changed=1, context=context)


def _health_label(installation: ExistingInstallation) -> str:
    if installation.is_healthy:
        return "[green]healthy[/green]"
    return f"[red]{escape('; '.join(installation.issues))}[/red]"


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------
@app.command()
def install(
    ctx: typer.Context,
    site_name: str = SITE_NAME_OPTION,
    company_name: str | None = typer.Option(
        None,
        "--company",
        help="Company name shown by the storefront (defaults to the site name).",
    ),
    install_path: Path | None = typer.Option(
        None,
        "--install-path",
        file_okay=False,
        help="Target directory (defaults to C:/inetpub/<Product>/<site>).",
    ),
    database_name: str | None = typer.Option(
        None,
        "--database-name",
        help="Database name (defaults to <Product>_<site>).",
    ),
    database_server: str | None = typer.Option(
        None,
        "--database-server",
        help="SQL Server instance (defaults to the configured server).",
    ),
    use_existing_database: bool = typer.Option(
        False,
        "--existing-database",
        help="Upgrade an existing database instead of creating a new one.",
    ),
    admin_email: str | None = typer.Option(
        None,
        "--admin-email",
        help="Email of the first administrator (new databases only).",
    ),
    admin_password: str | None = typer.Option(
        None,
        "--admin-password",
        help="Password of the first administrator (new databases only).",
    ),
    enable_https: bool = typer.Option(
        False,
        "--https",
        help="Bind HTTPS with a generated self-signed certificate.",
    ),
    port: int | None = typer.Option(
        None,
        "--port",
        min=1,
        max=65535,
        help="Requested port; the next free port is used when it is taken.",
    ),
    web_app_url: str | None = typer.Option(
        None,
        "--web-app-url",
        help="Public URL to record instead of the localhost binding.",
    ),
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Run only the prerequisite checks and skip every mutating stage.",
    ),
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Install a new site, or redeploy one that already exists."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "install",
        args={"site_name": site_name, "dry_run": dry_run, "debug": debug},
        target={"kind": "instance", "name": site_name},
    ) as op:
        site = _site_name_or_exit(op, site_name)
        product = runtime.config.product_name
        request = InstallRequest(
            site_name=site,
            company_name=company_name or site,
            install_path=install_path or Path("C:/inetpub") / product / site,
            database_name=database_name or f"{product}_{site}",
            database_server=database_server or "",
            admin_email=admin_email,
            admin_password=admin_password,
            use_existing_database=use_existing_database,
            enable_https=enable_https,
            port=port,
            web_app_url=web_app_url,
            debug=debug,
            dry_run=dry_run,
        )
        op.args.update(request.to_dict())
        console.print(f"Installing [bold]{escape(site)}[/bold] into {escape(str(request.install_path))}")
        try:
            result = runtime.installer.install(request, observer=_progress_printer(), op=op)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        _finish_install(op, result, action="Installation")


@app.command()
def reconfigure(
    ctx: typer.Context,
    site_name: str = SITE_NAME_OPTION,
    company_name: str | None = typer.Option(
        None,
        "--company",
        help="New company name (defaults to the recorded one).",
    ),
    port: int | None = typer.Option(
        None,
        "--port",
        min=1,
        max=65535,
        help="New port (defaults to the recorded one).",
    ),
    enable_https: bool | None = typer.Option(
        None,
        "--https/--no-https",
        help="Switch the binding scheme (defaults to the current one).",
    ),
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Re-run the install pipeline against an installed site, keeping its data."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "reconfigure",
        args={
            "site_name": site_name,
            "company_name": company_name,
            "port": port,
            "enable_https": enable_https,
            "dry_run": dry_run,
        },
        target={"kind": "instance", "name": site_name},
    ) as op:
        site = _site_name_or_exit(op, site_name)
        installation = runtime.reconciler.find(site, probe=False)
        if installation is None:
            _command_error(op, f"Site '{site}' is not installed.", rc=ExitCode.ENVIRONMENT)
        try:
            result = runtime.installer.reconfigure(
                installation,
                company_name=company_name,
                port=port,
                enable_https=enable_https,
                dry_run=dry_run,
                observer=_progress_printer(),
                op=op,
            )
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        _finish_install(op, result, action="Reconfiguration")


@app.command()
def uninstall(
    ctx: typer.Context,
    site_name: str = SITE_NAME_OPTION,
    remove_database: bool = typer.Option(
        False,
        "--remove-database",
        help="Drop the site database as well.",
    ),
    keep_user_data: bool = typer.Option(
        False,
        "--keep-user-data",
        help="Keep uploads, logs and App_Data under the install path.",
    ),
    database_server: str | None = typer.Option(
        None,
        "--database-server",
        help="SQL Server instance holding the database (defaults to the recorded one).",
    ),
    database_name: str | None = typer.Option(
        None,
        "--database-name",
        help="Database to drop with --remove-database (defaults to the recorded one).",
    ),
    dry_run: bool = DRY_RUN_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Remove one site without touching any other instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "uninstall",
        args={
            "site_name": site_name,
            "remove_database": remove_database,
            "keep_user_data": keep_user_data,
            "database_server": database_server,
            "database_name": database_name,
            "dry_run": dry_run,
        },
        target={"kind": "instance", "name": site_name},
    ) as op:
        site = _site_name_or_exit(op, site_name)
        if not dry_run and not yes:
            detail = " and its database" if remove_database else ""
            if not typer.confirm(f"Uninstall site '{site}'{detail}?", default=False):
                console.print("[yellow]Uninstall cancelled.[/yellow]")
                op.warning("Uninstall cancelled by operator.", warnings=["user-cancelled"])
                return
        request = UninstallRequest(
            site_name=site,
            remove_database=remove_database,
            keep_user_data=keep_user_data,
            database_server=database_server,
            database_name=database_name,
            dry_run=dry_run,
        )
        try:
            result = runtime.uninstaller.uninstall(
                request, observer=_progress_printer(), op=op
            )
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        _finish_uninstall(op, result)


@app.command("uninstall-tool")
def uninstall_tool(
    ctx: typer.Context,
    dry_run: bool = DRY_RUN_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Remove the deployment tool once every site is gone."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "uninstall-tool",
        args={"dry_run": dry_run},
        target={"kind": "tool", "path": str(runtime.config.tool_dir)},
    ) as op:
        if not dry_run and not yes:
            if not typer.confirm("Remove the deployment tool?", default=False):
                console.print("[yellow]Uninstall cancelled.[/yellow]")
                op.warning("Uninstall cancelled by operator.", warnings=["user-cancelled"])
                return
        try:
            result = runtime.uninstaller.uninstall_tool(dry_run=dry_run, op=op)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        if not result.success:
            _command_error(op, result.error_message, rc=ExitCode.VALIDATION)
        _finish_uninstall(op, result)


@app.command()
def detect(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
    no_probe: bool = typer.Option(
        False,
        "--no-probe",
        help="Skip the live database probe.",
    ),
) -> None:
    """List installed sites and their health."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "detect",
        args={"json": json_output, "probe": not no_probe},
        target={"kind": "instances"},
    ) as op:
        try:
            installations = runtime.reconciler.discover(probe=not no_probe)
        except StoreError as exc:
            _command_error(op, f"Unable to read the configuration store: {exc}", rc=ExitCode.ENVIRONMENT)
        unhealthy = [item.site_name for item in installations if not item.is_healthy]

        if json_output:
            entries = []
            for item in installations:
                entry = item.to_dict()
                entry["upgrade_status"] = upgrade_status(item, __version__)
                entries.append(entry)
            console.print_json(data={"instances": entries})
        elif not installations:
            console.print("No installations found.")
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Site", style="bold")
            table.add_column("Version")
            table.add_column("Action")
            table.add_column("Path")
            table.add_column("URL")
            table.add_column("Database")
            table.add_column("Health")
            for item in installations:
                database = (
                    f"{item.database_server}/{item.database_name}"
                    if item.database_name
                    else "-"
                )
                table.add_row(
                    escape(item.site_name),
                    item.version or "-",
                    upgrade_status(item, __version__),
                    escape(item.install_path or "-"),
                    escape(item.web_url or "-"),
                    escape(database),
                    _health_label(item),
                )
            console.print(table)

        context = {"count": len(installations), "unhealthy": unhealthy}
        if unhealthy:
            op.warning(
                "Detected installations with issues.",
                warnings=[f"{name}: unhealthy" for name in unhealthy],
                context=context,
            )
            return
        op.success("Detected installations.", context=context)


@app.command()
def migrate(
    ctx: typer.Context,
    site_name: str = SITE_NAME_OPTION,
    check: bool = typer.Option(
        False,
        "--check",
        help="Only report pending migrations.",
    ),
) -> None:
    """Bring the configuration record of a site to the latest schema."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "migrate",
        args={"site_name": site_name, "check": check},
        target={"kind": "instance", "name": site_name},
    ) as op:
        site = _site_name_or_exit(op, site_name)
        engine = runtime.migrations
        if check:
            current = engine.current_version(site)
            if current is None:
                _command_error(
                    op,
                    f"Unable to read the schema version of '{site}'.",
                    rc=ExitCode.ENVIRONMENT,
                )
            pending = engine.pending(site)
            if not pending:
                console.print(f"[green]{escape(site)}: schema v{current} is up to date.[/green]")
            else:
                console.print(f"{escape(site)}: schema v{current}, {len(pending)} pending:")
                for migration in pending:
                    console.print(f"  v{migration.version} {escape(migration.description)}")
            op.success(
                "Migration check complete.",
                context={
                    "current_version": current,
                    "latest_version": engine.latest_version,
                    "pending": [migration.version for migration in pending],
                },
            )
            return

        try:
            with runtime.locks.instance_lock(site) as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                outcome = engine.run(site, op=op)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except (StoreError, SecretCodecError) as exc:
            _command_error(op, f"Migration failed: {exc}", rc=ExitCode.ENVIRONMENT)

        if not outcome.success:
            _command_error(
                op,
                f"{outcome.message}: {outcome.error_message}",
                rc=ExitCode.PROVIDER,
                errors=[outcome.error_message],
            )
        console.print(f"[green]{escape(outcome.message)}[/green]")
        op.success(
            outcome.message,
            changed=outcome.applied_count,
            context=outcome.to_dict(),
        )


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = ", ".join(f"{name}={item}" for name, item in value.items())
            else:
                rendered = str(value)
            table.add_row(key, escape(rendered))

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
