"""Windows service provider for the per-site background worker."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from ..runner import CommandError, CommandResult, CommandRunner, raise_for_status
from ..templates import TemplateEngine
from .iis import POWERSHELL_ARGS

SERVICE_EXECUTABLE = "EcommerceStarter.WindowsService.exe"
# sc.exe query exit status for an unknown service.
ERROR_SERVICE_DOES_NOT_EXIST = 1060


class ServiceError(RuntimeError):
    """Raised when service control operations fail."""


@dataclass(slots=True)
class WindowsServiceProvider:
    """Register, start, stop and remove per-site Windows services."""

    runner: CommandRunner
    templates: TemplateEngine
    product_name: str = "EcommerceStarter"
    powershell_bin: str = "powershell.exe"
    sc_bin: str = "sc.exe"
    settle_seconds: int = 2

    def service_name(self, site_name: str) -> str:
        """Return the service name derived from *site_name*."""
        return f"{self.product_name}-{site_name}"

    def display_name(self, site_name: str) -> str:
        """Return the human-facing service display name."""
        return f"{self.product_name} Background Service ({site_name})"

    def exists(self, service_name: str) -> bool:
        """Return ``True`` when the service control manager knows *service_name*."""
        try:
            result = self.runner.run(self.sc_bin, ["query", service_name])
        except CommandError as exc:
            raise ServiceError(f"Querying service '{service_name}' failed: {exc}") from exc
        if result.returncode == 0:
            return True
        if result.returncode == ERROR_SERVICE_DOES_NOT_EXIST or "1060" in result.stdout:
            return False
        raise_for_status(result, f"{self.sc_bin} query {service_name}", ServiceError)
        return False

    def remove(self, service_name: str) -> bool:
        """Stop and delete *service_name*; return ``False`` when it was absent."""
        result = self._powershell(
            "service/remove.ps1.j2",
            {
                "service_name": service_name,
                "sc_bin": self.sc_bin,
                "settle_seconds": self.settle_seconds,
            },
            f"Removing service '{service_name}'",
        )
        return "SERVICE_REMOVED" in result.stdout

    def install(
        self,
        site_name: str,
        service_dir: Path,
        *,
        company_name: str,
    ) -> str:
        """Register and start the service for *site_name*; return its name."""
        service_name = self.service_name(site_name)
        executable = Path(service_dir) / SERVICE_EXECUTABLE
        description = (
            f"Processes analytics, auditing, and monitoring for {company_name} ({site_name})"
        )
        self._powershell(
            "service/install.ps1.j2",
            {
                "service_name": service_name,
                "sc_bin": self.sc_bin,
                "executable": str(executable),
                "display_name": self.display_name(site_name),
                "description": description,
            },
            f"Installing service '{service_name}'",
        )
        return service_name

    # ------------------------------------------------------------------
    def _powershell(
        self,
        template: str,
        context: Mapping[str, object],
        error_prefix: str,
    ) -> CommandResult:
        script = self.templates.render_to_string(template, context)
        try:
            result = self.runner.run(self.powershell_bin, POWERSHELL_ARGS, script=script)
        except CommandError as exc:
            raise ServiceError(f"{error_prefix} could not run: {exc}") from exc
        return raise_for_status(result, error_prefix, ServiceError)


__all__ = ["SERVICE_EXECUTABLE", "ServiceError", "WindowsServiceProvider"]
