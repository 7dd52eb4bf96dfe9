"""IIS provider driving the WebAdministration PowerShell module."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from ..runner import CommandError, CommandResult, CommandRunner, raise_for_status
from ..templates import TemplateEngine
from ..tls import SiteCertificate

LOGGER = logging.getLogger(__name__)

POWERSHELL_ARGS = ("-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass", "-File")


class IISError(RuntimeError):
    """Raised when IIS configuration fails."""


@dataclass(slots=True)
class SiteBinding:
    """Outcome of (re)creating a site."""

    site_name: str
    port: int
    scheme: str = "http"
    warnings: list[str] = field(default_factory=list)

    @property
    def url(self) -> str:
        """Return the local URL of the site."""
        return f"{self.scheme}://localhost:{self.port}"


@dataclass(slots=True)
class IISProvider:
    """Create, stop, inspect and remove IIS application pools and sites."""

    runner: CommandRunner
    templates: TemplateEngine
    powershell_bin: str = "powershell.exe"

    def bound_ports(self, *, exclude_site: str | None = None) -> set[int]:
        """Return ports bound by IIS sites other than *exclude_site*."""
        result = self._powershell("iis/list_bindings.ps1.j2", {}, "IIS binding listing")
        excluded = exclude_site.lower() if exclude_site else None
        ports: set[int] = set()
        for line in result.stdout.splitlines():
            parts = line.strip().split("|")
            if len(parts) < 2:
                continue
            if excluded is not None and parts[0].strip().lower() == excluded:
                continue
            try:
                ports.add(int(parts[1]))
            except ValueError:
                continue
        return ports

    def configure_site(
        self,
        site_name: str,
        physical_path: Path | str,
        port: int,
        *,
        certificate: SiteCertificate | None = None,
    ) -> SiteBinding:
        """Recreate the pool and site for *site_name* bound to *port*."""
        context: dict[str, object] = {
            "site_name": site_name,
            "physical_path": str(physical_path),
            "port": int(port),
            "certificate_path": str(certificate.pfx_path) if certificate else "",
            "certificate_password": certificate.password if certificate else "",
            "certificate_name": certificate.friendly_name if certificate else "",
        }
        result = self._powershell(
            "iis/configure_site.ps1.j2",
            context,
            f"IIS configuration for '{site_name}'",
        )
        binding = SiteBinding(site_name=site_name, port=int(port))
        for line in result.stdout.splitlines():
            text = line.strip()
            if text.startswith("SCHEME="):
                binding.scheme = text.split("=", 1)[1].strip() or "http"
            elif text.startswith("WARNING:"):
                binding.warnings.append(text[len("WARNING:") :].strip())
        return binding

    def stop_app_pool(self, site_name: str) -> bool:
        """Stop the pool for *site_name*; return ``False`` when it does not exist."""
        result = self._powershell(
            "iis/stop_pool.ps1.j2",
            {"site_name": site_name},
            f"Stopping application pool '{site_name}'",
        )
        return "POOL_STOPPED" in result.stdout

    def remove_site(self, site_name: str) -> list[str]:
        """Remove the site and pool named *site_name*; return what was removed."""
        result = self._powershell(
            "iis/remove_site.ps1.j2",
            {"site_name": site_name},
            f"Removing IIS site '{site_name}'",
        )
        removed: list[str] = []
        if "SITE_REMOVED" in result.stdout:
            removed.append("site")
        if "POOL_REMOVED" in result.stdout:
            removed.append("pool")
        return removed

    def site_state(self, site_name: str) -> set[str]:
        """Return markers for IIS objects that still exist for *site_name*."""
        result = self._powershell(
            "iis/site_state.ps1.j2",
            {"site_name": site_name},
            f"Inspecting IIS site '{site_name}'",
        )
        markers = {"ROOT_WEBSITE_EXISTS", "APP_EXISTS", "POOL_EXISTS"}
        return {line.strip() for line in result.stdout.splitlines() if line.strip() in markers}

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
            raise IISError(f"{error_prefix} could not run: {exc}") from exc
        return raise_for_status(result, error_prefix, IISError)


__all__ = ["IISError", "IISProvider", "POWERSHELL_ARGS", "SiteBinding"]
