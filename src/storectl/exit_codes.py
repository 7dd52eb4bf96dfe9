"""Exit codes returned by the storectl CLI."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes for install, uninstall and detection commands."""

    OK = 0
    # Request rejected before any mutation (bad site name, blocked uninstall).
    VALIDATION = 2
    # Host state prevents the run (missing bundle, lock timeout, no instance).
    ENVIRONMENT = 3
    # A fatal pipeline stage failed while driving an external tool.
    PROVIDER = 4
