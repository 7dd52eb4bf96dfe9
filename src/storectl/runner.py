"""Command runner abstraction for external tools.

Every interaction with the host (PowerShell, ``sc.exe``, ``sqlcmd``) goes
through a :class:`CommandRunner`. Providers build the argument list and an
optional script body; the runner writes the body to a temporary file whose
path is appended as the final argument, runs the process to completion and
returns the captured output. Tests substitute a fake runner that records the
calls and replays scripted results.
"""
from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

LOGGER = logging.getLogger(__name__)


class CommandError(RuntimeError):
    """Raised when an external command cannot be started or times out."""


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Captured outcome of one external command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """Return ``True`` when the command exited with status zero."""
        return self.returncode == 0

    @property
    def summary(self) -> str:
        """Return the most useful captured output for error messages."""
        return self.stderr.strip() or self.stdout.strip() or "no output"


class CommandRunner(Protocol):
    """Execute an external command and capture its output."""

    def run(
        self,
        executable: str,
        args: Sequence[str] = (),
        *,
        script: str | None = None,
        script_suffix: str = ".ps1",
        timeout: float | None = None,
    ) -> CommandResult:
        """Run *executable* with *args* (plus a script file when given)."""


def raise_for_status(
    result: CommandResult,
    error_prefix: str,
    error_type: type[RuntimeError] = CommandError,
) -> CommandResult:
    """Raise *error_type* when *result* has a non-zero exit status."""
    if result.returncode != 0:
        raise error_type(f"{error_prefix} failed (exit {result.returncode}): {result.summary}")
    return result


@dataclass(slots=True)
class SubprocessRunner:
    """:class:`CommandRunner` implementation backed by :mod:`subprocess`."""

    script_dir: Path | None = None

    def run(
        self,
        executable: str,
        args: Sequence[str] = (),
        *,
        script: str | None = None,
        script_suffix: str = ".ps1",
        timeout: float | None = None,
    ) -> CommandResult:
        """Run the command, writing *script* to a temporary file when supplied."""
        command = [executable, *args]
        script_path: Path | None = None
        if script is not None:
            directory = None
            if self.script_dir is not None:
                self.script_dir.mkdir(parents=True, exist_ok=True)
                directory = str(self.script_dir)
            fd, name = tempfile.mkstemp(prefix="storectl_", suffix=script_suffix, dir=directory)
            script_path = Path(name)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(script)
            command.append(str(script_path))

        LOGGER.debug("Running %s", " ".join(command[:2]))
        try:
            completed = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise CommandError(f"{executable} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandError(f"{executable} timed out after {timeout}s") from exc
        finally:
            if script_path is not None:
                script_path.unlink(missing_ok=True)

        return CommandResult(
            args=tuple(command),
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )


__all__ = [
    "CommandError",
    "CommandResult",
    "CommandRunner",
    "SubprocessRunner",
    "raise_for_status",
]
