"""Advisory file locks serialising work on the same site.

Install, uninstall, migrate and reconfigure all take ``<runtime>/<site>.lock``
for the whole run, so two invocations against one site cannot interleave
writes to its store key while different sites proceed in parallel. The tool
uninstall path additionally takes the global ``storectl.lock``.
"""
from __future__ import annotations

import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO

if os.name == "nt":  # pragma: no cover - exercised on Windows hosts only
    import msvcrt
else:
    import fcntl

GLOBAL_LOCK_NAME = "storectl.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(slots=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int


def _try_lock(handle: IO[str]) -> bool:
    try:
        if os.name == "nt":  # pragma: no cover - exercised on Windows hosts only
            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        else:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        return False
    return True


def _unlock(handle: IO[str]) -> None:
    if os.name == "nt":  # pragma: no cover - exercised on Windows hosts only
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def _safe_name(name: str) -> str:
    safe = "".join(char if char.isalnum() or char in "-_." else "_" for char in name.strip())
    if not safe:
        raise ValueError("Lock name must contain at least one usable character.")
    return safe


class LockManager:
    """Hand out per-site and global locks rooted at *run_dir*."""

    def __init__(self, run_dir: Path, default_timeout: float) -> None:
        """Remember the lock directory and default acquisition timeout."""
        self.run_dir = Path(run_dir)
        self.default_timeout = float(default_timeout)

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for the site named *name*."""
        return self.run_dir / "sites" / f"{_safe_name(name).lower()}.lock"

    @contextmanager
    def instance_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for site *name* for the duration of the block."""
        with self._acquire(self.lock_path(name), timeout) as handle:
            yield handle

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the tool-wide lock for the duration of the block."""
        with self._acquire(self.run_dir / GLOBAL_LOCK_NAME, timeout) as handle:
            yield handle

    @contextmanager
    def store_lock(self, view: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Serialise read-modify-write cycles on one configuration store view."""
        with self._acquire(self.run_dir / "store" / f"{_safe_name(view)}.lock", timeout) as handle:
            yield handle

    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else float(timeout)
        path.parent.mkdir(parents=True, exist_ok=True)
        start = time.perf_counter()
        handle = path.open("a+", encoding="utf-8")
        try:
            while not _try_lock(handle):
                if time.perf_counter() - start >= limit:
                    raise LockTimeoutError(
                        f"Timed out after {limit:.1f}s waiting for lock {path}."
                    )
                time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.perf_counter() - start) * 1000)
            handle.seek(0)
            handle.truncate()
            handle.write(json.dumps({"pid": os.getpid(), "path": str(path), "acquired": time.time()}))
            handle.flush()
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                _unlock(handle)
        finally:
            handle.close()


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
