"""Hierarchical key/value configuration store.

The store mirrors the shape of the host's registry: backslash-separated key
paths (``SOFTWARE\\EcommerceStarter\\DemoShop``) each holding a set of named
values. Key lookups are case-insensitive while the original spelling is kept
for display. Each *view* (``64`` and ``32`` by default, like the two registry
views of a 64-bit host) is persisted as its own YAML document::

    keys:
      SOFTWARE\\EcommerceStarter: {}
      SOFTWARE\\EcommerceStarter\\DemoShop:
        SiteName: DemoShop
        LocalhostPort: 8080

Writes are atomic (temporary file plus ``os.replace``) and, when a
:class:`~storectl.locking.LockManager` is supplied, serialised per view so
concurrent commands targeting different sites do not lose each other's
updates.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager, nullcontext
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage storectl state. Install with `pip install storectl`."
    ) from exc

from ..locking import LockManager

StoreValue = str | int | list[str]

DEFAULT_VIEWS = ("64", "32")


class StoreError(RuntimeError):
    """Raised when configuration store operations fail."""


def normalize_key(path: str) -> str:
    """Return *path* with consistent separators and no stray backslashes."""
    parts = [segment for segment in path.replace("/", "\\").split("\\") if segment.strip()]
    if not parts:
        raise StoreError("Store key path must be a non-empty string.")
    return "\\".join(segment.strip() for segment in parts)


def join_key(*segments: str) -> str:
    """Join key segments using the store separator."""
    return normalize_key("\\".join(segments))


@dataclass(frozen=True)
class ConfigStore:
    """One view of the hierarchical store persisted as YAML."""

    root: Path
    view: str = "64"
    locks: LockManager | None = None

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    @property
    def path(self) -> Path:
        """Return the YAML document backing this view."""
        return self.root / f"view-{self.view}.yml"

    def ensure_root(self) -> None:
        """Create the store directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------
    def read_keys(self) -> dict[str, dict[str, Any]]:
        """Return every key with its values (empty mapping if the view is missing)."""
        if not self.path.exists():
            return {}
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StoreError(f"Failed to parse store file {self.path}: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, Mapping):
            raise StoreError(f"Store file {self.path} must contain a mapping.")
        raw_keys = data.get("keys", {})
        if not isinstance(raw_keys, Mapping):
            raise StoreError(f"Store file {self.path} has a malformed 'keys' section.")
        keys: dict[str, dict[str, Any]] = {}
        for key, values in raw_keys.items():
            keys[normalize_key(str(key))] = dict(values) if isinstance(values, Mapping) else {}
        return keys

    def key_exists(self, path: str) -> bool:
        """Return ``True`` when *path* exists in this view."""
        return _find(self.read_keys(), path) is not None

    def read_values(self, path: str) -> dict[str, Any] | None:
        """Return a copy of the values stored under *path* or ``None``."""
        keys = self.read_keys()
        actual = _find(keys, path)
        if actual is None:
            return None
        return deepcopy(keys[actual])

    def get_value(self, path: str, name: str, default: object | None = None) -> Any:
        """Return the value *name* under *path* (case-insensitive) or *default*."""
        values = self.read_values(path)
        if values is None:
            return default
        actual = _find(values, name)
        return default if actual is None else values[actual]

    def list_subkeys(self, path: str) -> list[str]:
        """Return the names of the immediate children of *path*."""
        prefix = normalize_key(path).lower() + "\\"
        children: dict[str, str] = {}
        for key in self.read_keys():
            if not key.lower().startswith(prefix):
                continue
            child = key[len(prefix) :].split("\\", 1)[0]
            children.setdefault(child.lower(), child)
        return sorted(children.values(), key=str.lower)

    # ------------------------------------------------------------------
    # Write helpers
    # ------------------------------------------------------------------
    def set_values(self, path: str, values: Mapping[str, StoreValue]) -> None:
        """Create *path* if needed and assign every entry of *values*."""
        with self._mutation() as keys:
            actual = _ensure_key(keys, path)
            _assign(keys[actual], values, overwrite=True)

    def set_missing_values(self, path: str, values: Mapping[str, StoreValue]) -> list[str]:
        """Assign only the entries of *values* that are absent; return their names."""
        with self._mutation() as keys:
            actual = _ensure_key(keys, path)
            return _assign(keys[actual], values, overwrite=False)

    def delete_values(self, path: str, names: Iterable[str]) -> list[str]:
        """Delete the named values under *path*; return the names removed."""
        removed: list[str] = []
        with self._mutation() as keys:
            actual = _find(keys, path)
            if actual is None:
                return removed
            for name in names:
                existing = _find(keys[actual], name)
                if existing is not None:
                    del keys[actual][existing]
                    removed.append(existing)
        return removed

    def delete_key(self, path: str) -> bool:
        """Delete *path* and its subtree; the parent key is left untouched."""
        target = normalize_key(path).lower()
        with self._mutation() as keys:
            doomed = [
                key
                for key in keys
                if key.lower() == target or key.lower().startswith(target + "\\")
            ]
            for key in doomed:
                del keys[key]
        return bool(doomed)

    # ------------------------------------------------------------------
    @contextmanager
    def _mutation(self) -> Iterator[dict[str, dict[str, Any]]]:
        guard = self.locks.store_lock(self.view) if self.locks is not None else nullcontext()
        with guard:
            keys = self.read_keys()
            yield keys
            self._write(keys)

    def _write(self, keys: Mapping[str, Mapping[str, Any]]) -> None:
        self.ensure_root()
        path = self.path
        payload = {"keys": {key: dict(values) for key, values in sorted(keys.items())}}
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False, allow_unicode=True)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)


def open_views(
    root: Path,
    *,
    views: Iterable[str] = DEFAULT_VIEWS,
    locks: LockManager | None = None,
) -> list[ConfigStore]:
    """Return one :class:`ConfigStore` per view, primary view first."""
    return [ConfigStore(root, view=view, locks=locks) for view in views]


def _find(mapping: Mapping[str, Any], name: str) -> str | None:
    try:
        wanted = normalize_key(name).lower()
    except StoreError:
        return None
    for key in mapping:
        if key.lower() == wanted:
            return key
    return None


def _ensure_key(keys: dict[str, dict[str, Any]], path: str) -> str:
    segments = normalize_key(path).split("\\")
    actual = ""
    for index in range(1, len(segments) + 1):
        candidate = "\\".join(segments[:index])
        existing = _find(keys, candidate)
        if existing is None:
            keys[candidate] = {}
            existing = candidate
        actual = existing
    return actual


def _assign(
    target: dict[str, Any],
    values: Mapping[str, StoreValue],
    *,
    overwrite: bool,
) -> list[str]:
    written: list[str] = []
    for name, value in values.items():
        if isinstance(value, bool) or not isinstance(value, (str, int, list)):
            raise StoreError(f"Unsupported store value type for '{name}': {type(value).__name__}.")
        existing = _find(target, name)
        if existing is not None and not overwrite:
            continue
        if existing is not None and existing != name:
            del target[existing]
        target[name] = list(value) if isinstance(value, list) else value
        written.append(name)
    return written


__all__ = [
    "DEFAULT_VIEWS",
    "ConfigStore",
    "StoreError",
    "StoreValue",
    "join_key",
    "normalize_key",
    "open_views",
]
