"""Persistent configuration store and per-instance accessors."""
from __future__ import annotations

from .instances import InstanceRecord, InstanceStore, normalize_display_version
from .store import DEFAULT_VIEWS, ConfigStore, StoreError, join_key, normalize_key, open_views

__all__ = [
    "DEFAULT_VIEWS",
    "ConfigStore",
    "InstanceRecord",
    "InstanceStore",
    "StoreError",
    "join_key",
    "normalize_display_version",
    "normalize_key",
    "open_views",
]
