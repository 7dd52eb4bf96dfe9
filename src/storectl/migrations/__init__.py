"""Versioned migrations for instance records."""
from __future__ import annotations

from .builtin import EncryptConnectionString, InitialSchema, default_migrations
from .engine import (
    UP_TO_DATE_MESSAGE,
    Migration,
    MigrationEngine,
    MigrationError,
    MigrationOutcome,
)

__all__ = [
    "EncryptConnectionString",
    "InitialSchema",
    "Migration",
    "MigrationEngine",
    "MigrationError",
    "MigrationOutcome",
    "UP_TO_DATE_MESSAGE",
    "default_migrations",
]
