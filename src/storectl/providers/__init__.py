"""Providers wrapping the host tools storectl drives."""
from __future__ import annotations

from .database import (
    DatabaseError,
    DatabaseStats,
    SchemaResult,
    SqlServerProvider,
    build_connection_string,
    parse_connection_string,
)
from .iis import IISError, IISProvider, SiteBinding
from .service import ServiceError, WindowsServiceProvider

__all__ = [
    "DatabaseError",
    "DatabaseStats",
    "IISError",
    "IISProvider",
    "SchemaResult",
    "ServiceError",
    "SiteBinding",
    "SqlServerProvider",
    "WindowsServiceProvider",
    "build_connection_string",
    "parse_connection_string",
]
