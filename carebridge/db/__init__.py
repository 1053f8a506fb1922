"""Database helpers for CareBridge."""

from __future__ import annotations

from .config import DatabaseSettings, get_database_settings
from .models import Base
from .session import Database, create_engine_from_settings, database

__all__ = [
    "Base",
    "Database",
    "DatabaseSettings",
    "create_engine_from_settings",
    "database",
    "get_database_settings",
]
