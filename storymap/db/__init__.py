"""
Storymap Database Package

Storage layer with SQLite and PostgreSQL backends.
"""

from storymap.db.database import (
    Database,
    DatabaseProtocol,
    SQLiteDatabase,
    PostgresDatabase,
    get_database,
)
from storymap.db.schema import SCHEMA_SQLITE, SCHEMA_POSTGRES

__all__ = [
    "Database",
    "DatabaseProtocol",
    "SQLiteDatabase",
    "PostgresDatabase",
    "get_database",
    "SCHEMA_SQLITE",
    "SCHEMA_POSTGRES",
]
