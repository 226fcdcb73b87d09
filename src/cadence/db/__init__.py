"""Database layer."""

from cadence.db.engine import Database, open_database
from cadence.db.models import Base, KVEntry

__all__ = [
    "Base",
    "Database",
    "KVEntry",
    "open_database",
]
