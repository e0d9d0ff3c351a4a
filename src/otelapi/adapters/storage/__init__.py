"""Storage adapters implementing core ports."""

from otelapi.adapters.storage.database import Database
from otelapi.adapters.storage.pool import ConnectionPool, SQLiteConnector
from otelapi.adapters.storage.users import UserRepository

__all__ = [
    "ConnectionPool",
    "Database",
    "SQLiteConnector",
    "UserRepository",
]
