"""SQLite connection handling and pooling."""

from __future__ import annotations

from .pool import ConnectionPool, PoolConfig, PooledConnection
from .store import StoreConnection, open_connection, sqlite_connector

__all__ = [
    "ConnectionPool",
    "PoolConfig",
    "PooledConnection",
    "StoreConnection",
    "open_connection",
    "sqlite_connector",
]
