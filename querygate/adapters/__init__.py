"""
Engine adapters for QueryGate.

Each adapter speaks one engine and exposes the BaseAdapter capability
contract; AdapterRegistry hands out one live adapter per data source.
"""

from querygate.adapters.base import (
    AdapterError,
    BaseAdapter,
    ConnectionError,
    QueryError,
    QueryParseError,
)
from querygate.adapters.mongodb_adapter import MongoDBAdapter
from querygate.adapters.mysql_adapter import MySQLAdapter
from querygate.adapters.postgres_adapter import PostgresAdapter
from querygate.adapters.registry import (
    ENGINES,
    AdapterRegistry,
    config_signature,
    resolve_engine,
)

__all__ = [
    "AdapterError",
    "AdapterRegistry",
    "BaseAdapter",
    "ConnectionError",
    "ENGINES",
    "MongoDBAdapter",
    "MySQLAdapter",
    "PostgresAdapter",
    "QueryError",
    "QueryParseError",
    "config_signature",
    "resolve_engine",
]
