"""
Pytest configuration and shared fixtures for QueryGate tests.

Engines are replaced by in-process fakes so the suite runs without any
database or Redis server.
"""

from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from querygate.adapters.base import BaseAdapter, ConnectionError, QueryError
from querygate.adapters.registry import AdapterRegistry
from querygate.cache import InMemoryCacheBackend, QueryCache
from querygate.core.config import Settings
from querygate.gateway import QueryGateway
from querygate.models import DataSourceConfig, QueryResult, SchemaColumn, SchemaTable
from querygate.sources import InMemoryConfigStore


# =============================================================================
# FAKE ADAPTER
# =============================================================================

class FakeAdapter(BaseAdapter):
    """
    Adapter double driven by the config's connectionOptions:

        failConnect: connect() raises ConnectionError
        failQuery:   execute_query() raises QueryError with that message
        emptyResult: execute_query() returns no rows
    """

    ENGINE = "fake"

    def __init__(self, config, settings=None):
        super().__init__(config, settings)
        self.pool_builds = 0
        self.disconnect_calls = 0
        self.queries: List[str] = []

    def connect(self) -> None:
        with self._connect_lock:
            if self._connected:
                return
            self._ensure_not_retired()
            if self.options.get("failConnect"):
                self._last_error = "connection refused"
                raise ConnectionError("Failed to connect to fake: connection refused", engine=self.ENGINE)
            self.pool_builds += 1
            self._connected = True
            self._last_error = None

    def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._connected = False

    def health_check(self) -> bool:
        return self._connected

    def get_schemas(self) -> List[str]:
        return ["public", "sales"]

    def get_tables(self, schema: Optional[str] = None) -> List[SchemaTable]:
        return [SchemaTable(name="orders", schema=schema or "public", type="table", rowCount=3, sizeBytes=8192)]

    def get_table_schema(self, table: str, schema: Optional[str] = None) -> List[SchemaColumn]:
        return [
            SchemaColumn(name="id", type="integer", nullable=False, isPrimaryKey=True),
            SchemaColumn(name="status", type="text", nullable=True),
        ]

    def execute_query(self, text: str) -> QueryResult:
        if not self._connected:
            self.connect()
        self.queries.append(text)
        if self.options.get("failQuery"):
            raise QueryError(f"fake query failed: {self.options['failQuery']}", engine=self.ENGINE)
        if self.options.get("emptyResult"):
            return QueryResult(columns=["id"], data=[], rowCount=0, duration=0.5)
        return QueryResult(
            columns=["id", "status"],
            data=[{"id": 1, "status": "paid"}, {"id": 2, "status": "open"}],
            rowCount=2,
            duration=1.25,
        )

    def preview_table(self, table: str, schema: Optional[str] = None, limit: int = 100) -> QueryResult:
        return self.execute_query(f"preview {table} {limit}")


FAKE_ENGINES = {"postgresql": FakeAdapter, "mysql": FakeAdapter, "mongodb": FakeAdapter}


# =============================================================================
# FAKE DB-API DRIVER (for relational adapter tests)
# =============================================================================

class FakeCursor:
    def __init__(self, connection: "FakeConnection"):
        self.connection = connection
        self.description = None
        self._rows: List[tuple] = []
        self.closed = False

    def execute(self, sql: str, params: Any = None) -> None:
        self.connection.executed.append((sql, params))
        for marker, error in self.connection.errors.items():
            if marker in sql:
                raise error
        for marker, (columns, rows) in self.connection.results.items():
            if marker in sql:
                self.description = [(name, None, None, None, None, None, None) for name in columns]
                self._rows = list(rows)
                return
        self.description = None
        self._rows = []

    def fetchall(self):
        rows, self._rows = self._rows, []
        return rows

    def fetchmany(self, size: int):
        rows, self._rows = self._rows[:size], self._rows[size:]
        return rows

    def close(self) -> None:
        self.closed = True


class FakeConnection:
    def __init__(self, results: Dict[str, Any], errors: Dict[str, Exception]):
        self.results = results
        self.errors = errors
        self.executed: List[tuple] = []
        self.rollbacks = 0
        self.returned = 0
        self.disconnects = 0

    def cursor(self):
        return FakeCursor(self)

    def rollback(self) -> None:
        self.rollbacks += 1

    def close(self) -> None:
        # mysql-connector pooled connections return to the pool on close()
        self.returned += 1

    def disconnect(self) -> None:
        self.disconnects += 1


class FakePool:
    """Covers both psycopg2 (getconn/putconn/closeall) and mysql-connector pools."""

    def __init__(self, results=None, errors=None):
        self.connection = FakeConnection(results or {}, errors or {})
        self.checkouts = 0
        self.closed = False

    def getconn(self):
        self.checkouts += 1
        return self.connection

    def putconn(self, conn) -> None:
        conn.returned += 1

    def closeall(self) -> None:
        self.closed = True

    def get_connection(self):
        return self.getconn()

    def _remove_connections(self) -> None:
        self.closed = True


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def settings():
    """Settings isolated from the environment."""
    return Settings(
        _env_file=None,
        cache_backend="memory",
        source_store="memory",
        cache_ttl_seconds=300,
        query_max_rows=1000,
        pool_size=2,
        pool_acquire_timeout_seconds=0.5,
    )


@pytest.fixture
def pg_config():
    return DataSourceConfig(
        id="pg-main", type="postgresql", name="Warehouse",
        host="db.internal", port=5432, database="analytics",
        username="reader", password="secret",
    )


@pytest.fixture
def mysql_config():
    return DataSourceConfig(
        id="my-main", type="mysql", name="Shop",
        host="mysql.internal", port=3306, database="shop",
        username="reader", password="secret",
    )


@pytest.fixture
def mongo_config():
    return DataSourceConfig(
        id="mongo-main", type="mongodb", name="Events",
        host="mongo.internal", port=27017, database="app",
    )


@pytest.fixture
def store(pg_config, mysql_config, mongo_config):
    return InMemoryConfigStore([pg_config, mysql_config, mongo_config])


@pytest.fixture
def registry(settings):
    registry = AdapterRegistry(settings, engines=FAKE_ENGINES)
    yield registry
    registry.shutdown()


@pytest.fixture
def cache():
    return QueryCache(InMemoryCacheBackend(), ttl_seconds=300, max_rows=1000)


@pytest.fixture
def gateway(store, registry, cache, settings):
    return QueryGateway(store, registry, cache, settings)


@pytest.fixture
def fake_pool():
    """Factory for fake driver pools: fake_pool(results={...}, errors={...})."""
    return FakePool


@pytest.fixture
def client(gateway):
    """Create a test client for the FastAPI app, wired to the fake gateway."""
    from querygate.main import app, get_gateway

    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()
