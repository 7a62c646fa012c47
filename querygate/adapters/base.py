"""
Base Adapter Interface for QueryGate

All engine adapters implement this interface so the gateway can introspect
and query PostgreSQL, MySQL and MongoDB through one capability contract.

DESIGN PRINCIPLES:
-----------------
1. Connection pooling handled by adapter (not caller)
2. connect() is idempotent and safe to call from many threads at once
3. Results returned as ordered columns + list of row dicts (engine-agnostic)
4. Row values are shaped into JSON primitives before they leave the adapter
5. Errors wrapped in AdapterError for consistent handling
"""

import logging
import re
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date, datetime, time as dt_time, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from querygate.core.config import Settings, get_settings
from querygate.models import (
    ConnectionStatus,
    DataSourceConfig,
    QueryResult,
    SchemaColumn,
    SchemaTable,
)

logger = logging.getLogger(__name__)

SAFE_IDENTIFIER = re.compile(r"^[A-Za-z0-9_]+$")


class AdapterError(Exception):
    """Base exception for adapter errors."""

    def __init__(self, message: str, engine: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.engine = engine
        self.original_error = original_error


class ConnectionError(AdapterError):
    """Failed to connect to database."""
    pass


class QueryError(AdapterError):
    """Query execution failed."""
    pass


class AdapterRetiredError(ConnectionError):
    """Adapter was replaced or closed by the registry and will not reconnect."""
    pass


class QueryParseError(QueryError):
    """Document query text does not match the accepted shorthand."""
    pass


# =============================================================================
# ROW SHAPING
# =============================================================================

def to_json_value(value: Any) -> Any:
    """Convert a driver value into a JSON-compatible primitive."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Decimal):
        return int(value) if value.is_finite() and value == value.to_integral_value() else float(value)
    if isinstance(value, (datetime, date, dt_time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, dict):
        return {str(k): to_json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_json_value(v) for v in value]
    # ObjectId, Timestamp, Regex, driver-specific scalars
    return str(value)


def dedupe_columns(names: Iterable[str]) -> List[str]:
    """
    Make result column names unique.

    Repeated names get `_1`, `_2`, ... suffixes in the order they appear,
    skipping any suffix that is already taken by a real column.
    """
    names = [str(n) for n in names]
    taken = set(names)
    seen = set()
    unique = []
    for name in names:
        if name not in seen:
            seen.add(name)
            unique.append(name)
            continue
        n = 1
        while f"{name}_{n}" in taken or f"{name}_{n}" in seen:
            n += 1
        candidate = f"{name}_{n}"
        seen.add(candidate)
        unique.append(candidate)
    return unique


def rows_to_dicts(columns: List[str], rows: Iterable[Sequence[Any]]) -> List[Dict[str, Any]]:
    """Zip positional rows with (already unique) column names."""
    return [
        {col: to_json_value(val) for col, val in zip(columns, row)}
        for row in rows
    ]


def is_safe_identifier(name: Optional[str]) -> bool:
    return bool(name) and SAFE_IDENTIFIER.match(name) is not None


class BaseAdapter(ABC):
    """
    Abstract base class for engine adapters.

    Each adapter must implement:
    - connect() / disconnect(): Own the connection pool lifecycle
    - health_check(): Liveness check against an open pool
    - get_schemas() / get_tables() / get_table_schema(): Introspection
    - execute_query(): Run one read-only statement or document operation
    - preview_table(): First rows of a table or collection

    Usage:
        adapter = PostgresAdapter(config)
        adapter.connect()

        result = adapter.execute_query("SELECT id, status FROM orders")

        adapter.disconnect()
    """

    # Engine identifier (e.g., "postgresql", "mysql", "mongodb")
    ENGINE: str = "base"

    def __init__(self, config: DataSourceConfig, settings: Optional[Settings] = None):
        """
        Initialize adapter with connection configuration.

        Args:
            config: Data source record (host, port, credentials, options)
            settings: Pool/timeout settings (defaults to process settings)
        """
        self.config = config
        self.settings = settings or get_settings()
        self.options: Dict[str, Any] = dict(config.connectionOptions or {})
        self._connected = False
        self._last_error: Optional[str] = None
        self._last_used: Optional[datetime] = None
        self._connect_lock = threading.Lock()
        self._retired = False

    @abstractmethod
    def connect(self) -> None:
        """
        Establish the connection pool.

        Raises:
            ConnectionError: If connection fails
        """
        pass

    @abstractmethod
    def disconnect(self) -> None:
        """
        Release every pooled connection.

        Safe to call even if not connected.
        """
        pass

    @abstractmethod
    def health_check(self) -> bool:
        """Round-trip to the engine using an already open pool."""
        pass

    @abstractmethod
    def get_schemas(self) -> List[str]:
        pass

    @abstractmethod
    def get_tables(self, schema: Optional[str] = None) -> List[SchemaTable]:
        pass

    @abstractmethod
    def get_table_schema(self, table: str, schema: Optional[str] = None) -> List[SchemaColumn]:
        pass

    @abstractmethod
    def execute_query(self, text: str) -> QueryResult:
        """
        Execute one statement (or document operation) and return results.

        Raises:
            QueryError: If the engine rejects or fails the statement
        """
        pass

    @abstractmethod
    def preview_table(self, table: str, schema: Optional[str] = None, limit: int = 100) -> QueryResult:
        pass

    def test_connection(self) -> bool:
        """Connect lazily and check the engine. Never raises."""
        try:
            if not self._connected:
                self.connect()
            healthy = self.health_check()
        except Exception as e:
            self._last_error = str(e)
            logger.warning(f"{self.ENGINE} connection test failed for source '{self.config.id}': {e}")
            return False
        if healthy:
            self._last_error = None
        return healthy

    def is_connected(self) -> bool:
        """Check if adapter has an active connection."""
        return self._connected

    def get_connection_status(self) -> ConnectionStatus:
        """Report the last known state without touching the network."""
        return ConnectionStatus(connected=self._connected, error=self._last_error)

    def get_engine_info(self) -> Dict[str, Any]:
        """Get information about this adapter/engine."""
        return {
            "engine": self.ENGINE,
            "connected": self._connected,
            "last_used": self._last_used.isoformat() if self._last_used else None,
            "last_error": self._last_error,
        }

    def retire(self) -> None:
        """Disconnect for good; later connect() calls raise AdapterRetiredError."""
        with self._connect_lock:
            self._retired = True
        self.disconnect()

    def _ensure_not_retired(self) -> None:
        # Callers hold _connect_lock
        if self._retired:
            raise AdapterRetiredError(
                f"Adapter for source '{self.config.id}' was retired",
                engine=self.ENGINE,
            )

    def _update_last_used(self):
        """Update last used timestamp."""
        self._last_used = datetime.now(timezone.utc)

    def _require_identifier(self, name: Optional[str], kind: str = "identifier") -> None:
        if not is_safe_identifier(name):
            raise QueryError(f"Invalid {kind}: {name!r}", engine=self.ENGINE)

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 3)

    def __enter__(self):
        """Context manager support."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager cleanup."""
        self.disconnect()
        return False


# =============================================================================
# POOLED SQL ADAPTER
# =============================================================================

class PooledSQLAdapter(BaseAdapter):
    """
    Shared machinery for relational engines with a driver-level pool.

    Subclasses provide the pool itself (_create_pool / _close_pool) and the
    checkout primitives. Checkouts are gated by a bounded semaphore so that a
    saturated pool makes callers wait (up to pool_acquire_timeout_seconds)
    instead of failing outright.
    """

    LABEL: str = "SQL"
    QUOTE_CHAR: str = '"'

    def __init__(self, config: DataSourceConfig, settings: Optional[Settings] = None):
        super().__init__(config, settings)
        self.pool_size = max(1, int(self.options.get("poolSize", self.settings.pool_size)))
        self._pool = None
        self._slots = threading.BoundedSemaphore(self.pool_size)

    @abstractmethod
    def _create_pool(self):
        """Build the driver pool; must fail fast if the engine is unreachable."""
        pass

    @abstractmethod
    def _close_pool(self, pool) -> None:
        pass

    @abstractmethod
    def _getconn(self):
        pass

    @abstractmethod
    def _putconn(self, conn) -> None:
        pass

    def _prepare_session(self, cursor) -> None:
        """Per-checkout session setup (timeouts, read-only mode)."""
        pass

    def _open_cursor(self, conn):
        return conn.cursor()

    def connect(self) -> None:
        """Build the pool once; concurrent callers wait for the first."""
        with self._connect_lock:
            if self._connected:
                return
            self._ensure_not_retired()
            try:
                self._pool = self._create_pool()
            except Exception as e:
                self._last_error = str(e)
                logger.error(f"{self.LABEL} connection failed for source '{self.config.id}': {e}")
                raise ConnectionError(
                    f"Failed to connect to {self.LABEL}: {e}",
                    engine=self.ENGINE,
                    original_error=e,
                )
            self._connected = True
            self._last_error = None
            logger.info(
                f"{self.LABEL} connected: {self.config.host}:{self.config.port}/{self.config.database} "
                f"(pool_size={self.pool_size})"
            )

    def disconnect(self) -> None:
        """Close every pooled connection."""
        with self._connect_lock:
            pool, self._pool = self._pool, None
            was_connected, self._connected = self._connected, False
        if pool is None:
            return
        try:
            self._close_pool(pool)
        except Exception as e:
            logger.warning(f"Error closing {self.LABEL} pool for source '{self.config.id}': {e}")
        if was_connected:
            logger.info(f"{self.LABEL} disconnected: source '{self.config.id}'")

    @contextmanager
    def _checkout(self):
        """Borrow a pooled connection for the duration of the block."""
        if not self._connected:
            self.connect()
        if not self._slots.acquire(timeout=self.settings.pool_acquire_timeout_seconds):
            raise ConnectionError(
                f"Timed out waiting for a pooled {self.LABEL} connection",
                engine=self.ENGINE,
            )
        try:
            try:
                conn = self._getconn()
            except Exception as e:
                self._last_error = str(e)
                raise ConnectionError(
                    f"Failed to acquire {self.LABEL} connection: {e}",
                    engine=self.ENGINE,
                    original_error=e,
                )
            try:
                yield conn
            finally:
                self._putconn(conn)
        finally:
            self._slots.release()

    def _fetch(self, sql: str, params: Optional[Sequence[Any]] = None,
               limit: Optional[int] = None) -> Tuple[List[str], List[Sequence[Any]], bool, float]:
        """
        Run one statement and fetch its rows.

        Returns:
            (column names, raw rows, truncated flag, duration in ms)
        """
        with self._checkout() as conn:
            cursor = self._open_cursor(conn)
            try:
                self._prepare_session(cursor)
                started = time.perf_counter()
                cursor.execute(sql, params)
                if cursor.description is None:
                    return [], [], False, self._elapsed_ms(started)
                columns = [desc[0] for desc in cursor.description]
                truncated = False
                if limit is None:
                    rows = list(cursor.fetchall())
                else:
                    rows = list(cursor.fetchmany(limit + 1))
                    truncated = len(rows) > limit
                    rows = rows[:limit]
                return columns, rows, truncated, self._elapsed_ms(started)
            except Exception:
                self._rollback(conn)
                raise
            finally:
                cursor.close()

    def _rollback(self, conn) -> None:
        try:
            conn.rollback()
        except Exception as e:
            logger.debug(f"{self.LABEL} rollback failed: {e}")

    def _catalog(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        """Run an internal catalog query and return rows keyed by column."""
        try:
            columns, rows, _, _ = self._fetch(sql, params)
        except AdapterError:
            raise
        except Exception as e:
            raise QueryError(f"{self.LABEL} catalog query failed: {e}", engine=self.ENGINE, original_error=e)
        return [dict(zip(columns, row)) for row in rows]

    def health_check(self) -> bool:
        """Check connection health."""
        if not self._connected:
            return False
        try:
            _, rows, _, _ = self._fetch("SELECT 1")
            return bool(rows)
        except Exception as e:
            self._last_error = str(e)
            return False

    def execute_query(self, text: str) -> QueryResult:
        """Execute a single read-only statement with the row cap applied."""
        self._update_last_used()
        try:
            raw_columns, rows, truncated, duration = self._fetch(text, limit=self.settings.query_max_rows)
        except AdapterError:
            raise
        except Exception as e:
            raise QueryError(f"{self.LABEL} query failed: {e}", engine=self.ENGINE, original_error=e)

        columns = dedupe_columns(raw_columns)
        data = rows_to_dicts(columns, rows)
        if truncated:
            logger.info(f"{self.LABEL} result truncated at {self.settings.query_max_rows} rows (source '{self.config.id}')")
        return QueryResult(
            columns=columns,
            data=data,
            rowCount=len(data),
            duration=duration,
            truncated=truncated,
        )

    def quote_identifier(self, name: str) -> str:
        self._require_identifier(name)
        return f"{self.QUOTE_CHAR}{name}{self.QUOTE_CHAR}"

    def _default_schema(self) -> str:
        return self.config.database

    def preview_table(self, table: str, schema: Optional[str] = None, limit: int = 100) -> QueryResult:
        """Read the first `limit` rows of a table."""
        self._require_identifier(table, "table name")
        schema = schema or self._default_schema()
        self._require_identifier(schema, "schema name")
        limit = max(1, min(int(limit), self.settings.query_max_rows))
        sql = f"SELECT * FROM {self.quote_identifier(schema)}.{self.quote_identifier(table)} LIMIT {limit}"
        return self.execute_query(sql)
