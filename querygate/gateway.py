"""
Query Gateway for QueryGate

Single entry point for running user-supplied query text against a
registered data source.

FLOW:
-----
configId -> ConfigStore.get -> statement checks -> cache lookup
         -> AdapterRegistry.create_or_reuse -> adapter.execute_query
         -> cache populate -> QueryResult

Validation always runs before an adapter (or a connection) is acquired, so
rejected text never reaches an engine. Adapter-level errors are translated
into the structured errors of querygate.errors here.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, TypeVar

from querygate.adapters.base import (
    AdapterError,
    AdapterRetiredError,
    BaseAdapter,
    ConnectionError,
    QueryParseError,
)
from querygate.adapters.registry import AdapterRegistry, resolve_engine
from querygate.cache import QueryCache
from querygate.core.config import Settings, get_settings
from querygate.errors import (
    QueryGateError,
    connection_failed,
    query_failed,
    query_rejected,
    source_not_found,
)
from querygate.guards import validate_identifier, validate_query
from querygate.models import (
    ConnectionStatus,
    DataSourceConfig,
    QueryResult,
    SchemaColumn,
    SchemaTable,
)
from querygate.sources import ConfigStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class QueryGateway:
    """
    Validates, executes and caches queries for registered data sources.

    Usage:
        gateway = QueryGateway(store, AdapterRegistry(), create_query_cache())
        result = gateway.execute("warehouse", "SELECT * FROM orders", use_cache=True)
    """

    def __init__(self, store: ConfigStore, registry: AdapterRegistry, cache: QueryCache,
                 settings: Optional[Settings] = None):
        self.store = store
        self.registry = registry
        self.cache = cache
        self.settings = settings or get_settings()

    # =========================================================================
    # QUERY EXECUTION
    # =========================================================================

    def execute(self, config_id: str, text: str, use_cache: bool = True) -> QueryResult:
        """
        Run one read-only statement against a data source.

        Raises:
            ConfigurationError: Unknown source or engine type
            QueryValidationError: Text failed the statement checks
            ConnectionFailedError: Engine unreachable
            ExecutionError: Engine rejected or failed the statement
        """
        started = time.perf_counter()
        config = self._load(config_id)
        engine = resolve_engine(config.type, self.registry.engines)

        validate_query(text, engine)

        if use_cache:
            cached = self.cache.get(config_id, text)
            if cached is not None:
                duration = round((time.perf_counter() - started) * 1000, 3)
                logger.info(f"Query on source '{config_id}' served from cache ({cached.rowCount} rows)")
                return cached.model_copy(update={"cached": True, "duration": duration})

        result = self._call(config, lambda a: a.execute_query(text))

        if use_cache:
            self.cache.set(config_id, text, result)

        logger.info(
            f"Query on source '{config_id}' ({engine}): {result.rowCount} rows in {result.duration}ms"
            + (" (truncated)" if result.truncated else "")
        )
        return result.model_copy(update={"cached": False})

    # =========================================================================
    # SCHEMA INTROSPECTION
    # =========================================================================

    def get_schemas(self, config_id: str) -> List[str]:
        config = self._load(config_id)
        return self._call(config, lambda a: a.get_schemas())

    def get_tables(self, config_id: str, schema: Optional[str] = None) -> List[SchemaTable]:
        if schema is not None:
            validate_identifier(schema, "schema name")
        config = self._load(config_id)
        return self._call(config, lambda a: a.get_tables(schema))

    def get_table_schema(self, config_id: str, table: str, schema: Optional[str] = None) -> List[SchemaColumn]:
        validate_identifier(table, "table name")
        if schema is not None:
            validate_identifier(schema, "schema name")
        config = self._load(config_id)
        return self._call(config, lambda a: a.get_table_schema(table, schema))

    def preview_table(self, config_id: str, table: str, schema: Optional[str] = None,
                      limit: int = 100) -> QueryResult:
        validate_identifier(table, "table name")
        if schema is not None:
            validate_identifier(schema, "schema name")
        config = self._load(config_id)
        return self._call(config, lambda a: a.preview_table(table, schema, limit))

    # =========================================================================
    # ADMIN
    # =========================================================================

    def test_connection(self, config_id: str) -> ConnectionStatus:
        """Probe a source; connection problems are reported, not raised."""
        config = self._load(config_id)
        try:
            adapter = self.registry.create_or_reuse(config)
        except AdapterError as e:
            return ConnectionStatus(connected=False, error=str(e))
        adapter.test_connection()
        return adapter.get_connection_status()

    def connection_status(self, config_id: str) -> ConnectionStatus:
        """Last known state of a source's adapter; no network I/O."""
        adapter = self.registry.get(config_id)
        if adapter is None:
            return ConnectionStatus(connected=False)
        return adapter.get_connection_status()

    def close_adapter(self, config_id: str) -> bool:
        """Disconnect a source and drop its cached results."""
        closed = self.registry.close(config_id)
        self.cache.invalidate(config_id)
        if closed:
            logger.info(f"Closed adapter for source '{config_id}'")
        return closed

    def close_all(self) -> int:
        return self.registry.close_all()

    def status(self) -> Dict[str, Any]:
        return {
            "registry": self.registry.status(),
            "cache": self.cache.get_cache_stats(),
        }

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _load(self, config_id: str) -> DataSourceConfig:
        config = self.store.get(config_id)
        if config is None:
            raise source_not_found(config_id)
        return config

    def _call(self, config: DataSourceConfig, operation: Callable[[BaseAdapter], T]) -> T:
        """Run an adapter operation, once more if the adapter was retired under it."""
        for attempt in (1, 2):
            try:
                return operation(self.registry.create_or_reuse(config))
            except AdapterRetiredError as e:
                if attempt == 2:
                    raise self._translate(config, e) from e
                logger.info(f"Adapter for source '{config.id}' was replaced mid-request, retrying")
            except AdapterError as e:
                raise self._translate(config, e) from e

    @staticmethod
    def _translate(config: DataSourceConfig, error: AdapterError) -> QueryGateError:
        if isinstance(error, ConnectionError):
            logger.error(f"Connection to source '{config.id}' failed: {error}")
            return connection_failed(config.id, str(error), engine=error.engine)
        if isinstance(error, QueryParseError):
            return query_rejected("document_shorthand", str(error))
        logger.warning(f"Query on source '{config.id}' failed: {error}")
        return query_failed(str(error), engine=error.engine)
