"""
Tests for the query gateway: validation ordering, caching and error translation.
"""

import pytest

from querygate.cache import QueryCache
from querygate.errors import (
    CacheError,
    ConfigurationError,
    ConnectionFailedError,
    ExecutionError,
    QueryValidationError,
)
from querygate.gateway import QueryGateway


class FailingBackend:
    """Cache backend whose every call fails."""

    name = "broken"

    def get(self, key):
        raise CacheError("backend down")

    def set(self, key, value, ttl_seconds):
        raise CacheError("backend down")

    def delete(self, *keys):
        raise CacheError("backend down")

    def keys(self, pattern):
        raise CacheError("backend down")


def with_options(store, config, **options):
    updated = config.model_copy(update={"connectionOptions": options})
    store.add(updated)
    return updated


class TestValidationOrdering:

    @pytest.mark.parametrize("text,rule", [
        ("SELECT 1; SELECT 2", "multi_statement"),
        ("DROP TABLE orders", "forbidden_statement"),
        ("WITH x AS (DELETE FROM t RETURNING *) SELECT * FROM x", "forbidden_keyword"),
        ("   ", "empty"),
    ])
    def test_rejected_text_never_reaches_an_adapter(self, gateway, registry, pg_config, text, rule):
        with pytest.raises(QueryValidationError) as excinfo:
            gateway.execute(pg_config.id, text)
        assert excinfo.value.rule == rule
        assert excinfo.value.status_code == 403
        assert registry.active_ids() == []

    def test_document_rules_apply_to_mongodb(self, gateway, registry, mongo_config):
        with pytest.raises(QueryValidationError) as excinfo:
            gateway.execute(mongo_config.id, 'db.users.aggregate([{"$out": "copy"}])')
        assert excinfo.value.rule == "forbidden_operator"
        assert registry.active_ids() == []

    def test_sql_is_rejected_for_mongodb(self, gateway, mongo_config):
        with pytest.raises(QueryValidationError) as excinfo:
            gateway.execute(mongo_config.id, "SELECT * FROM users")
        assert excinfo.value.rule == "document_shorthand"

    def test_missing_source(self, gateway):
        with pytest.raises(ConfigurationError) as excinfo:
            gateway.execute("nope", "SELECT 1")
        assert excinfo.value.status_code == 404

    def test_unknown_engine_type(self, gateway, store, pg_config):
        store.add(pg_config.model_copy(update={"id": "kv", "type": "redis"}))
        with pytest.raises(ConfigurationError) as excinfo:
            gateway.execute("kv", "SELECT 1")
        assert excinfo.value.status_code == 400


class TestExecution:

    def test_fresh_then_cached(self, gateway, registry, pg_config):
        first = gateway.execute(pg_config.id, "SELECT * FROM orders")
        second = gateway.execute(pg_config.id, "SELECT * FROM orders")

        assert first.cached is False
        assert second.cached is True
        assert second.data == first.data
        assert second.columns == first.columns
        assert registry.get(pg_config.id).queries == ["SELECT * FROM orders"]

    def test_use_cache_false_skips_read_and_write(self, gateway, registry, cache, pg_config):
        gateway.execute(pg_config.id, "SELECT 1", use_cache=False)
        gateway.execute(pg_config.id, "SELECT 1", use_cache=False)

        assert len(registry.get(pg_config.id).queries) == 2
        assert cache.get(pg_config.id, "SELECT 1") is None

    def test_cache_is_scoped_per_source(self, gateway, registry, pg_config, mysql_config):
        gateway.execute(pg_config.id, "SELECT 1")
        result = gateway.execute(mysql_config.id, "SELECT 1")
        assert result.cached is False
        assert registry.get(mysql_config.id).queries == ["SELECT 1"]

    def test_empty_result_is_not_cached(self, gateway, registry, store, pg_config):
        with_options(store, pg_config, emptyResult=True)
        gateway.execute(pg_config.id, "SELECT 1")
        second = gateway.execute(pg_config.id, "SELECT 1")

        assert second.cached is False
        assert second.rowCount == 0
        assert len(registry.get(pg_config.id).queries) == 2

    def test_failing_cache_backend_is_transparent(self, store, registry, settings, pg_config):
        gateway = QueryGateway(store, registry, QueryCache(FailingBackend(), 300, 1000), settings)
        result = gateway.execute(pg_config.id, "SELECT 1")
        assert result.rowCount == 2
        assert result.cached is False
        assert gateway.cache.get_cache_stats()["errors"] == 2

    def test_disabled_cache(self, store, registry, settings, pg_config):
        gateway = QueryGateway(store, registry, QueryCache(None), settings)
        assert gateway.execute(pg_config.id, "SELECT 1").cached is False
        assert gateway.execute(pg_config.id, "SELECT 1").cached is False

    def test_connection_failure(self, gateway, store, pg_config):
        with_options(store, pg_config, failConnect=True)
        with pytest.raises(ConnectionFailedError) as excinfo:
            gateway.execute(pg_config.id, "SELECT 1")
        assert excinfo.value.status_code == 503
        assert "connection refused" in excinfo.value.message

    def test_engine_error_keeps_message(self, gateway, store, pg_config):
        with_options(store, pg_config, failQuery='relation "nope" does not exist')
        with pytest.raises(ExecutionError) as excinfo:
            gateway.execute(pg_config.id, "SELECT * FROM nope")
        assert excinfo.value.status_code == 400
        assert 'relation "nope" does not exist' in excinfo.value.message
        assert excinfo.value.details["engine"] == "fake"

    def test_failed_query_is_not_cached(self, gateway, cache, store, pg_config):
        with_options(store, pg_config, failQuery="boom")
        with pytest.raises(ExecutionError):
            gateway.execute(pg_config.id, "SELECT 1")
        assert cache.get(pg_config.id, "SELECT 1") is None

    def test_adapter_retired_mid_request_is_reacquired(self, gateway, registry, pg_config):
        stale = registry.create_or_reuse(pg_config)
        run = stale.execute_query

        def close_then_run(text):
            registry.close(pg_config.id)
            return run(text)

        stale.execute_query = close_then_run
        result = gateway.execute(pg_config.id, "SELECT 1", use_cache=False)

        fresh = registry.get(pg_config.id)
        assert result.rowCount == 2
        assert fresh is not stale
        assert fresh.queries == ["SELECT 1"]
        assert stale.queries == []
        assert stale.is_connected() is False


class TestIntrospection:

    def test_schemas_tables_columns(self, gateway, pg_config):
        assert gateway.get_schemas(pg_config.id) == ["public", "sales"]
        tables = gateway.get_tables(pg_config.id, "sales")
        assert tables[0].name == "orders"
        assert tables[0].schema_ == "sales"
        columns = gateway.get_table_schema(pg_config.id, "orders")
        assert [c.name for c in columns] == ["id", "status"]

    def test_preview(self, gateway, registry, pg_config):
        result = gateway.preview_table(pg_config.id, "orders", limit=5)
        assert result.rowCount == 2
        assert registry.get(pg_config.id).queries == ["preview orders 5"]

    @pytest.mark.parametrize("table,schema", [
        ("orders; DROP TABLE x", None),
        ("orders", "public.x"),
        ("", None),
    ])
    def test_unsafe_identifiers_rejected_before_connecting(self, gateway, registry, pg_config, table, schema):
        with pytest.raises(QueryValidationError) as excinfo:
            gateway.preview_table(pg_config.id, table, schema)
        assert excinfo.value.rule == "invalid_identifier"
        assert registry.active_ids() == []


class TestAdmin:

    def test_test_connection_success(self, gateway, pg_config):
        status = gateway.test_connection(pg_config.id)
        assert status.connected is True
        assert status.error is None

    def test_test_connection_failure_is_reported(self, gateway, store, pg_config):
        with_options(store, pg_config, failConnect=True)
        status = gateway.test_connection(pg_config.id)
        assert status.connected is False
        assert "connection refused" in status.error

    def test_connection_status_without_adapter(self, gateway, pg_config):
        assert gateway.connection_status(pg_config.id).connected is False

    def test_close_adapter_drops_cache(self, gateway, registry, cache, pg_config):
        gateway.execute(pg_config.id, "SELECT 1")
        adapter = registry.get(pg_config.id)

        assert gateway.close_adapter(pg_config.id) is True
        assert adapter.disconnect_calls == 1
        assert cache.get(pg_config.id, "SELECT 1") is None
        assert gateway.execute(pg_config.id, "SELECT 1").cached is False

    def test_status(self, gateway, pg_config):
        gateway.execute(pg_config.id, "SELECT 1")
        status = gateway.status()
        assert status["registry"]["active"] == 1
        assert status["cache"]["writes"] == 1
