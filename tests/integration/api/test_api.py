"""
Tests for core API endpoints.
"""

import pytest


@pytest.fixture
def new_source():
    return {
        "type": "postgres",
        "name": "Reporting",
        "host": "reporting.internal",
        "port": 5432,
        "database": "reports",
        "username": "bi",
        "password": "hunter2",
        "connectionOptions": {"sslmode": "require", "auth_token": "t0k3n"},
    }


class TestSources:
    """Tests for /v1/sources endpoints."""

    def test_list_sources_hides_passwords(self, client):
        response = client.get("/v1/sources")
        assert response.status_code == 200
        items = response.json()["items"]
        assert {item["id"] for item in items} == {"pg-main", "my-main", "mongo-main"}
        assert all("password" not in item for item in items)

    def test_create_source(self, client, new_source):
        response = client.post("/v1/sources", json=new_source)
        assert response.status_code == 201
        data = response.json()
        assert data["id"]
        assert data["hasPassword"] is True
        assert "password" not in data
        assert data["connectionOptions"]["auth_token"] == "********"

    def test_create_source_unknown_type(self, client, new_source):
        response = client.post("/v1/sources", json={**new_source, "type": "cassandra"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ERR_1002"

    def test_update_source_replaces_adapter(self, client, gateway):
        client.post("/v1/query", json={"configId": "pg-main", "text": "SELECT 1"})
        old = gateway.registry.get("pg-main")

        response = client.put("/v1/sources/pg-main", json={"host": "replica.internal"})
        assert response.status_code == 200
        assert response.json()["host"] == "replica.internal"
        assert old.disconnect_calls == 1
        assert gateway.registry.get("pg-main") is None

        again = client.post("/v1/query", json={"configId": "pg-main", "text": "SELECT 1"}).json()
        assert again["cached"] is False

    def test_update_missing_source(self, client):
        response = client.put("/v1/sources/missing", json={"name": "x"})
        assert response.status_code == 404

    def test_delete_source(self, client):
        response = client.delete("/v1/sources/my-main")
        assert response.status_code == 200
        assert response.json() == {"success": True, "id": "my-main"}
        assert client.delete("/v1/sources/my-main").status_code == 404

    def test_test_connection(self, client):
        data = client.post("/v1/sources/pg-main/test").json()
        assert data["success"] is True
        assert data["connected"] is True

    def test_test_connection_failure_is_not_an_error(self, client, store, pg_config):
        store.add(pg_config.model_copy(update={"connectionOptions": {"failConnect": True}}))
        response = client.post("/v1/sources/pg-main/test")
        assert response.status_code == 200
        assert response.json()["connected"] is False
        assert "connection refused" in response.json()["error"]

    def test_status_without_io(self, client):
        data = client.get("/v1/sources/pg-main/status").json()
        assert data == {"connected": False, "error": None}


class TestSchema:
    """Tests for schema introspection endpoints."""

    def test_schemas(self, client):
        assert client.get("/v1/sources/pg-main/schemas").json() == {"items": ["public", "sales"]}

    def test_tables_use_schema_key(self, client):
        items = client.get("/v1/sources/pg-main/tables", params={"schema": "sales"}).json()["items"]
        assert items[0]["name"] == "orders"
        assert items[0]["schema"] == "sales"

    def test_columns(self, client):
        items = client.get("/v1/sources/pg-main/tables/orders/columns").json()["items"]
        assert [c["name"] for c in items] == ["id", "status"]
        assert items[0]["isPrimaryKey"] is True

    def test_preview(self, client, gateway):
        response = client.get("/v1/sources/pg-main/tables/orders/preview", params={"limit": 10})
        assert response.status_code == 200
        assert response.json()["rowCount"] == 2
        assert gateway.registry.get("pg-main").queries == ["preview orders 10"]

    def test_preview_limit_bounds(self, client):
        response = client.get("/v1/sources/pg-main/tables/orders/preview", params={"limit": 0})
        assert response.status_code == 422

    def test_invalid_table_name(self, client):
        response = client.get("/v1/sources/pg-main/tables/orders%3Bdrop/columns")
        assert response.status_code == 403
        assert response.json()["error"]["details"]["rule"] == "invalid_identifier"

    def test_unknown_source(self, client):
        response = client.get("/v1/sources/nope/schemas")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ERR_1001"


class TestQuery:
    """Tests for /v1/query endpoint."""

    def test_query_then_cached(self, client):
        body = {"configId": "pg-main", "text": "SELECT id, status FROM orders"}

        first = client.post("/v1/query", json=body)
        assert first.status_code == 200
        data = first.json()
        assert data["success"] is True
        assert data["columns"] == ["id", "status"]
        assert data["rowCount"] == 2
        assert data["cached"] is False
        assert data["truncated"] is False

        second = client.post("/v1/query", json=body).json()
        assert second["cached"] is True
        assert second["data"] == data["data"]

    def test_use_cache_false(self, client):
        body = {"configId": "pg-main", "text": "SELECT 1", "useCache": False}
        client.post("/v1/query", json=body)
        assert client.post("/v1/query", json=body).json()["cached"] is False

    def test_rejected_statement(self, client, gateway):
        response = client.post("/v1/query", json={"configId": "pg-main", "text": "SELECT 1; DROP TABLE orders"})
        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "ERR_3002"
        assert error["details"]["rule"] == "multi_statement"
        assert error["request_id"]
        assert gateway.registry.active_ids() == []

    def test_mongodb_query(self, client):
        response = client.post("/v1/query", json={"configId": "mongo-main", "text": "db.users.find({}).limit(5)"})
        assert response.status_code == 200

    def test_connection_failure_is_503(self, client, store, mysql_config):
        store.add(mysql_config.model_copy(update={"connectionOptions": {"failConnect": True}}))
        response = client.post("/v1/query", json={"configId": "my-main", "text": "SELECT 1"})
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "ERR_2001"

    def test_engine_error_is_400(self, client, store, mysql_config):
        store.add(mysql_config.model_copy(update={"connectionOptions": {"failQuery": "Unknown column 'x'"}}))
        response = client.post("/v1/query", json={"configId": "my-main", "text": "SELECT x FROM orders"})
        assert response.status_code == 400
        assert "Unknown column 'x'" in response.json()["error"]["message"]

    def test_unknown_source(self, client):
        response = client.post("/v1/query", json={"configId": "nope", "text": "SELECT 1"})
        assert response.status_code == 404

    def test_missing_text(self, client):
        assert client.post("/v1/query", json={"configId": "pg-main"}).status_code == 422


class TestCacheAdmin:

    def test_clear_one_source(self, client):
        client.post("/v1/query", json={"configId": "pg-main", "text": "SELECT 1"})
        client.post("/v1/query", json={"configId": "my-main", "text": "SELECT 1"})

        response = client.delete("/v1/cache", params={"sourceId": "pg-main"})
        assert response.json() == {"success": True, "removed": 1}
        assert client.post("/v1/query", json={"configId": "pg-main", "text": "SELECT 1"}).json()["cached"] is False
        assert client.post("/v1/query", json={"configId": "my-main", "text": "SELECT 1"}).json()["cached"] is True

    def test_clear_all(self, client):
        client.post("/v1/query", json={"configId": "pg-main", "text": "SELECT 1"})
        assert client.delete("/v1/cache").json()["removed"] == 1
