"""
MySQL Adapter for QueryGate

Also serves MariaDB sources (type "mariadb"), which differ only in the
session variable used for the statement timeout.

Features:
- Connection pooling (mysql-connector pooling.MySQLConnectionPool)
- SSL/TLS encryption
- Read-only sessions and a per-statement execution limit
"""

import logging
import re
from typing import Any, List, Optional

from mysql.connector import pooling

from querygate.adapters.base import PooledSQLAdapter
from querygate.models import SchemaColumn, SchemaTable

logger = logging.getLogger(__name__)

EXCLUDED_SCHEMAS = ["information_schema", "mysql", "performance_schema", "sys"]

# mysql-connector refuses pools larger than this
MAX_POOL_SIZE = 32

_SSL_OPTIONS = ("ssl_ca", "ssl_cert", "ssl_key", "ssl_verify_cert", "ssl_verify_identity")

_TABLES_SQL = """
    SELECT
        TABLE_NAME AS table_name,
        TABLE_TYPE AS table_type,
        TABLE_ROWS AS row_count,
        DATA_LENGTH AS size_bytes
    FROM information_schema.TABLES
    WHERE TABLE_SCHEMA = %s
    ORDER BY TABLE_NAME
"""

_COLUMNS_SQL = """
    SELECT
        c.COLUMN_NAME AS column_name,
        c.DATA_TYPE AS data_type,
        c.IS_NULLABLE AS is_nullable,
        c.COLUMN_KEY AS column_key,
        c.COLUMN_DEFAULT AS column_default,
        c.COLUMN_COMMENT AS column_comment,
        EXISTS (
            SELECT 1 FROM information_schema.KEY_COLUMN_USAGE k
            WHERE k.TABLE_SCHEMA = c.TABLE_SCHEMA
              AND k.TABLE_NAME = c.TABLE_NAME
              AND k.COLUMN_NAME = c.COLUMN_NAME
              AND k.REFERENCED_TABLE_NAME IS NOT NULL
        ) AS is_foreign_key
    FROM information_schema.COLUMNS c
    WHERE c.TABLE_SCHEMA = %s AND c.TABLE_NAME = %s
    ORDER BY c.ORDINAL_POSITION
"""


def _text(value: Any) -> Any:
    """information_schema values can come back as bytes on older servers."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    return value


class MySQLAdapter(PooledSQLAdapter):
    """
    Adapter for MySQL database.

    Config (DataSourceConfig):
        host, port, database, username, password: connection target
        ssl: enable TLS (ssl_disabled=False)
        connectionOptions: charset, ssl_ca / ssl_cert / ssl_key,
                           ssl_verify_cert, ssl_verify_identity, poolSize

    Example:
        adapter = MySQLAdapter(DataSourceConfig(
            id="shop", type="mysql", host="mysql.example.com", port=3306,
            database="analytics", username="bi_readonly", password="secret",
        ))
        adapter.connect()
        result = adapter.execute_query("SELECT * FROM orders")
    """

    ENGINE = "mysql"
    LABEL = "MySQL"
    QUOTE_CHAR = "`"

    def __init__(self, config, settings=None):
        super().__init__(config, settings)
        self.pool_size = min(self.pool_size, MAX_POOL_SIZE)
        self.is_mariadb = (config.type or "").strip().lower() == "mariadb"

    @property
    def pool_name(self) -> str:
        return "qg_" + re.sub(r"[^A-Za-z0-9_.:-]", "_", self.config.id)[:48]

    def _build_connection_params(self):
        """Build connection parameters dict."""
        params = {
            "host": self.config.host,
            "port": self.config.port,
            "database": self.config.database,
            "user": self.config.username,
            "password": self.config.password,
            "charset": self.options.get("charset", "utf8mb4"),
            "connection_timeout": self.settings.connect_timeout_seconds,
            "autocommit": True,
            # cursors closed before the last row was read must not poison the connection
            "consume_results": True,
        }
        if self.config.ssl:
            for key in _SSL_OPTIONS:
                if key in self.options:
                    params[key] = self.options[key]
        else:
            params["ssl_disabled"] = True
        return params

    def _create_pool(self):
        # The pool opens every connection up front, so auth failures surface here
        return pooling.MySQLConnectionPool(
            pool_name=self.pool_name,
            pool_size=self.pool_size,
            pool_reset_session=True,
            **self._build_connection_params(),
        )

    def _close_pool(self, pool) -> None:
        # No public close on MySQLConnectionPool; this drains and closes idle connections
        pool._remove_connections()

    def _getconn(self):
        return self._pool.get_connection()

    def _putconn(self, conn) -> None:
        if self._pool is None:
            # Pool was drained while the connection was checked out; close() would
            # hand it back to that pool, disconnect() reaches the real socket
            try:
                conn.disconnect()
            except Exception:
                logger.debug("Closing orphaned MySQL connection failed", exc_info=True)
            return
        # Pooled connections go back to their pool on close()
        conn.close()

    def _prepare_session(self, cursor) -> None:
        timeout = self.settings.query_timeout_seconds
        if self.is_mariadb:
            cursor.execute(f"SET SESSION max_statement_time = {int(timeout)}")
        else:
            cursor.execute(f"SET SESSION MAX_EXECUTION_TIME = {int(timeout * 1000)}")
        cursor.execute(f"SET SESSION wait_timeout = {int(self.settings.idle_timeout_seconds)}")
        if self.settings.read_only_sessions:
            cursor.execute("SET SESSION TRANSACTION READ ONLY")

    def get_schemas(self) -> List[str]:
        placeholders = ", ".join(["%s"] * len(EXCLUDED_SCHEMAS))
        rows = self._catalog(
            "SELECT SCHEMA_NAME AS schema_name FROM information_schema.SCHEMATA "
            f"WHERE SCHEMA_NAME NOT IN ({placeholders}) ORDER BY SCHEMA_NAME",
            tuple(EXCLUDED_SCHEMAS),
        )
        return [_text(row["schema_name"]) for row in rows]

    def get_tables(self, schema: Optional[str] = None) -> List[SchemaTable]:
        database = schema or self._default_schema()
        tables = []
        for row in self._catalog(_TABLES_SQL, (database,)):
            table_type = _text(row["table_type"]) or ""
            tables.append(SchemaTable(
                name=_text(row["table_name"]),
                schema=database,
                type="view" if table_type.upper() == "VIEW" else "table",
                rowCount=int(row["row_count"] or 0),
                sizeBytes=int(row["size_bytes"] or 0),
            ))
        return tables

    def get_table_schema(self, table: str, schema: Optional[str] = None) -> List[SchemaColumn]:
        database = schema or self._default_schema()
        columns = []
        for row in self._catalog(_COLUMNS_SQL, (database, table)):
            comment = _text(row["column_comment"])
            columns.append(SchemaColumn(
                name=_text(row["column_name"]),
                type=_text(row["data_type"]),
                nullable=_text(row["is_nullable"]) == "YES",
                isPrimaryKey=_text(row["column_key"]) == "PRI",
                isForeignKey=bool(row["is_foreign_key"]),
                defaultValue=_text(row["column_default"]),
                comment=comment or None,
            ))
        return columns
