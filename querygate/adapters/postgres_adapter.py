"""
PostgreSQL Adapter for QueryGate

Features:
- Thread-safe connection pooling (psycopg2 ThreadedConnectionPool)
- SSL support
- Read-only sessions and a server-side statement timeout
- Catalog introspection via pg_catalog (row estimates, sizes, PK/FK flags)
"""

import logging
from typing import List, Optional

import psycopg2
import psycopg2.pool

from querygate.adapters.base import PooledSQLAdapter
from querygate.models import SchemaColumn, SchemaTable

logger = logging.getLogger(__name__)

EXCLUDED_SCHEMAS = ["information_schema", "pg_catalog", "pg_toast"]

# connectionOptions keys handed straight to libpq
_LIBPQ_OPTIONS = (
    "sslmode",
    "sslrootcert",
    "sslcert",
    "sslkey",
    "application_name",
    "target_session_attrs",
)

_SCHEMAS_SQL = """
    SELECT nspname AS schema_name
    FROM pg_catalog.pg_namespace
    WHERE NOT (nspname = ANY(%s))
      AND nspname NOT LIKE 'pg\\_temp\\_%%'
      AND nspname NOT LIKE 'pg\\_toast\\_temp\\_%%'
    ORDER BY nspname
"""

_TABLES_SQL = """
    SELECT
        c.relname AS table_name,
        c.relkind AS relkind,
        GREATEST(c.reltuples, 0)::bigint AS row_count,
        pg_total_relation_size(c.oid) AS size_bytes
    FROM pg_catalog.pg_class c
    JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
    WHERE n.nspname = %s
      AND c.relkind IN ('r', 'p', 'f', 'v', 'm')
    ORDER BY c.relname
"""

_COLUMNS_SQL = """
    SELECT
        a.attname AS column_name,
        format_type(a.atttypid, a.atttypmod) AS data_type,
        NOT a.attnotnull AS nullable,
        pg_get_expr(d.adbin, d.adrelid) AS column_default,
        col_description(c.oid, a.attnum) AS comment,
        EXISTS (
            SELECT 1 FROM pg_catalog.pg_constraint p
            WHERE p.conrelid = c.oid AND p.contype = 'p' AND a.attnum = ANY(p.conkey)
        ) AS is_primary_key,
        EXISTS (
            SELECT 1 FROM pg_catalog.pg_constraint f
            WHERE f.conrelid = c.oid AND f.contype = 'f' AND a.attnum = ANY(f.conkey)
        ) AS is_foreign_key
    FROM pg_catalog.pg_class c
    JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
    JOIN pg_catalog.pg_attribute a ON a.attrelid = c.oid
    LEFT JOIN pg_catalog.pg_attrdef d ON d.adrelid = c.oid AND d.adnum = a.attnum
    WHERE n.nspname = %s
      AND c.relname = %s
      AND a.attnum > 0
      AND NOT a.attisdropped
    ORDER BY a.attnum
"""


class PostgresAdapter(PooledSQLAdapter):
    """
    Adapter for PostgreSQL database.

    Config (DataSourceConfig):
        host, port, database, username, password: connection target
        ssl: require TLS (sslmode=require); otherwise sslmode=prefer
        connectionOptions: libpq passthrough (sslmode, sslrootcert, ...)
                           and poolSize

    Example:
        adapter = PostgresAdapter(DataSourceConfig(
            id="warehouse", type="postgresql", host="localhost", port=5432,
            database="analytics", username="readonly", password="secret",
        ))
        adapter.connect()
        result = adapter.execute_query("SELECT * FROM orders")
    """

    ENGINE = "postgresql"
    LABEL = "PostgreSQL"
    QUOTE_CHAR = '"'

    def _session_options(self) -> str:
        """Server settings applied to every pooled session."""
        settings = self.settings
        opts = [
            f"-c statement_timeout={settings.query_timeout_seconds * 1000}",
            f"-c idle_in_transaction_session_timeout={settings.idle_timeout_seconds * 1000}",
        ]
        if settings.read_only_sessions:
            opts.append("-c default_transaction_read_only=on")
        return " ".join(opts)

    def _create_pool(self):
        params = {
            "host": self.config.host,
            "port": self.config.port,
            "dbname": self.config.database,
            "user": self.config.username,
            "password": self.config.password,
            "sslmode": "require" if self.config.ssl else "prefer",
            "connect_timeout": self.settings.connect_timeout_seconds,
            "options": self._session_options(),
        }
        for key in _LIBPQ_OPTIONS:
            if key in self.options:
                params[key] = self.options[key]

        # minconn=1 opens a connection right away, so bad credentials fail here
        return psycopg2.pool.ThreadedConnectionPool(minconn=1, maxconn=self.pool_size, **params)

    def _close_pool(self, pool) -> None:
        pool.closeall()

    def _getconn(self):
        return self._pool.getconn()

    def _putconn(self, conn) -> None:
        pool = self._pool
        if pool is None:
            # Pool was torn down while the connection was checked out
            try:
                conn.close()
            except Exception:
                logger.debug("Closing orphaned PostgreSQL connection failed", exc_info=True)
            return
        pool.putconn(conn)

    def _default_schema(self) -> str:
        return "public"

    def get_schemas(self) -> List[str]:
        rows = self._catalog(_SCHEMAS_SQL, (EXCLUDED_SCHEMAS,))
        return [row["schema_name"] for row in rows]

    def get_tables(self, schema: Optional[str] = None) -> List[SchemaTable]:
        schema = schema or self._default_schema()
        tables = []
        for row in self._catalog(_TABLES_SQL, (schema,)):
            is_view = row["relkind"] in ("v", "m")
            tables.append(SchemaTable(
                name=row["table_name"],
                schema=schema,
                type="view" if is_view else "table",
                rowCount=None if is_view else int(row["row_count"] or 0),
                sizeBytes=int(row["size_bytes"] or 0),
            ))
        return tables

    def get_table_schema(self, table: str, schema: Optional[str] = None) -> List[SchemaColumn]:
        schema = schema or self._default_schema()
        return [
            SchemaColumn(
                name=row["column_name"],
                type=row["data_type"],
                nullable=bool(row["nullable"]),
                isPrimaryKey=bool(row["is_primary_key"]),
                isForeignKey=bool(row["is_foreign_key"]),
                defaultValue=row["column_default"],
                comment=row["comment"],
            )
            for row in self._catalog(_COLUMNS_SQL, (schema, table))
        ]
