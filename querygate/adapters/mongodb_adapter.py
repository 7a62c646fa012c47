"""
MongoDB Adapter for QueryGate

Documents have no fixed schema, so introspection samples documents and
query text uses a small, read-only subset of shell syntax:

    db.<collection>.find(<filter>)[.limit(<n>)]
    db.<collection>.aggregate(<pipeline>)[.limit(<n>)]

Filter and pipeline arguments are MongoDB Extended JSON, parsed with
bson.json_util (so {"$oid": "..."} and {"$date": "..."} work).
"""

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import json_util
from bson.binary import Binary
from bson.decimal128 import Decimal128
from bson.int64 import Int64
from bson.objectid import ObjectId
from bson.regex import Regex
from bson.timestamp import Timestamp
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from querygate.adapters.base import (
    BaseAdapter,
    ConnectionError,
    QueryError,
    QueryParseError,
    to_json_value,
)
from querygate.models import QueryResult, SchemaColumn, SchemaTable

logger = logging.getLogger(__name__)

EXCLUDED_DATABASES = ["admin", "local", "config"]

# Operators that write data or run server-side JavaScript
FORBIDDEN_OPERATORS = frozenset({"$out", "$merge", "$where", "$function", "$accumulator"})

_HEADER = re.compile(r"^db\.([A-Za-z_][\w-]*)\.(find|aggregate)\(")
_LIMIT = re.compile(r"^\.limit\(\s*(\d+)\s*\)$")
_USAGE = "Use db.<collection>.find({filter}).limit(n) or db.<collection>.aggregate([pipeline])"


# =============================================================================
# QUERY SHORTHAND
# =============================================================================

@dataclass
class DocumentQuery:
    """A parsed find/aggregate operation."""
    collection: str
    operation: str
    filter: Optional[Dict[str, Any]] = None
    pipeline: Optional[List[Dict[str, Any]]] = None
    limit: Optional[int] = None


def _closing_paren(text: str, start: int) -> int:
    """
    Index of the ')' that closes the call whose arguments begin at `start`.

    Brackets inside string literals are ignored.
    """
    depth = 0
    quote = None
    i = start
    while i < len(text):
        ch = text[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch in "([{":
            depth += 1
        elif ch in "}])":
            if depth == 0:
                if ch == ")":
                    return i
                break
            depth -= 1
        i += 1
    raise QueryParseError(f"Unbalanced brackets in document query. {_USAGE}", engine="mongodb")


def parse_document_query(text: str) -> DocumentQuery:
    """
    Parse the find/aggregate shorthand.

    Raises:
        QueryParseError: If the text is not exactly one supported operation
    """
    stripped = (text or "").strip()
    if stripped.endswith(";"):
        stripped = stripped[:-1].rstrip()

    match = _HEADER.match(stripped)
    if not match:
        raise QueryParseError(f"Unable to parse MongoDB query. {_USAGE}", engine="mongodb")
    collection, operation = match.group(1), match.group(2)

    end = _closing_paren(stripped, match.end())
    raw_args = stripped[match.end():end].strip()
    tail = stripped[end + 1:].strip()

    limit = None
    if tail:
        limit_match = _LIMIT.match(tail)
        if not limit_match:
            raise QueryParseError(f"Unsupported trailing call '{tail}'. {_USAGE}", engine="mongodb")
        limit = int(limit_match.group(1)) or None

    try:
        args = json_util.loads(raw_args) if raw_args else None
    except (ValueError, TypeError) as e:
        raise QueryParseError(f"Invalid Extended JSON argument: {e}", engine="mongodb", original_error=e)

    if operation == "find":
        if args is None:
            args = {}
        if not isinstance(args, dict):
            raise QueryParseError("find() expects a filter object", engine="mongodb")
        return DocumentQuery(collection=collection, operation="find", filter=args, limit=limit)

    if args is None:
        args = []
    if not isinstance(args, list) or not all(isinstance(stage, dict) for stage in args):
        raise QueryParseError("aggregate() expects an array of pipeline stages", engine="mongodb")
    return DocumentQuery(collection=collection, operation="aggregate", pipeline=args, limit=limit)


def find_forbidden_operator(value: Any) -> Optional[str]:
    """Return the first write/server-side-code operator found anywhere in value."""
    if isinstance(value, dict):
        for key, item in value.items():
            if key in FORBIDDEN_OPERATORS:
                return key
            found = find_forbidden_operator(item)
            if found:
                return found
    elif isinstance(value, list):
        for item in value:
            found = find_forbidden_operator(item)
            if found:
                return found
    return None


def bson_type_name(value: Any) -> str:
    """Name a sampled value using BSON type aliases."""
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, Int64):
        return "long"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        return "double"
    if isinstance(value, str):
        return "string"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, datetime):
        return "date"
    if isinstance(value, ObjectId):
        return "objectId"
    if isinstance(value, Decimal128):
        return "decimal"
    if isinstance(value, (bytes, Binary)):
        return "binData"
    if isinstance(value, Timestamp):
        return "timestamp"
    if isinstance(value, Regex):
        return "regex"
    return type(value).__name__


def infer_columns(documents: List[Dict[str, Any]]) -> List[SchemaColumn]:
    """
    Merge the top-level fields of sampled documents into columns.

    A field is nullable when any sampled document omits it or holds null.
    """
    fields: Dict[str, Dict[str, Any]] = {}
    for doc in documents:
        for key, value in doc.items():
            info = fields.setdefault(key, {"types": [], "nullable": False})
            if value is None:
                info["nullable"] = True
                continue
            type_name = bson_type_name(value)
            if type_name not in info["types"]:
                info["types"].append(type_name)

    columns = []
    for name, info in fields.items():
        missing = any(name not in doc for doc in documents)
        columns.append(SchemaColumn(
            name=name,
            type=" | ".join(info["types"]) or "null",
            nullable=info["nullable"] or missing,
            isPrimaryKey=name == "_id",
        ))
    return columns


def documents_to_result(documents: List[Dict[str, Any]], duration: float, truncated: bool = False) -> QueryResult:
    """Flatten documents into rows; fields missing from a document become null."""
    columns: List[str] = []
    seen = set()
    for doc in documents:
        for key in doc:
            if key not in seen:
                seen.add(key)
                columns.append(str(key))
    data = [
        {col: to_json_value(doc.get(col)) for col in columns}
        for doc in documents
    ]
    return QueryResult(
        columns=columns,
        data=data,
        rowCount=len(data),
        duration=duration,
        truncated=truncated,
    )


# =============================================================================
# ADAPTER
# =============================================================================

class MongoDBAdapter(BaseAdapter):
    """
    Adapter for MongoDB.

    Config (DataSourceConfig):
        host, port, database, username, password: connection target
        ssl: enable TLS
        connectionOptions: authSource, replicaSet, poolSize

    Example:
        adapter = MongoDBAdapter(DataSourceConfig(
            id="events", type="mongodb", host="localhost", port=27017,
            database="app",
        ))
        adapter.connect()
        result = adapter.execute_query('db.users.find({"age": {"$gt": 18}}).limit(10)')
    """

    ENGINE = "mongodb"

    def __init__(self, config, settings=None):
        super().__init__(config, settings)
        self.pool_size = max(1, int(self.options.get("poolSize", self.settings.pool_size)))
        self.sample_size = int(self.options.get("sampleSize", self.settings.mongo_sample_size))
        self._client = None

    def _create_client(self) -> MongoClient:
        settings = self.settings
        kwargs: Dict[str, Any] = {
            "host": self.config.host,
            "port": self.config.port,
            "tls": self.config.ssl,
            "maxPoolSize": self.pool_size,
            "minPoolSize": min(2, self.pool_size),
            "maxIdleTimeMS": settings.idle_timeout_seconds * 1000,
            "serverSelectionTimeoutMS": settings.connect_timeout_seconds * 1000,
            "connectTimeoutMS": settings.connect_timeout_seconds * 1000,
            "appname": "querygate",
        }
        if self.config.username:
            kwargs["username"] = self.config.username
            kwargs["password"] = self.config.password
            kwargs["authSource"] = self.options.get("authSource", self.config.database)
        if "replicaSet" in self.options:
            kwargs["replicaSet"] = self.options["replicaSet"]
        return MongoClient(**kwargs)

    def connect(self) -> None:
        """Create the client and ping the server; concurrent callers wait for the first."""
        with self._connect_lock:
            if self._connected:
                return
            self._ensure_not_retired()
            client = None
            try:
                client = self._create_client()
                # MongoClient connects lazily; ping forces auth + server selection
                client.admin.command("ping")
            except Exception as e:
                if client is not None:
                    client.close()
                self._last_error = str(e)
                logger.error(f"MongoDB connection failed for source '{self.config.id}': {e}")
                raise ConnectionError(f"Failed to connect to MongoDB: {e}", engine=self.ENGINE, original_error=e)
            self._client = client
            self._connected = True
            self._last_error = None
            logger.info(f"MongoDB connected: {self.config.host}:{self.config.port}/{self.config.database}")

    def disconnect(self) -> None:
        """Close the client and its pool."""
        with self._connect_lock:
            client, self._client = self._client, None
            self._connected = False
        if client is None:
            return
        try:
            client.close()
            logger.info(f"MongoDB disconnected: source '{self.config.id}'")
        except Exception as e:
            logger.warning(f"Error closing MongoDB client for source '{self.config.id}': {e}")

    def _live_client(self) -> MongoClient:
        if not self._connected:
            self.connect()
        client = self._client
        if client is None:
            # Disconnected between connect() and use
            with self._connect_lock:
                self._ensure_not_retired()
            raise ConnectionError(f"MongoDB client for source '{self.config.id}' was closed", engine=self.ENGINE)
        return client

    def _database(self, name: Optional[str] = None):
        return self._live_client()[name or self.config.database]

    def health_check(self) -> bool:
        if not self._connected:
            return False
        try:
            self._client.admin.command("ping")
            return True
        except PyMongoError as e:
            self._last_error = str(e)
            return False

    def get_schemas(self) -> List[str]:
        client = self._live_client()
        try:
            names = client.list_database_names()
        except PyMongoError as e:
            raise QueryError(f"MongoDB listDatabases failed: {e}", engine=self.ENGINE, original_error=e)
        return [name for name in names if name not in EXCLUDED_DATABASES]

    def _storage_size(self, collection) -> Optional[int]:
        try:
            stats = list(collection.aggregate([{"$collStats": {"storageStats": {}}}]))
        except PyMongoError as e:
            logger.debug(f"collStats unavailable for '{collection.name}': {e}")
            return None
        if not stats:
            return None
        return stats[0].get("storageStats", {}).get("size")

    def get_tables(self, schema: Optional[str] = None) -> List[SchemaTable]:
        db = self._database(schema)
        try:
            infos = sorted(db.list_collections(), key=lambda info: info["name"])
        except PyMongoError as e:
            raise QueryError(f"MongoDB listCollections failed: {e}", engine=self.ENGINE, original_error=e)

        tables = []
        for info in infos:
            name = info["name"]
            if name.startswith("system."):
                continue
            if info.get("type") == "view":
                tables.append(SchemaTable(name=name, schema=db.name, type="view"))
                continue
            collection = db[name]
            try:
                row_count = collection.estimated_document_count()
            except PyMongoError as e:
                logger.debug(f"Count unavailable for '{name}': {e}")
                row_count = None
            tables.append(SchemaTable(
                name=name,
                schema=db.name,
                type="collection",
                rowCount=row_count,
                sizeBytes=self._storage_size(collection),
            ))
        return tables

    def get_table_schema(self, table: str, schema: Optional[str] = None) -> List[SchemaColumn]:
        collection = self._database(schema)[table]
        try:
            samples = list(collection.find({}).limit(self.sample_size))
        except PyMongoError as e:
            raise QueryError(f"MongoDB sampling failed: {e}", engine=self.ENGINE, original_error=e)
        return infer_columns(samples)

    def execute_query(self, text: str) -> QueryResult:
        """Execute a find/aggregate shorthand with the row cap applied."""
        parsed = parse_document_query(text)
        operator = find_forbidden_operator(parsed.filter if parsed.operation == "find" else parsed.pipeline)
        if operator:
            raise QueryParseError(f"Operator {operator} is not allowed", engine=self.ENGINE)
        return self._run(parsed)

    def preview_table(self, table: str, schema: Optional[str] = None, limit: int = 100) -> QueryResult:
        self._require_identifier(table, "collection name")
        if schema:
            self._require_identifier(schema, "database name")
        limit = max(1, min(int(limit), self.settings.query_max_rows))
        return self._run(DocumentQuery(collection=table, operation="find", filter={}, limit=limit), schema)

    def _run(self, query: DocumentQuery, schema: Optional[str] = None) -> QueryResult:
        cap = self.settings.query_max_rows
        if query.limit is not None and query.limit <= cap:
            fetch, detect_truncation = query.limit, False
        else:
            fetch, detect_truncation = cap + 1, True
        timeout_ms = self.settings.query_timeout_seconds * 1000

        collection = self._database(schema)[query.collection]
        self._update_last_used()
        started = time.perf_counter()
        try:
            if query.operation == "find":
                cursor = collection.find(query.filter or {}, max_time_ms=timeout_ms).limit(fetch)
            else:
                pipeline = list(query.pipeline or []) + [{"$limit": fetch}]
                cursor = collection.aggregate(pipeline, maxTimeMS=timeout_ms)
            documents = list(cursor)
        except PyMongoError as e:
            raise QueryError(f"MongoDB query failed: {e}", engine=self.ENGINE, original_error=e)
        duration = self._elapsed_ms(started)

        truncated = detect_truncation and len(documents) > cap
        if truncated:
            documents = documents[:cap]
            logger.info(f"MongoDB result truncated at {cap} rows (source '{self.config.id}')")
        return documents_to_result(documents, duration, truncated)
