"""
Shared data model for QueryGate.

These models are the engine-agnostic vocabulary spoken by every adapter,
the adapter registry, the query gateway and the HTTP surface. Field names
follow the JSON shape the dashboard UI consumes (camelCase).
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

TableType = Literal["table", "view", "collection"]


class DataSourceConfig(BaseModel):
    """
    Connection details for one registered data source.

    Owned by the persistence layer. The gateway treats it as immutable, but a
    caller may hand in an updated record under the same id; the adapter
    registry detects that through the config signature.
    """
    id: str
    type: str
    name: str = ""
    host: str
    port: int
    database: str
    username: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)
    ssl: bool = False
    connectionOptions: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("type")
    @classmethod
    def _normalize_type(cls, value: str) -> str:
        return value.strip().lower()


class SchemaColumn(BaseModel):
    name: str
    type: str
    nullable: bool
    isPrimaryKey: bool = False
    isForeignKey: bool = False
    defaultValue: Optional[Any] = None
    comment: Optional[str] = None


class SchemaTable(BaseModel):
    name: str
    schema_: Optional[str] = Field(default=None, alias="schema")
    type: TableType = "table"
    rowCount: Optional[int] = None
    sizeBytes: Optional[int] = None
    columns: Optional[List[SchemaColumn]] = None

    model_config = {"populate_by_name": True}


class QueryResult(BaseModel):
    """
    Canonical result of a single query.

    Attributes:
        columns: Ordered, unique column names
        data: Rows keyed by column name (every row carries every column)
        rowCount: Number of rows in data
        duration: Execution time in milliseconds
        truncated: True when the row cap cut the result short
        cached: True when served from the query cache
    """
    columns: List[str]
    data: List[Dict[str, Any]]
    rowCount: int
    duration: float
    truncated: bool = False
    cached: bool = False

    @model_validator(mode="after")
    def _check_shape(self) -> "QueryResult":
        if len(set(self.columns)) != len(self.columns):
            raise ValueError("Result columns must be unique")
        expected = set(self.columns)
        for row in self.data:
            if row.keys() != expected:
                raise ValueError("Every row must be keyed by exactly the result columns")
        return self


class ConnectionStatus(BaseModel):
    connected: bool
    error: Optional[str] = None


class CacheEntry(BaseModel):
    """Serialized form of a cached QueryResult."""
    result: QueryResult
    cachedAt: datetime
    ttlSeconds: int

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return (now - self.cachedAt).total_seconds() >= self.ttlSeconds


# =============================================================================
# API REQUEST / RESPONSE MODELS
# =============================================================================

class QueryRequest(BaseModel):
    configId: str
    text: str
    useCache: bool = True


class QueryResponse(BaseModel):
    success: bool = True
    columns: List[str]
    data: List[Dict[str, Any]]
    rowCount: int
    duration: float
    cached: bool = False
    truncated: bool = False

    @classmethod
    def from_result(cls, result: QueryResult) -> "QueryResponse":
        return cls(
            columns=result.columns,
            data=result.data,
            rowCount=result.rowCount,
            duration=result.duration,
            cached=result.cached,
            truncated=result.truncated,
        )


class SourceCreate(BaseModel):
    """Payload for registering a data source (id is assigned by the store)."""
    type: str
    name: str
    host: str
    port: int
    database: str
    username: Optional[str] = None
    password: Optional[str] = None
    ssl: bool = False
    connectionOptions: Dict[str, Any] = Field(default_factory=dict)


class SourceUpdate(BaseModel):
    type: Optional[str] = None
    name: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    ssl: Optional[bool] = None
    connectionOptions: Optional[Dict[str, Any]] = None
