"""
QueryGate - Main Application

Secure query gateway over heterogeneous data sources (PostgreSQL, MySQL,
MongoDB).

PRODUCTION FEATURES:
--------------------
- One pooled adapter per data source, rebuilt when connection details change
- Statement safety checks before any connection is touched
- Result cache in Redis that fails open
- Source passwords encrypted with Fernet in the SQLite registry
- Structured errors and logging (request tracing)
"""

import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from querygate.adapters.registry import AdapterRegistry, resolve_engine
from querygate.cache import create_query_cache
from querygate.core.config import get_settings
from querygate.errors import install_error_handlers, source_not_found
from querygate.gateway import QueryGateway
from querygate.models import QueryRequest, QueryResponse, SourceCreate, SourceUpdate
from querygate.sources import create_config_store, to_public_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

settings = get_settings()

request_id_var: ContextVar[str] = ContextVar("request_id", default="-")

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)


# Add request_id filter
class RequestIdFilter(logging.Filter):
    def filter(self, record):
        if not hasattr(record, 'request_id'):
            record.request_id = request_id_var.get()
        return True


for handler in logging.root.handlers:
    handler.addFilter(RequestIdFilter())

logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION INITIALIZATION
# =============================================================================

app = FastAPI(
    title="QueryGate API",
    version=settings.app_version,
    description="Secure query gateway for PostgreSQL, MySQL and MongoDB data sources"
)

install_error_handlers(app)

app.state.gateway = QueryGateway(
    store=create_config_store(settings),
    registry=AdapterRegistry(settings),
    cache=create_query_cache(settings),
    settings=settings,
)


def get_gateway(request: Request) -> QueryGateway:
    """Gateway dependency (overridden in tests)."""
    return request.app.state.gateway


# =============================================================================
# STARTUP & SHUTDOWN
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Log configuration that is unsafe or degraded."""
    problems = []
    if settings.source_store == "sqlite" and not settings.secret_key:
        problems.append("SECRET_KEY is not set; source passwords use the development key")
    if not settings.cache_enabled or settings.cache_backend == "none":
        problems.append("query cache disabled")
    if not settings.read_only_sessions:
        problems.append("read-only sessions disabled")

    for problem in problems:
        logger.warning(f"Startup: {problem}")
    logger.info(
        f"{settings.app_name} {settings.app_version} started "
        f"(environment={settings.environment}, engines={', '.join(app.state.gateway.registry.engines)})"
    )


@app.on_event("shutdown")
def shutdown_event():
    """Release every pooled connection."""
    closed = app.state.gateway.close_all()
    logger.info(f"Shutdown: closed {closed} adapter(s)")


# =============================================================================
# MIDDLEWARE
# =============================================================================

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Tag the request (and every log line it produces) with an id."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
    request.state.request_id = request_id
    token = request_id_var.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)
    response.headers["X-Request-ID"] = request_id
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


# =============================================================================
# PUBLIC ENDPOINTS
# =============================================================================

@app.get("/v1/health", tags=["Health"])
def health(gateway: QueryGateway = Depends(get_gateway)):
    """Liveness plus cache and pool summary."""
    cache_stats = gateway.cache.get_cache_stats()

    return {
        "status": "ok",
        "time": datetime.now(timezone.utc).isoformat(),
        "version": settings.app_version,
        "cache": {
            "enabled": cache_stats.get("enabled"),
            "backend": cache_stats.get("backend"),
        },
        "activeConnections": len(gateway.registry.active_ids()),
    }


# =============================================================================
# SOURCE MANAGEMENT
# =============================================================================

@app.get("/v1/sources", tags=["Sources"])
def list_sources(gateway: QueryGateway = Depends(get_gateway)):
    """List all registered sources (credentials never included)."""
    return {"items": [to_public_dict(config) for config in gateway.store.list()]}


@app.post("/v1/sources", status_code=201, tags=["Sources"])
def create_source(payload: SourceCreate, gateway: QueryGateway = Depends(get_gateway)):
    """Register a data source; the type must map to a known engine."""
    resolve_engine(payload.type, gateway.registry.engines)
    config = gateway.store.create(payload)
    return to_public_dict(config)


@app.put("/v1/sources/{sourceId}", tags=["Sources"])
def update_source(sourceId: str, payload: SourceUpdate, gateway: QueryGateway = Depends(get_gateway)):
    """Update a data source; its live adapter and cached results are dropped."""
    if payload.type is not None:
        resolve_engine(payload.type, gateway.registry.engines)
    config = gateway.store.update(sourceId, payload)
    if config is None:
        raise source_not_found(sourceId)
    gateway.close_adapter(sourceId)
    return to_public_dict(config)


@app.delete("/v1/sources/{sourceId}", tags=["Sources"])
def delete_source(sourceId: str, gateway: QueryGateway = Depends(get_gateway)):
    """Delete a data source and close its connections."""
    if not gateway.store.delete(sourceId):
        raise source_not_found(sourceId)
    gateway.close_adapter(sourceId)
    return {"success": True, "id": sourceId}


@app.post("/v1/sources/{sourceId}/test", tags=["Sources"])
def test_source(sourceId: str, gateway: QueryGateway = Depends(get_gateway)):
    """Open (or reuse) the pool and run a health query."""
    status = gateway.test_connection(sourceId)
    return {"success": status.connected, **status.model_dump()}


@app.get("/v1/sources/{sourceId}/status", tags=["Sources"])
def source_status(sourceId: str, gateway: QueryGateway = Depends(get_gateway)):
    """Last known connection state (no network I/O)."""
    return gateway.connection_status(sourceId).model_dump()


# =============================================================================
# SCHEMA INTROSPECTION
# =============================================================================

@app.get("/v1/sources/{sourceId}/schemas", tags=["Schema"])
def get_schemas(sourceId: str, gateway: QueryGateway = Depends(get_gateway)):
    return {"items": gateway.get_schemas(sourceId)}


@app.get("/v1/sources/{sourceId}/tables", tags=["Schema"])
def get_tables(sourceId: str, schema: Optional[str] = None, gateway: QueryGateway = Depends(get_gateway)):
    tables = gateway.get_tables(sourceId, schema)
    return {"items": [table.model_dump(by_alias=True) for table in tables]}


@app.get("/v1/sources/{sourceId}/tables/{table}/columns", tags=["Schema"])
def get_table_columns(sourceId: str, table: str, schema: Optional[str] = None,
                      gateway: QueryGateway = Depends(get_gateway)):
    columns = gateway.get_table_schema(sourceId, table, schema)
    return {"items": [column.model_dump() for column in columns]}


@app.get("/v1/sources/{sourceId}/tables/{table}/preview", response_model=QueryResponse, tags=["Schema"])
def preview_table(sourceId: str, table: str, schema: Optional[str] = None,
                  limit: int = Query(100, ge=1, le=1000),
                  gateway: QueryGateway = Depends(get_gateway)):
    return QueryResponse.from_result(gateway.preview_table(sourceId, table, schema, limit))


# =============================================================================
# QUERY ENDPOINT
# =============================================================================

@app.post("/v1/query", response_model=QueryResponse, tags=["Query"])
def run_query(req: QueryRequest, gateway: QueryGateway = Depends(get_gateway)):
    """
    Execute one read-only statement against a registered source.

    SQL sources accept a single SELECT / WITH / SHOW / DESCRIBE / EXPLAIN /
    ANALYZE statement. MongoDB sources accept db.<collection>.find(...) or
    db.<collection>.aggregate([...]), optionally followed by .limit(n).
    """
    result = gateway.execute(req.configId, req.text, use_cache=req.useCache)
    return QueryResponse.from_result(result)


# =============================================================================
# INTERNAL ADMIN ENDPOINTS
# =============================================================================

@app.delete("/v1/cache", tags=["Internal"])
def clear_cache(sourceId: Optional[str] = None, gateway: QueryGateway = Depends(get_gateway)):
    """Drop cached results for one source, or all of them."""
    removed = gateway.cache.invalidate(sourceId)
    return {"success": True, "removed": removed}


@app.get("/internal/status", tags=["Internal"])
def internal_status(gateway: QueryGateway = Depends(get_gateway)):
    """Detailed system status for operations."""
    return {
        "status": "ok",
        "time": datetime.now(timezone.utc).isoformat(),
        "version": settings.app_version,
        "environment": settings.environment,
        **gateway.status(),
        "limits": {
            "query_timeout_seconds": settings.query_timeout_seconds,
            "query_max_rows": settings.query_max_rows,
            "pool_size": settings.pool_size,
            "read_only_sessions": settings.read_only_sessions,
        },
    }
