"""
QueryGate - Structured Error Handling

Every failure in the gateway is scoped to one request and reported with a
unique, searchable code.

ERROR TAXONOMY:
---------------
- ConfigurationError:    unknown engine type, missing data source
- QueryValidationError:  query text failed the statement-safety checks
- ConnectionFailedError: network/auth failure reaching the engine
- ExecutionError:        the engine accepted the statement but it failed
- CacheError:            cache backend failure (never surfaced to callers)

ERROR RESPONSE FORMAT:
----------------------
{
    "error": {
        "code": "ERR_3003",
        "message": "Statement contains forbidden keyword 'DROP'",
        "details": {"rule": "forbidden_keyword", "keyword": "DROP"},
        "suggestion": "Only read-only statements are allowed",
        "request_id": "abc-123"
    }
}
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# =============================================================================
# ERROR CODES
# =============================================================================

class ErrorCode(str, Enum):
    """Unique error codes for every error type."""

    # Configuration (1xxx)
    ERR_SOURCE_NOT_FOUND = "ERR_1001"
    ERR_ENGINE_UNSUPPORTED = "ERR_1002"

    # Connection (2xxx)
    ERR_CONNECTION_FAILED = "ERR_2001"

    # Query Validation (3xxx)
    ERR_QUERY_EMPTY = "ERR_3001"
    ERR_MULTIPLE_STATEMENTS = "ERR_3002"
    ERR_FORBIDDEN_KEYWORD = "ERR_3003"
    ERR_FORBIDDEN_STATEMENT = "ERR_3004"
    ERR_INVALID_IDENTIFIER = "ERR_3005"
    ERR_DOCUMENT_QUERY_INVALID = "ERR_3006"
    ERR_FORBIDDEN_OPERATOR = "ERR_3007"

    # Query Execution (4xxx)
    ERR_QUERY_FAILED = "ERR_4001"

    # Internal (9xxx)
    ERR_INTERNAL = "ERR_9001"


# =============================================================================
# ERROR TYPES
# =============================================================================

@dataclass
class QueryGateError(Exception):
    """
    Base class for errors returned to API callers.

    Attributes:
        code: ErrorCode, stable across releases (grep logs for it)
        message: What went wrong, safe to show to the caller
        status_code: HTTP status the handler responds with
        details: Machine-readable context such as the violated rule
        suggestion: Optional hint for fixing the request
        request_id: Filled in by the handler from the X-Request-ID header
    """
    code: ErrorCode
    message: str
    status_code: int = 400
    details: Dict[str, Any] = field(default_factory=dict)
    suggestion: Optional[str] = None
    request_id: Optional[str] = None

    def __post_init__(self):
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Response body: {"success": false, "error": {...}}."""
        body: Dict[str, Any] = {"code": self.code.value, "message": self.message}
        for key in ("details", "suggestion", "request_id"):
            value = getattr(self, key)
            if value:
                body[key] = value
        body["timestamp"] = datetime.now(timezone.utc).isoformat()
        return {"success": False, "error": body}

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.to_dict())

    def log(self, level: str = "warning"):
        """Write one log line carrying the code, details and request id."""
        parts = [f"[{self.code.value}] {self.message}"]
        if self.details:
            parts.append(f"details={self.details}")
        if self.request_id:
            parts.append(f"request_id={self.request_id}")
        getattr(logger, level)(" | ".join(parts))


class ConfigurationError(QueryGateError):
    """Unknown engine type or missing data source; fatal to the call only."""


class QueryValidationError(QueryGateError):
    """Query text rejected before any I/O."""

    @property
    def rule(self) -> Optional[str]:
        return self.details.get("rule")


class ConnectionFailedError(QueryGateError):
    """The engine could not be reached or refused the credentials."""


class ExecutionError(QueryGateError):
    """The engine accepted the statement but execution failed."""


class CacheError(Exception):
    """Cache backend failure. Logged and swallowed by the query cache."""


# =============================================================================
# ERROR FACTORY FUNCTIONS
# =============================================================================

def source_not_found(source_id: str, request_id: Optional[str] = None) -> ConfigurationError:
    """Create data source not found error."""
    return ConfigurationError(
        code=ErrorCode.ERR_SOURCE_NOT_FOUND,
        message=f"Data source '{source_id}' not found",
        status_code=404,
        details={"source": source_id},
        suggestion="Register the source using POST /v1/sources first",
        request_id=request_id,
    )


def engine_unsupported(engine: str, available: List[str]) -> ConfigurationError:
    """Create unsupported engine error."""
    return ConfigurationError(
        code=ErrorCode.ERR_ENGINE_UNSUPPORTED,
        message=f"Unsupported data source type: {engine}",
        status_code=400,
        details={"type": engine, "available_types": available},
        suggestion=f"Use one of: {', '.join(available)}",
    )


def connection_failed(source_id: str, reason: str, engine: Optional[str] = None) -> ConnectionFailedError:
    """Create connection failed error."""
    details = {"source": source_id, "reason": reason}
    if engine:
        details["engine"] = engine
    return ConnectionFailedError(
        code=ErrorCode.ERR_CONNECTION_FAILED,
        message=f"Failed to connect to data source '{source_id}': {reason}",
        status_code=503,
        details=details,
        suggestion="Check source credentials and network connectivity.",
    )


_RULE_CODES = {
    "empty": ErrorCode.ERR_QUERY_EMPTY,
    "multi_statement": ErrorCode.ERR_MULTIPLE_STATEMENTS,
    "forbidden_keyword": ErrorCode.ERR_FORBIDDEN_KEYWORD,
    "forbidden_statement": ErrorCode.ERR_FORBIDDEN_STATEMENT,
    "invalid_identifier": ErrorCode.ERR_INVALID_IDENTIFIER,
    "document_shorthand": ErrorCode.ERR_DOCUMENT_QUERY_INVALID,
    "forbidden_operator": ErrorCode.ERR_FORBIDDEN_OPERATOR,
}


def query_rejected(rule: str, message: str, **details: Any) -> QueryValidationError:
    """
    Create a validation error for the statement-safety rule that was violated.

    The rule name is always present in details so callers can branch on it.
    """
    return QueryValidationError(
        code=_RULE_CODES.get(rule, ErrorCode.ERR_FORBIDDEN_STATEMENT),
        message=message,
        status_code=403,
        details={"rule": rule, **details},
        suggestion="Only single, read-only statements are allowed.",
    )


def query_failed(reason: str, engine: Optional[str] = None) -> ExecutionError:
    """Create query execution error; the engine's own message is kept intact."""
    details = {"reason": reason}
    if engine:
        details["engine"] = engine
    return ExecutionError(
        code=ErrorCode.ERR_QUERY_FAILED,
        message=reason,
        status_code=400,
        details=details,
    )


def internal_error(message: str = "An unexpected error occurred", details: Optional[Dict[str, Any]] = None,
                   request_id: Optional[str] = None) -> QueryGateError:
    """Create internal error."""
    return QueryGateError(
        code=ErrorCode.ERR_INTERNAL,
        message=message,
        status_code=500,
        details=details or {},
        request_id=request_id,
    )


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())[:8]


async def querygate_error_handler(request: Request, exc: QueryGateError) -> JSONResponse:
    if not exc.request_id:
        exc.request_id = _request_id(request)
    exc.log("error" if exc.status_code >= 500 else "warning")
    return exc.to_response()


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Wrap plain HTTPExceptions in the same envelope as QueryGateError."""
    request_id = _request_id(request)
    code = f"ERR_HTTP_{exc.status_code}"
    logger.warning(f"[{code}] {exc.detail} | request_id={request_id}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": {
                "code": code,
                "message": str(exc.detail),
                "request_id": request_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        },
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort: log the traceback, answer 500 without internals."""
    request_id = _request_id(request)
    logger.exception(f"Unhandled {type(exc).__name__} | request_id={request_id}")
    return internal_error(details={"exception_type": type(exc).__name__}, request_id=request_id).to_response()


def install_error_handlers(app):
    """Register the handlers above on a FastAPI app."""
    app.add_exception_handler(QueryGateError, querygate_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
