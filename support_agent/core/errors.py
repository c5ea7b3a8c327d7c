"""
Error kinds raised by the support agent and their mapping onto HTTP responses.

Each kind is its own exception class carrying a typed payload; the FastAPI
handlers registered by `register_exception_handlers` turn them into the
structured error body `{error, message, details, timestamp, path}`.
"""
import enum
import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from support_agent.core.config import settings

logger = logging.getLogger(__name__)

__all__ = [
    "ErrorKind",
    "SupportAgentError",
    "ValidationError",
    "NotFoundError",
    "RateLimitError",
    "LLMServiceError",
    "StorageError",
    "CacheError",
    "register_exception_handlers",
]


class ErrorKind(str, enum.Enum):
    VALIDATION = "ValidationError"
    NOT_FOUND = "NotFound"
    RATE_LIMIT = "RateLimitExceeded"
    LLM_SERVICE = "LLMServiceError"
    STORAGE = "DatabaseError"
    CACHE = "CacheError"
    INTERNAL = "InternalServerError"


# Error names for framework-raised HTTP errors that have no ErrorKind of their own
HTTP_ERROR_NAMES = {
    status.HTTP_405_METHOD_NOT_ALLOWED: "MethodNotAllowed",
    status.HTTP_503_SERVICE_UNAVAILABLE: "ServiceUnavailable",
}


class SupportAgentError(Exception):
    """Base class for every error kind. Subclasses fix `kind` and `status_code`."""

    kind: ErrorKind = ErrorKind.INTERNAL
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def details(self) -> Optional[Dict[str, Any]]:
        return None


class ValidationError(SupportAgentError):
    kind = ErrorKind.VALIDATION
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, errors: Optional[List[Dict[str, str]]] = None):
        super().__init__(message)
        self.errors = errors or []

    @property
    def details(self) -> Dict[str, Any]:
        return {"errors": self.errors}


class NotFoundError(SupportAgentError):
    kind = ErrorKind.NOT_FOUND
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str, identifier: Optional[str] = None):
        message = f"{resource} not found: {identifier}" if identifier else f"{resource} not found"
        super().__init__(message)
        self.resource = resource
        self.identifier = identifier

    @property
    def details(self) -> Dict[str, Any]:
        return {"resource": self.resource, "identifier": self.identifier}


class RateLimitError(SupportAgentError):
    kind = ErrorKind.RATE_LIMIT
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, retry_after: int, limit: int, window: str):
        super().__init__(f"Rate limit exceeded. Try again in {retry_after} seconds")
        self.retry_after = retry_after
        self.limit = limit
        self.window = window

    @property
    def details(self) -> Dict[str, Any]:
        return {"retryAfter": self.retry_after, "limit": self.limit, "window": self.window}


class LLMServiceError(SupportAgentError):
    """The upstream chat-completion API could not produce an answer.

    `retriable` tells the caller whether asking the user to try again makes
    sense (transient upstream failure) or not (bad credentials, malformed
    request or response).
    """

    kind = ErrorKind.LLM_SERVICE
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, retriable: bool = True):
        super().__init__(message)
        self.retriable = retriable

    @property
    def details(self) -> Dict[str, Any]:
        return {"retriable": self.retriable}


class StorageError(SupportAgentError):
    kind = ErrorKind.STORAGE
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, operation: str, original: Optional[BaseException] = None):
        super().__init__("Database operation failed")
        self.operation = operation
        self.original = original

    @property
    def details(self) -> Dict[str, Any]:
        return {
            "message": self.operation,
            "originalError": str(self.original) if self.original else None,
        }


class CacheError(SupportAgentError):
    """Raised inside the cache layer only; `CacheService` logs and swallows it."""

    kind = ErrorKind.CACHE
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, operation: str, key: str, original: Optional[BaseException] = None):
        super().__init__(f"Cache {operation} failed for key '{key}'")
        self.operation = operation
        self.key = key
        self.original = original


def _error_body(
    request: Request,
    error: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    exc: Optional[BaseException] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "error": error,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "path": request.url.path,
    }
    if details is not None:
        body["details"] = details
    if exc is not None and not settings.is_production:
        body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return body


async def support_agent_error_handler(request: Request, exc: SupportAgentError) -> JSONResponse:
    logger.error(
        f"Application error {exc.kind.value} ({exc.status_code}) on {request.method} "
        f"{request.url.path}: {exc.message}"
    )
    headers = None
    if isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.kind.value, exc.message, exc.details),
        headers=headers,
    )


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")),
            "message": err.get("msg", ""),
        }
        for err in exc.errors()
    ]
    logger.warning(f"Validation error on {request.method} {request.url.path}: {errors}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body(request, ErrorKind.VALIDATION.value, "Request validation failed", {"errors": errors}),
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == status.HTTP_404_NOT_FOUND:
        error = ErrorKind.NOT_FOUND.value
        message = f"Route {request.method} {request.url.path} not found"
    else:
        error = HTTP_ERROR_NAMES.get(exc.status_code, "HTTPError")
        message = str(exc.detail)
    logger.warning(f"HTTP error {exc.status_code} on {request.method} {request.url.path}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, error, message),
        headers=getattr(exc, "headers", None),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unexpected error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    message = "An unexpected error occurred" if settings.is_production else str(exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(request, ErrorKind.INTERNAL.value, message, exc=exc),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SupportAgentError, support_agent_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
