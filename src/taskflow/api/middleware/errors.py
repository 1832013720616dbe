"""Error handling middleware for consistent JSON error responses.

All errors are converted to one JSON structure:
- error: Error type/code
- message: Human-readable description
- detail: Optional additional information
- request_id: Correlation ID for debugging

Service exceptions raised by the core (unknown queue, missing entity,
unreachable store) are mapped to status codes here so routers can let
them propagate.
"""

import logging
from collections.abc import Callable
from typing import Any

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from taskflow.api.middleware.request_id import get_request_id
from taskflow.services.job_queue import (
    JobNotDeadError,
    JobNotFoundError,
    JobQueueError,
    QueueNotDeclaredError,
)
from taskflow.services.repository import EntityNotFoundError, RepositoryError

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base exception for API errors with structured details."""

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int = 400,
        detail: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Initialize API error.

        Args:
            error: Machine-readable error code (e.g., "validation_error").
            message: Human-readable error description.
            status_code: HTTP status code to return.
            detail: Optional additional details for debugging.
            headers: Optional response headers.
        """
        self.error = error
        self.message = message
        self.status_code = status_code
        self.detail = detail
        self.headers = headers
        super().__init__(message)


class NotFoundError(APIError):
    """Resource not found error (404)."""

    def __init__(
        self, resource: str, identifier: str, detail: dict[str, Any] | None = None
    ) -> None:
        super().__init__(
            error="not_found",
            message=f"{resource} not found: {identifier}",
            status_code=404,
            detail=detail,
        )


class AuthenticationError(APIError):
    """Authentication error (401)."""

    def __init__(
        self, message: str = "Authentication required", detail: dict[str, Any] | None = None
    ) -> None:
        super().__init__(
            error="unauthorized",
            message=message,
            status_code=401,
            detail=detail,
            headers={"WWW-Authenticate": "Basic"},
        )


class ServiceUnavailableError(APIError):
    """A backing store could not be reached (503)."""

    def __init__(self, message: str = "Service temporarily unavailable") -> None:
        super().__init__(error="service_unavailable", message=message, status_code=503)


def build_error_response(
    error: str,
    message: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Build a standardized error response."""
    body: dict[str, Any] = {
        "error": error,
        "message": message,
    }

    request_id = get_request_id()
    if request_id:
        body["request_id"] = request_id

    if detail:
        body["detail"] = detail

    return JSONResponse(status_code=status_code, content=body, headers=headers)


def to_api_error(exc: Exception) -> APIError | None:
    """Map a core service exception to an APIError, or None if unknown."""
    if isinstance(exc, QueueNotDeclaredError):
        return APIError("not_found", str(exc), status_code=404)
    if isinstance(exc, JobNotFoundError | EntityNotFoundError):
        return APIError("not_found", str(exc), status_code=404)
    if isinstance(exc, JobNotDeadError):
        return APIError("conflict", str(exc), status_code=409)
    if isinstance(exc, JobQueueError | RepositoryError):
        logger.error("Store error while serving request: %s", exc)
        return ServiceUnavailableError()
    return None


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Middleware that catches exceptions and returns consistent JSON errors.

    Handles:
    - APIError and subclasses: Custom application errors
    - Core service errors: mapped by to_api_error()
    - HTTPException: FastAPI's built-in HTTP errors
    - ValidationError: Pydantic validation failures
    - Generic exceptions: Unexpected errors (logged, returns 500)
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        try:
            return await call_next(request)
        except APIError as exc:
            return build_error_response(
                error=exc.error,
                message=exc.message,
                status_code=exc.status_code,
                detail=exc.detail,
                headers=exc.headers,
            )
        except HTTPException as exc:
            return build_error_response(
                error="http_error",
                message=str(exc.detail),
                status_code=exc.status_code,
                headers=exc.headers,
            )
        except ValidationError as exc:
            return build_error_response(
                error="validation_error",
                message="Request validation failed",
                status_code=422,
                detail={"errors": exc.errors(include_url=False, include_context=False)},
            )
        except Exception as exc:
            mapped = to_api_error(exc)
            if mapped is not None:
                return build_error_response(
                    error=mapped.error,
                    message=mapped.message,
                    status_code=mapped.status_code,
                )
            logger.exception(
                "Unexpected error processing request: %s %s",
                request.method,
                request.url.path,
            )
            return build_error_response(
                error="internal_error",
                message="An internal error occurred",
                status_code=500,
            )
