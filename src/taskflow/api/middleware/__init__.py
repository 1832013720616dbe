"""TaskFlow API middleware components.

- Request ID tracking for log correlation
- Consistent error response formatting
"""

from taskflow.api.middleware.errors import (
    APIError,
    AuthenticationError,
    ErrorHandlerMiddleware,
    NotFoundError,
    ServiceUnavailableError,
)
from taskflow.api.middleware.request_id import RequestIDMiddleware, get_request_id

__all__ = [
    "APIError",
    "AuthenticationError",
    "ErrorHandlerMiddleware",
    "NotFoundError",
    "RequestIDMiddleware",
    "ServiceUnavailableError",
    "get_request_id",
]
