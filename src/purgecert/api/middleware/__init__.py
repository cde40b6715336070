"""purgecert API middleware: request IDs and consistent JSON errors."""

from purgecert.api.middleware.errors import (
    APIError,
    AuthenticationError,
    ConflictError,
    ErrorHandlerMiddleware,
    NotFoundError,
    ValidationAPIError,
)
from purgecert.api.middleware.request_id import RequestIDMiddleware, get_request_id

__all__ = [
    "APIError",
    "AuthenticationError",
    "ConflictError",
    "ErrorHandlerMiddleware",
    "NotFoundError",
    "RequestIDMiddleware",
    "ValidationAPIError",
    "get_request_id",
]
