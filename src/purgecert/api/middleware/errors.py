"""Error handling middleware for consistent JSON error responses.

Every error body has the same shape:
- error: machine-readable code
- message: human-readable description
- detail: optional structured information
- request_id: correlation ID

Service-layer exceptions are translated here, so routers can let them
propagate instead of wrapping every call.
"""

import logging
from collections.abc import Callable
from typing import Any

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from purgecert.api.middleware.request_id import get_request_id
from purgecert.services.certification import CertificateNotFoundError
from purgecert.services.job_queue import JobNotFoundError, JobQueueError
from purgecert.services.ledger import LedgerConflictError
from purgecert.services.legal_holds import (
    HoldAlreadyReleasedError,
    HoldNotFoundError,
    InvalidHoldError,
)
from purgecert.services.policies import (
    InvalidPolicySpec,
    PolicyConflictError,
    PolicyNotFoundError,
)
from purgecert.services.record_store import RecordStoreUnavailable
from purgecert.services.runs import RunAlreadyActiveError, RunNotActiveError, RunNotFoundError
from purgecert.services.signing import KeyNotFoundError, KeyRotationConflictError

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base exception for API errors with structured details."""

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int = 400,
        detail: dict[str, Any] | None = None,
    ) -> None:
        """Initialize API error.

        Args:
            error: Machine-readable error code (e.g., "validation_error").
            message: Human-readable error description.
            status_code: HTTP status code to return.
            detail: Optional additional details.
        """
        self.error = error
        self.message = message
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)


class NotFoundError(APIError):
    """Resource not found error (404)."""

    def __init__(self, message: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__(error="not_found", message=message, status_code=404, detail=detail)


class ValidationAPIError(APIError):
    """Request validation error (422)."""

    def __init__(self, message: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__(
            error="validation_error", message=message, status_code=422, detail=detail
        )


class ConflictError(APIError):
    """State conflict error (409)."""

    def __init__(
        self,
        message: str,
        error: str = "conflict",
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(error=error, message=message, status_code=409, detail=detail)


class AuthenticationError(APIError):
    """Missing operator identity (401)."""

    def __init__(
        self, message: str = "Operator identity required", detail: dict[str, Any] | None = None
    ) -> None:
        super().__init__(error="unauthorized", message=message, status_code=401, detail=detail)


class ServiceUnavailableError(APIError):
    """A dependency could not serve the request (503)."""

    def __init__(self, message: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__(
            error="service_unavailable", message=message, status_code=503, detail=detail
        )


def translate_service_error(exc: Exception) -> APIError | None:
    """Map a service-layer exception to its API error, None if unknown."""
    message = str(exc)
    if isinstance(exc, InvalidPolicySpec):
        return ValidationAPIError(message, detail={"errors": list(exc.errors)})
    if isinstance(exc, InvalidHoldError):
        return ValidationAPIError(message)
    if isinstance(
        exc,
        PolicyNotFoundError
        | HoldNotFoundError
        | RunNotFoundError
        | CertificateNotFoundError
        | KeyNotFoundError
        | JobNotFoundError,
    ):
        return NotFoundError(message)
    if isinstance(exc, RunAlreadyActiveError):
        return ConflictError(
            message, error="run_already_active", detail={"policy_id": str(exc.policy_id)}
        )
    if isinstance(
        exc,
        PolicyConflictError
        | HoldAlreadyReleasedError
        | RunNotActiveError
        | KeyRotationConflictError
        | JobQueueError,
    ):
        return ConflictError(message)
    if isinstance(exc, LedgerConflictError | RecordStoreUnavailable):
        return ServiceUnavailableError(message)
    return None


def build_error_response(
    error: str,
    message: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
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

    return JSONResponse(status_code=status_code, content=body)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catches exceptions and returns consistent JSON errors.

    Handles:
    - APIError and subclasses
    - service-layer exceptions with a known translation
    - HTTPException
    - pydantic ValidationError
    - anything else: logged, 500
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
            )
        except HTTPException as exc:
            return build_error_response(
                error="http_error",
                message=str(exc.detail),
                status_code=exc.status_code,
            )
        except ValidationError as exc:
            return build_error_response(
                error="validation_error",
                message="Request validation failed",
                status_code=422,
                detail={"errors": exc.errors(include_url=False)},
            )
        except Exception as exc:
            translated = translate_service_error(exc)
            if translated is not None:
                logger.info(
                    "Request rejected: %s %s error=%s message=%s",
                    request.method,
                    request.url.path,
                    translated.error,
                    translated.message,
                )
                return build_error_response(
                    error=translated.error,
                    message=translated.message,
                    status_code=translated.status_code,
                    detail=translated.detail,
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
