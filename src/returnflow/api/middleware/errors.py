"""Error handling middleware for consistent JSON error responses.

All errors are converted to one JSON structure:
- error: Machine-readable code (the CaseError code for case failures)
- message: Human-readable description
- retryable: Whether the same request may succeed if repeated
- detail: Optional additional information
- request_id: Correlation ID for debugging
"""

import logging
from collections.abc import Callable
from typing import Any

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from returnflow.api.middleware.request_id import get_request_id
from returnflow.services.errors import CaseError

logger = logging.getLogger(__name__)

# CaseError.code -> HTTP status
STATUS_BY_CODE: dict[str, int] = {
    "validation_error": 400,
    "not_found": 404,
    "not_eligible": 409,
    "closed": 409,
    "transition_not_allowed": 409,
    "idempotency_conflict": 409,
    "collaborator_error": 502,
    "unavailable": 503,
}


class APIError(Exception):
    """Base exception for API errors with structured details."""

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int = 400,
        detail: dict[str, Any] | None = None,
        retryable: bool = False,
    ) -> None:
        """Initialize API error.

        Args:
            error: Machine-readable error code (e.g., "validation_error").
            message: Human-readable error description.
            status_code: HTTP status code to return.
            detail: Optional additional details for debugging.
            retryable: Whether repeating the request may succeed.
        """
        self.error = error
        self.message = message
        self.status_code = status_code
        self.detail = detail
        self.retryable = retryable
        super().__init__(message)

    @classmethod
    def from_case_error(cls, exc: CaseError) -> "APIError":
        """Map a service-layer CaseError onto its HTTP status."""
        return cls(
            error=exc.code,
            message=exc.message,
            status_code=STATUS_BY_CODE.get(exc.code, 400),
            detail=exc.detail or None,
            retryable=exc.retryable,
        )


class ValidationAPIError(APIError):
    """Request validation error (400)."""

    def __init__(self, message: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__(
            error="validation_error",
            message=message,
            status_code=400,
            detail=detail,
        )


def build_error_response(
    error: str,
    message: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
    retryable: bool = False,
) -> JSONResponse:
    """Build a standardized error response.

    Args:
        error: Machine-readable error code.
        message: Human-readable description.
        status_code: HTTP status code.
        detail: Optional additional details.
        retryable: Whether repeating the request may succeed.

    Returns:
        JSONResponse with consistent error structure.
    """
    body: dict[str, Any] = {
        "error": error,
        "message": message,
        "retryable": retryable,
    }

    request_id = get_request_id()
    if request_id:
        body["request_id"] = request_id

    if detail:
        body["detail"] = detail

    headers = {"Retry-After": "1"} if retryable else None
    return JSONResponse(status_code=status_code, content=body, headers=headers)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Middleware that catches exceptions and returns consistent JSON errors.

    Handles:
    - CaseError: Service-layer case failures, mapped by code
    - APIError and subclasses: Custom application errors
    - HTTPException: FastAPI's built-in HTTP errors
    - ValidationError: Pydantic validation failures
    - Generic exceptions: Unexpected errors (logged, returns 500)
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        try:
            return await call_next(request)
        except CaseError as exc:
            return self._render(APIError.from_case_error(exc))
        except APIError as exc:
            return self._render(exc)
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
        except Exception:
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

    @staticmethod
    def _render(exc: APIError) -> JSONResponse:
        return build_error_response(
            error=exc.error,
            message=exc.message,
            status_code=exc.status_code,
            detail=exc.detail,
            retryable=exc.retryable,
        )
