"""returnflow API middleware components.

This module provides middleware for:
- Request ID tracking for log correlation
- Consistent error response formatting
"""

from returnflow.api.middleware.errors import (
    APIError,
    ErrorHandlerMiddleware,
    ValidationAPIError,
    build_error_response,
)
from returnflow.api.middleware.request_id import (
    RequestIDLogFilter,
    RequestIDMiddleware,
    get_request_id,
)

__all__ = [
    "APIError",
    "ErrorHandlerMiddleware",
    "RequestIDLogFilter",
    "RequestIDMiddleware",
    "ValidationAPIError",
    "build_error_response",
    "get_request_id",
]
