"""Request ID middleware.

Every response carries an X-Request-ID header. A client-supplied id is kept
so retries of the same command can be correlated in logs; otherwise a UUID
is generated. The id is also attached to log records through
``RequestIDLogFilter`` and to error bodies.
"""

import logging
import uuid
from collections.abc import Callable
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)

REQUEST_ID_HEADER = "X-Request-ID"

# Client ids longer than this are replaced
MAX_REQUEST_ID_LENGTH = 128


def get_request_id() -> str | None:
    """Request id of the current request, or None outside a request."""
    return request_id_ctx.get()


class RequestIDLogFilter(logging.Filter):
    """Adds ``request_id`` to every log record (``-`` outside requests)."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get() or "-"
        return True


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Binds a request id to the request context and echoes it back."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        incoming = request.headers.get(REQUEST_ID_HEADER)
        if not incoming or len(incoming) > MAX_REQUEST_ID_LENGTH:
            incoming = str(uuid.uuid4())

        token = request_id_ctx.set(incoming)
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(token)

        response.headers[REQUEST_ID_HEADER] = incoming
        return response
