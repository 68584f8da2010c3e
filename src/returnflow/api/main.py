"""returnflow API service entry point.

This module provides the application instance for ASGI servers (uvicorn)
and a run() function for direct execution.
"""

import logging

from returnflow.api import create_app
from returnflow.api.middleware.request_id import RequestIDLogFilter
from returnflow.core.settings import configure_logging, get_settings

logger = logging.getLogger(__name__)

REQUEST_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] [%(request_id)s] %(message)s"

# uvicorn references returnflow.api.main:app
app = create_app()


def run() -> None:
    """Run the API server using uvicorn.

    Called by the returnflow-api console script defined in pyproject.toml.
    """
    import uvicorn

    settings = get_settings()
    configure_logging(settings, REQUEST_LOG_FORMAT, [RequestIDLogFilter()])

    logger.info("Starting returnflow API on %s:%d", settings.api_host, settings.api_port)

    uvicorn.run(
        "returnflow.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
        log_config=None,
    )


if __name__ == "__main__":
    run()
