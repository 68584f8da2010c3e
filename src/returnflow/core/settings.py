"""Singleton settings accessor for returnflow configuration.

Usage:
    from returnflow.core.settings import get_settings

    settings = get_settings()

The settings are loaded once and cached. To reload settings (e.g., in tests),
use clear_settings_cache().
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import ValidationError

from returnflow.core.config import (
    ConfigValidationError,
    Settings,
    validate_settings,
)

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the cached application settings.

    Settings are loaded from environment variables on first call and
    cached for subsequent calls.

    Returns:
        Validated Settings instance.

    Raises:
        SystemExit: If settings cannot be loaded (fail-fast behavior).
    """
    try:
        logger.info("Loading application settings from environment")
        settings = Settings()
        validate_settings(settings)

        logger.info(
            "Configuration loaded: environment=%s, config_hash=%s",
            settings.environment.value,
            settings.get_config_hash()[:16] + "...",
        )

        return settings

    except ValidationError as e:
        error_messages = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            error_messages.append(f"  - {loc}: {error['msg']}")

        logger.critical(
            "Configuration validation failed:\n%s",
            "\n".join(error_messages),
        )
        raise SystemExit(1) from e

    except ConfigValidationError as e:
        logger.critical(
            "Configuration validation failed: %s (field: %s)",
            e.message,
            e.field or "unknown",
        )
        raise SystemExit(1) from e


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Use this function in tests to reset settings between test cases,
    or when configuration needs to be reloaded.
    """
    get_settings.cache_clear()
    logger.debug("Settings cache cleared")


def get_settings_safe() -> Settings | None:
    """Get settings without raising; returns None if they cannot be loaded."""
    try:
        return get_settings()
    except SystemExit:
        return None


DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(
    settings: Settings | None = None,
    log_format: str = DEFAULT_LOG_FORMAT,
    filters: list[logging.Filter] | None = None,
) -> None:
    """Configure root logging from settings.

    Args:
        settings: Settings to read the level from. Defaults to cached settings,
            falling back to INFO when configuration is unavailable.
        log_format: Format string for the root handler.
        filters: Filters attached to every root handler (e.g. request id).
    """
    settings = settings or get_settings_safe()
    level = settings.log_level if settings else "INFO"
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=log_format,
    )
    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers:
        for log_filter in filters or ():
            handler.addFilter(log_filter)
