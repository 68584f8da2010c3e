"""returnflow core module.

Shared components used across all services:
- Configuration management
- Logging setup
"""

from returnflow.core.config import (
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    IdempotencySettings,
    ParcelTrackingSettings,
    Settings,
)
from returnflow.core.settings import (
    clear_settings_cache,
    configure_logging,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "IdempotencySettings",
    "ParcelTrackingSettings",
    "Settings",
    "clear_settings_cache",
    "configure_logging",
    "get_settings",
    "get_settings_safe",
]
