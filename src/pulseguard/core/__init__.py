"""PulseGuard core module.

Shared components used across the API and the worker:
- Configuration management
- Cached settings accessor
"""

from pulseguard.core.config import (
    ClassifierSettings,
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    IngestionSettings,
    RetrySettings,
    Settings,
    WorkerSettings,
)
from pulseguard.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "ClassifierSettings",
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "IngestionSettings",
    "RetrySettings",
    "Settings",
    "WorkerSettings",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
]
