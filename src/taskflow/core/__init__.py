"""TaskFlow Core module.

Shared components used across all services:
- Configuration management
- Settings accessor
"""

from taskflow.core.config import (
    AdminSettings,
    CacheSettings,
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    PushSettings,
    QueueSettings,
    RedisSettings,
    Settings,
    SMTPSettings,
    WorkerSettings,
)
from taskflow.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "AdminSettings",
    "CacheSettings",
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "PushSettings",
    "QueueSettings",
    "RedisSettings",
    "SMTPSettings",
    "Settings",
    "WorkerSettings",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
]
