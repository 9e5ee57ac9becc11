"""Core module.

Shared components used across the queue, worker and CLI:
- Configuration management
- Cached settings accessor
"""

from webingest.core.config import (
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    QueueSettings,
    Settings,
    WorkerSettings,
)
from webingest.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "QueueSettings",
    "Settings",
    "WorkerSettings",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
]
