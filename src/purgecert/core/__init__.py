"""purgecert core module.

Shared configuration used across the API, worker and services.
"""

from purgecert.core.config import (
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    ExecutionSettings,
    RecordStoreSettings,
    RetentionSettings,
    RiskSettings,
    SchedulerSettings,
    Settings,
    SigningSettings,
)
from purgecert.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "ExecutionSettings",
    "RecordStoreSettings",
    "RetentionSettings",
    "RiskSettings",
    "SchedulerSettings",
    "Settings",
    "SigningSettings",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
]
