"""Process-wide settings accessor.

Usage:
    from purgecert.core.settings import get_settings

    settings = get_settings()
    batch_size = settings.execution.batch_size

Settings are read from the environment once. Tests that change the
environment call clear_settings_cache() first.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import ValidationError

from purgecert.core.config import ConfigValidationError, Settings, validate_settings

logger = logging.getLogger(__name__)


def _format_validation_errors(exc: ValidationError) -> str:
    lines = []
    for error in exc.errors():
        location = "__".join(str(part) for part in error["loc"]) or "<root>"
        lines.append(f"  - PURGECERT_{location.upper()}: {error['msg']}")
    return "\n".join(lines)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load, validate and cache the settings.

    Raises:
        SystemExit: If the environment does not describe a usable deployment.
            Services refuse to start rather than run with a bad retention
            or signing configuration.
    """
    try:
        settings = Settings()
        validate_settings(settings)
    except ValidationError as e:
        logger.critical("Invalid purgecert configuration:\n%s", _format_validation_errors(e))
        raise SystemExit(1) from e
    except ConfigValidationError as e:
        logger.critical(
            "Invalid purgecert configuration: %s (field=%s)", e.message, e.field or "unknown"
        )
        raise SystemExit(1) from e

    logger.info(
        "Settings loaded: environment=%s batch_size=%d max_concurrent_batches=%d config_hash=%s",
        settings.environment.value,
        settings.execution.batch_size,
        settings.execution.max_concurrent_batches,
        settings.get_config_hash()[:16],
    )
    return settings


def clear_settings_cache() -> None:
    """Forget the cached settings so the next get_settings() re-reads the environment."""
    get_settings.cache_clear()


def get_settings_safe() -> Settings | None:
    """Settings, or None when the configuration is invalid."""
    try:
        return get_settings()
    except SystemExit:
        return None
