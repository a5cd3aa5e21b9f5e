"""Configuration management module.

This module provides:
- Environment-based configuration with validation
- Cached settings access via get_settings()
"""

from .settings import (
    DispatchMode,
    LogFormat,
    LogLevel,
    PubSubSettings,
    QueueFullMode,
    get_settings,
)

__all__ = [
    # Main settings
    "PubSubSettings",
    "get_settings",
    # Enums
    "DispatchMode",
    "LogFormat",
    "LogLevel",
    "QueueFullMode",
]
