"""Configuration management with Pydantic Settings.

Environment variables are loaded from:
1. Environment variables (highest priority)
2. .env file (development)
3. Defaults (lowest priority)

All engine settings use the ``PUBSUB_`` prefix, e.g. ``PUBSUB_DISPATCH_MODE``.
"""

from enum import Enum
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    """Logging level."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Logging format."""

    JSON = "json"
    TEXT = "text"


class DispatchMode(str, Enum):
    """Where callbacks run.

    - INLINE: on the reader task, in arrival order
    - POOLED: on per-consumer worker tasks, bounded by callback_concurrency
    """

    INLINE = "inline"
    POOLED = "pooled"


class QueueFullMode(str, Enum):
    """What a bounded pull queue does when it is full."""

    WAIT = "wait"  # backpressure bounded by enqueue_timeout, then drop newest
    DROP_OLDEST = "drop_oldest"
    DROP_NEWEST = "drop_newest"


class PubSubSettings(BaseSettings):
    """Pub/sub engine settings.

    All settings can be overridden via environment variables.
    """

    model_config = SettingsConfigDict(
        env_prefix="PUBSUB_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application metadata
    app_name: str = Field(default="kvpubsub", description="Service name in log lines")

    # Logging configuration
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: LogFormat = Field(default=LogFormat.JSON, description="Logging format")

    # Server connection
    redis_url: str = Field(default="redis://localhost:6379", description="Server URL")
    reconnect_backoff_seconds: float = Field(
        default=0.1, description="Initial delay before reconnecting"
    )
    reconnect_backoff_max_seconds: float = Field(
        default=5.0, description="Upper bound for reconnect delay"
    )

    # Subscribe/unsubscribe
    blocking_timeout_seconds: float = Field(
        default=5.0, description="Default deadline for blocking subscribe/unsubscribe"
    )

    # Dispatch
    dispatch_mode: DispatchMode = Field(
        default=DispatchMode.INLINE, description="Where callbacks are invoked"
    )
    callback_concurrency: int = Field(
        default=32, description="Max callbacks running at once in pooled mode"
    )
    shutdown_timeout_seconds: float = Field(
        default=5.0, description="Time allowed for pending callbacks on close"
    )

    # Pull queues
    queue_capacity: int = Field(default=0, description="Pull queue capacity (0 = unbounded)")
    queue_full_mode: QueueFullMode = Field(
        default=QueueFullMode.WAIT, description="Overflow policy for bounded queues"
    )
    enqueue_timeout_seconds: float = Field(
        default=0.1, description="Longest the reader waits on a full queue"
    )

    @field_validator("callback_concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        """Ensure at least one callback can run."""
        return max(1, v)

    @field_validator("queue_capacity")
    @classmethod
    def validate_capacity(cls, v: int) -> int:
        """Negative capacities mean unbounded."""
        return max(0, v)

    @field_validator(
        "blocking_timeout_seconds",
        "shutdown_timeout_seconds",
        "enqueue_timeout_seconds",
        "reconnect_backoff_seconds",
        "reconnect_backoff_max_seconds",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Timeouts must be greater than zero."""
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v


@lru_cache
def get_settings() -> PubSubSettings:
    """Get cached settings instance.

    Uses LRU cache to avoid re-parsing environment variables.
    """
    return PubSubSettings()
