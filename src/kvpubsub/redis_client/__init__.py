"""Redis command client used for publishing and PUBSUB queries."""

from .client import RedisClient

__all__ = [
    "RedisClient",
]
