"""kvpubsub: asyncio publish/subscribe engine for Redis-compatible servers.

This package contains:
- engine: subscription registry, matching, dispatch and the Subscriber facade
- transport: wire codec, Redis and in-memory transports, shard topology
- redis_client: command client for publishing and PUBSUB queries
- models: Pydantic and dataclass models
- config: Configuration management
- observability: Structured logging
"""

from .config import DispatchMode, PubSubSettings, QueueFullMode, get_settings
from .engine import ConsumerHandle, PullQueue, Subscriber
from .errors import (
    InvalidSubscriptionError,
    PubSubConnectionError,
    PubSubError,
    QueueClosedError,
    ShardRoutingError,
    SubscriptionTimeoutError,
)
from .models import (
    PublishedMessage,
    PubSubState,
    SubscribeMode,
    SubscriptionConfig,
    SubscriptionKey,
    SubscriptionKind,
)
from .redis_client import RedisClient
from .transport import InMemoryTransport, RedisTransport, StaticTopology

__version__ = "0.1.0"

__all__ = [
    # Facade
    "Subscriber",
    "ConsumerHandle",
    "PullQueue",
    # Models
    "PublishedMessage",
    "PubSubState",
    "SubscribeMode",
    "SubscriptionConfig",
    "SubscriptionKey",
    "SubscriptionKind",
    # Transport
    "InMemoryTransport",
    "RedisTransport",
    "StaticTopology",
    "RedisClient",
    # Configuration
    "DispatchMode",
    "PubSubSettings",
    "QueueFullMode",
    "get_settings",
    # Errors
    "InvalidSubscriptionError",
    "PubSubConnectionError",
    "PubSubError",
    "QueueClosedError",
    "ShardRoutingError",
    "SubscriptionTimeoutError",
]
