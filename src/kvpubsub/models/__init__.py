"""Data models for kvpubsub.

All models follow these conventions:
- Keys and messages are immutable values
- Field names: lowercase snake_case
- Enums: uppercase SNAKE_CASE members with lowercase values
"""

# Base
from .base import PubSubBaseModel

# Counters
from .metrics import DispatcherStats, QueueMetrics

# Subscriptions
from .subscriptions import (
    MessageCallback,
    PublishedMessage,
    PubSubState,
    SubscribeMode,
    SubscriptionAction,
    SubscriptionConfig,
    SubscriptionKey,
    SubscriptionKind,
)

__all__ = [
    # Base
    "PubSubBaseModel",
    # Counters
    "DispatcherStats",
    "QueueMetrics",
    # Subscriptions
    "MessageCallback",
    "PublishedMessage",
    "PubSubState",
    "SubscribeMode",
    "SubscriptionAction",
    "SubscriptionConfig",
    "SubscriptionKey",
    "SubscriptionKind",
]
