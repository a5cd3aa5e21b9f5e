"""Exceptions raised by the pub/sub engine.

Callback failures are not represented here: they are contained by the
dispatcher, logged and counted, and never reach callers.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import SubscriptionKey


class PubSubError(Exception):
    """Base class for pub/sub engine errors."""

    pass


class InvalidSubscriptionError(PubSubError, ValueError):
    """Raised when a channel name or pattern is rejected before any request is sent."""

    pass


class SubscriptionTimeoutError(PubSubError, TimeoutError):
    """Raised when a blocking subscribe/unsubscribe is not acknowledged in time.

    The registry is left as it was before the call, so the call is safe to retry.
    """

    def __init__(self, key: SubscriptionKey, action: str, timeout: float):
        self.key = key
        self.action = action
        self.timeout = timeout
        super().__init__(f"{action} {key} not acknowledged within {timeout:.3f}s")


class PubSubConnectionError(PubSubError, ConnectionError):
    """Raised when the transport fails under an in-flight operation."""

    pass


class ShardRoutingError(PubSubConnectionError):
    """Raised when the node owning a shard channel cannot be resolved or reached."""

    pass


class QueueClosedError(PubSubError):
    """Raised when reading from a pull queue whose consumer has been detached."""

    pass
