"""Pub/sub engine: matching, registry, dispatch and subscription coordination."""

from .consumers import CallbackConsumer, Consumer, ConsumerHandle, QueueConsumer
from .coordinator import OperationState, PendingOperation, SubscriptionCoordinator
from .dispatcher import MessageDispatcher
from .matcher import compile_pattern, glob_match, match_keys, validate_key
from .queue import PullQueue
from .reader import FrameReader
from .registry import SubscriptionRegistry, Unbound
from .subscriber import Subscriber

__all__ = [
    # Facade
    "Subscriber",
    # Matching
    "compile_pattern",
    "glob_match",
    "match_keys",
    "validate_key",
    # Registry
    "SubscriptionRegistry",
    "Unbound",
    # Consumers
    "CallbackConsumer",
    "Consumer",
    "ConsumerHandle",
    "QueueConsumer",
    "PullQueue",
    # Dispatch and coordination
    "FrameReader",
    "MessageDispatcher",
    "OperationState",
    "PendingOperation",
    "SubscriptionCoordinator",
]
