"""Transport layer: wire codec, transports and shard topology."""

from .base import NodeReplacedListener, PubSubIntrospection, TopologyProvider, Transport
from .frames import (
    CommandReply,
    NodeAddress,
    ParsedFrame,
    Reconnected,
    SubscriptionAck,
    build_command,
    parse_push,
)
from .memory import InMemoryTransport
from .redis_transport import RedisTransport
from .topology import StaticTopology, channel_slot

__all__ = [
    # Protocols
    "NodeReplacedListener",
    "PubSubIntrospection",
    "TopologyProvider",
    "Transport",
    # Frames
    "CommandReply",
    "NodeAddress",
    "ParsedFrame",
    "Reconnected",
    "SubscriptionAck",
    "build_command",
    "parse_push",
    # Implementations
    "InMemoryTransport",
    "RedisTransport",
    "StaticTopology",
    "channel_slot",
]
