"""Interfaces the engine consumes from its collaborators."""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from typing import Protocol, runtime_checkable

from .frames import NodeAddress, ParsedFrame

NodeReplacedListener = Callable[[NodeAddress, NodeAddress], Awaitable[None] | None]


@runtime_checkable
class Transport(Protocol):
    """Server-facing connection(s) carrying pub/sub traffic."""

    async def send(self, command: Sequence[str], node: NodeAddress | None = None) -> None:
        """Write a command; ``node`` selects a cluster node, None the default connection."""
        ...

    def receive(self) -> AsyncIterator[ParsedFrame]:
        """Yield parsed frames in arrival order until the transport closes."""
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class TopologyProvider(Protocol):
    """Resolves shard channel owners in a clustered deployment."""

    def resolve_shard_owner(self, channel: str) -> NodeAddress:
        """Return the node serving the slot of ``channel``."""
        ...

    def add_listener(self, listener: NodeReplacedListener) -> None:
        """Register a callback invoked as ``listener(old, new)`` when a node is replaced."""
        ...


@runtime_checkable
class PubSubIntrospection(Protocol):
    """Read-only server queries delegated to the ordinary command layer."""

    async def pubsub_channels(self, pattern: str | None = None) -> list[str]:
        ...

    async def pubsub_numsub(self, *channels: str) -> dict[str, int]:
        ...

    async def pubsub_numpat(self) -> int:
        ...

    async def pubsub_shard_channels(self, pattern: str | None = None) -> list[str]:
        ...

    async def pubsub_shard_numsub(self, *channels: str) -> dict[str, int]:
        ...
