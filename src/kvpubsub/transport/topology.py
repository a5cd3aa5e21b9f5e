"""Static slot map for shard channel routing.

Shard channels hash to one of 16384 slots exactly like keys, including
``{hash tag}`` handling, and each slot is served by one node.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Iterable, Mapping

from redis.crc import REDIS_CLUSTER_HASH_SLOTS, key_slot

from kvpubsub.errors import ShardRoutingError
from kvpubsub.observability import get_logger

from .base import NodeReplacedListener
from .frames import NodeAddress

logger = get_logger(__name__)


def channel_slot(channel: str) -> int:
    """Hash slot of a shard channel."""
    return key_slot(channel.encode("utf-8", errors="surrogateescape"))


class StaticTopology:
    """Slot ranges mapped to nodes, with node-replacement notifications.

    Implements the TopologyProvider protocol.
    """

    def __init__(
        self,
        nodes: Iterable[NodeAddress] | None = None,
        slots: Mapping[tuple[int, int], NodeAddress] | None = None,
    ):
        """Initialize the slot map.

        Args:
            nodes: Nodes sharing the slot space in equal contiguous ranges
            slots: Explicit inclusive (start, end) ranges per node; overrides nodes
        """
        self._owners: list[NodeAddress | None] = [None] * REDIS_CLUSTER_HASH_SLOTS
        self._listeners: list[NodeReplacedListener] = []

        if slots:
            for (start, end), node in slots.items():
                self.assign(start, end, node)
        elif nodes:
            node_list = list(nodes)
            per_node = -(-REDIS_CLUSTER_HASH_SLOTS // len(node_list))
            for index, node in enumerate(node_list):
                start = index * per_node
                end = min(start + per_node, REDIS_CLUSTER_HASH_SLOTS) - 1
                self.assign(start, end, node)

    def assign(self, start: int, end: int, node: NodeAddress) -> None:
        """Assign an inclusive slot range to a node."""
        if not 0 <= start <= end < REDIS_CLUSTER_HASH_SLOTS:
            raise ValueError(f"Invalid slot range {start}-{end}")
        for slot in range(start, end + 1):
            self._owners[slot] = node

    def nodes(self) -> set[NodeAddress]:
        """All nodes currently owning at least one slot."""
        return {node for node in self._owners if node is not None}

    def resolve_shard_owner(self, channel: str) -> NodeAddress:
        """Return the node serving the slot of ``channel``.

        Raises:
            ShardRoutingError: If no node owns the slot
        """
        slot = channel_slot(channel)
        node = self._owners[slot]
        if node is None:
            raise ShardRoutingError(f"No node owns slot {slot} for shard channel {channel!r}")
        return node

    def add_listener(self, listener: NodeReplacedListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: NodeReplacedListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def replace_node(self, old: NodeAddress, new: NodeAddress) -> None:
        """Move every slot of ``old`` to ``new`` and notify listeners.

        Args:
            old: Node being replaced
            new: Node taking over its slots
        """
        moved = 0
        for slot, owner in enumerate(self._owners):
            if owner == old:
                self._owners[slot] = new
                moved += 1

        logger.info("Node replaced", old_node=old, new_node=new, slots_moved=moved)

        for listener in list(self._listeners):
            try:
                result = listener(old, new)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Node replacement listener failed",
                    old_node=old,
                    new_node=new,
                    error=str(e),
                )
