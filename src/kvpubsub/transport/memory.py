"""Loopback transport emulating a pub/sub server in process.

Used by the test-suite and for local development without a server. It keeps
a server-side view of subscriptions per node, acknowledges requests the way a
server does (one acknowledgement per name) and fans published messages out to
matching subscriptions.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator, Sequence

from kvpubsub.engine.matcher import glob_match
from kvpubsub.errors import PubSubConnectionError
from kvpubsub.models import PublishedMessage, SubscriptionAction, SubscriptionKind
from kvpubsub.observability import get_logger

from .frames import NodeAddress, ParsedFrame, Reconnected, SubscriptionAck, command_action

logger = get_logger(__name__)


class InMemoryTransport:
    """In-process transport with a scripted server.

    Implements the Transport protocol.
    """

    def __init__(self, auto_ack: bool = True, ack_delay: float = 0.0):
        """Initialize the transport.

        Args:
            auto_ack: Acknowledge subscribe/unsubscribe requests automatically
            ack_delay: Seconds to wait before delivering automatic acknowledgements
        """
        self.auto_ack = auto_ack
        self.ack_delay = ack_delay
        self.sent: list[tuple[list[str], NodeAddress | None]] = []
        self.unreachable: set[NodeAddress | None] = set()

        self._frames: asyncio.Queue[ParsedFrame | None] = asyncio.Queue()
        self._server: dict[NodeAddress | None, dict[SubscriptionKind, set[str]]] = defaultdict(
            lambda: defaultdict(set)
        )
        self._timers: set[asyncio.TimerHandle] = set()
        self._closed = False

    # =========================================================================
    # Transport protocol
    # =========================================================================

    async def send(self, command: Sequence[str], node: NodeAddress | None = None) -> None:
        """Record a command and, if enabled, emit its acknowledgements."""
        if self._closed:
            raise PubSubConnectionError("Transport is closed")
        if node in self.unreachable:
            raise PubSubConnectionError(f"Node {node} is unreachable")

        self.sent.append((list(command), node))

        action_kind = command_action(command[0])
        if action_kind is None or not self.auto_ack:
            return

        action, kind = action_kind
        for ack in self._apply(action, kind, list(command[1:]), node):
            if self.ack_delay > 0:
                loop = asyncio.get_running_loop()
                handle = loop.call_later(self.ack_delay, self._deliver_later, ack)
                self._timers.add(handle)
            else:
                self._frames.put_nowait(ack)

    async def receive(self) -> AsyncIterator[ParsedFrame]:
        while True:
            frame = await self._frames.get()
            if frame is None:
                return
            yield frame

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        self._frames.put_nowait(None)

    # =========================================================================
    # Server emulation
    # =========================================================================

    def _deliver_later(self, ack: SubscriptionAck) -> None:
        if not self._closed:
            self._frames.put_nowait(ack)

    def _apply(
        self,
        action: SubscriptionAction,
        kind: SubscriptionKind,
        names: list[str],
        node: NodeAddress | None,
    ) -> list[SubscriptionAck]:
        """Update the server view and build one acknowledgement per name."""
        view = self._server[node]
        acks = []

        if action is SubscriptionAction.UNSUBSCRIBE and not names:
            names = sorted(view[kind])
            if not names:
                return [SubscriptionAck(action, kind, None, self._count(node, kind), node)]

        for name in names:
            if action is SubscriptionAction.SUBSCRIBE:
                view[kind].add(name)
            else:
                view[kind].discard(name)
            acks.append(SubscriptionAck(action, kind, name, self._count(node, kind), node))
        return acks

    def _count(self, node: NodeAddress | None, kind: SubscriptionKind) -> int:
        view = self._server[node]
        if kind is SubscriptionKind.SHARD:
            return len(view[SubscriptionKind.SHARD])
        return len(view[SubscriptionKind.EXACT]) + len(view[SubscriptionKind.PATTERN])

    def server_subscriptions(
        self, kind: SubscriptionKind, node: NodeAddress | None = None
    ) -> set[str]:
        """Names the emulated server holds for a node."""
        return set(self._server[node][kind])

    def acknowledge(
        self,
        action: SubscriptionAction,
        kind: SubscriptionKind,
        name: str,
        node: NodeAddress | None = None,
    ) -> None:
        """Apply and acknowledge one request by hand (for ``auto_ack=False``)."""
        for ack in self._apply(action, kind, [name], node):
            self._frames.put_nowait(ack)

    def inject(self, frame: ParsedFrame) -> None:
        """Queue an arbitrary frame for the reader."""
        self._frames.put_nowait(frame)

    def publish(self, channel: str, payload: bytes | str, node: NodeAddress | None = None) -> int:
        """Publish like the server: one frame per matching subscription.

        Returns:
            Number of frames emitted
        """
        data = payload.encode() if isinstance(payload, str) else payload
        view = self._server[node]
        emitted = 0

        if channel in view[SubscriptionKind.EXACT]:
            self._frames.put_nowait(PublishedMessage(channel, SubscriptionKind.EXACT, data))
            emitted += 1
        for pattern in sorted(view[SubscriptionKind.PATTERN]):
            if glob_match(pattern, channel):
                self._frames.put_nowait(
                    PublishedMessage(channel, SubscriptionKind.PATTERN, data, pattern=pattern)
                )
                emitted += 1
        return emitted

    def spublish(self, channel: str, payload: bytes | str, node: NodeAddress | None = None) -> int:
        """Publish to a shard channel on one node."""
        data = payload.encode() if isinstance(payload, str) else payload
        if channel not in self._server[node][SubscriptionKind.SHARD]:
            return 0
        self._frames.put_nowait(PublishedMessage(channel, SubscriptionKind.SHARD, data))
        return 1

    def drop_connection(self, node: NodeAddress | None = None) -> None:
        """Simulate a reconnect: the server forgets the node's subscriptions."""
        self._server.pop(node, None)
        logger.debug("Connection dropped", node=node)
        self._frames.put_nowait(Reconnected(node))
