"""Subscriber facade.

Owns one registry, dispatcher, coordinator and reader over a transport, and
exposes the subscribe/unsubscribe API.

Usage:
    async with Subscriber(InMemoryTransport()) as subscriber:
        handle = await subscriber.subscribe_channel("news", on_news)
        queue = subscriber.as_queue(await subscriber.subscribe_pattern("news.*"))
        message = await queue.read(timeout=1.0)
"""

from __future__ import annotations

from collections.abc import Iterable
from uuid import uuid4

from kvpubsub.config import PubSubSettings, get_settings
from kvpubsub.errors import InvalidSubscriptionError, PubSubConnectionError, PubSubError
from kvpubsub.models import (
    MessageCallback,
    PubSubState,
    SubscribeMode,
    SubscriptionConfig,
    SubscriptionKey,
    SubscriptionKind,
)
from kvpubsub.observability import get_logger
from kvpubsub.transport.base import PubSubIntrospection, TopologyProvider, Transport

from .consumers import CallbackConsumer, Consumer, ConsumerHandle, QueueConsumer
from .coordinator import SubscriptionCoordinator
from .dispatcher import CallbackErrorHook, MessageDispatcher
from .queue import PullQueue
from .reader import FrameReader, ReplyHook
from .registry import SubscriptionRegistry

logger = get_logger(__name__)


class Subscriber:
    """Pub/sub subscriber over one transport."""

    def __init__(
        self,
        transport: Transport,
        topology: TopologyProvider | None = None,
        settings: PubSubSettings | None = None,
        introspection: PubSubIntrospection | None = None,
        on_callback_error: CallbackErrorHook | None = None,
        on_reply: ReplyHook | None = None,
    ):
        """Initialize the subscriber.

        Args:
            transport: Transport carrying pub/sub traffic
            topology: Shard owner resolution; required for shard subscriptions
                in a cluster
            settings: Engine settings (defaults to get_settings())
            introspection: Command layer answering PUBSUB queries
            on_callback_error: Hook called when a callback raises
            on_reply: Hook for ordinary command replies read from the connection
        """
        self.settings = settings or get_settings()
        self.transport = transport
        self.topology = topology
        self.introspection = introspection

        self.registry = SubscriptionRegistry()
        self.dispatcher = MessageDispatcher(
            self.registry, self.settings, on_callback_error=on_callback_error
        )
        self.coordinator = SubscriptionCoordinator(
            self.registry, transport, topology=topology, settings=self.settings
        )
        self.connection_id = f"sub-{uuid4().hex[:8]}"
        self.reader = FrameReader(
            transport,
            self.dispatcher,
            self.coordinator,
            on_reply=on_reply,
            connection_id=self.connection_id,
        )
        self._closed = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start reading from the transport."""
        if self._closed:
            raise PubSubError("Subscriber is closed")
        self.reader.start()

    async def close(self) -> None:
        """Unsubscribe everything, stop the reader and close the transport."""
        if self._closed:
            return
        self._closed = True

        try:
            await self.coordinator.unsubscribe_all(SubscribeMode.LAZY)
        except PubSubConnectionError as e:
            logger.warning("Could not unsubscribe on close", error=str(e))

        await self.reader.stop()
        await self.dispatcher.close()
        await self.coordinator.close()
        for consumer in self.registry.unbind_all():
            await consumer.detach()
        await self.transport.close()

        logger.info(
            "Subscriber closed",
            connection_id=self.connection_id,
            **self.dispatcher.stats().model_dump(),
        )

    async def __aenter__(self) -> Subscriber:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _ensure_started(self) -> None:
        if self._closed:
            raise PubSubError("Subscriber is closed")
        if not self.reader.running:
            self.reader.start()

    # =========================================================================
    # Subscribe
    # =========================================================================

    def _make_consumer(self, key: SubscriptionKey, callback: MessageCallback | None) -> Consumer:
        if callback is not None:
            if not callable(callback):
                raise InvalidSubscriptionError("callback must be callable")
            return CallbackConsumer(key, callback)
        return QueueConsumer(
            key,
            max_size=self.settings.queue_capacity,
            full_mode=self.settings.queue_full_mode,
            enqueue_timeout=self.settings.enqueue_timeout_seconds,
        )

    async def subscribe(
        self,
        kind: SubscriptionKind,
        name: str,
        callback: MessageCallback | None = None,
        mode: SubscribeMode = SubscribeMode.LAZY,
        timeout: float | None = None,
    ) -> ConsumerHandle:
        """Subscribe to a channel, pattern or shard channel.

        Args:
            kind: Subscription kind
            name: Channel name or glob pattern
            callback: Called as callback(channel, message); a pull queue is
                created when omitted
            mode: LAZY returns once the request is written; BLOCKING waits for
                the server acknowledgement
            timeout: Blocking deadline in seconds

        Returns:
            Handle for the new subscription
        """
        await self._ensure_started()
        key = SubscriptionKey(SubscriptionKind(kind), name)
        consumer = self._make_consumer(key, callback)
        return await self.coordinator.subscribe(consumer, mode=mode, timeout=timeout)

    async def subscribe_channel(
        self,
        channel: str,
        callback: MessageCallback | None = None,
        mode: SubscribeMode = SubscribeMode.LAZY,
        timeout: float | None = None,
    ) -> ConsumerHandle:
        return await self.subscribe(SubscriptionKind.EXACT, channel, callback, mode, timeout)

    async def subscribe_pattern(
        self,
        pattern: str,
        callback: MessageCallback | None = None,
        mode: SubscribeMode = SubscribeMode.LAZY,
        timeout: float | None = None,
    ) -> ConsumerHandle:
        return await self.subscribe(SubscriptionKind.PATTERN, pattern, callback, mode, timeout)

    async def subscribe_shard(
        self,
        channel: str,
        callback: MessageCallback | None = None,
        mode: SubscribeMode = SubscribeMode.LAZY,
        timeout: float | None = None,
    ) -> ConsumerHandle:
        return await self.subscribe(SubscriptionKind.SHARD, channel, callback, mode, timeout)

    async def apply_config(
        self,
        config: SubscriptionConfig,
        mode: SubscribeMode = SubscribeMode.LAZY,
        timeout: float | None = None,
    ) -> list[ConsumerHandle]:
        """Subscribe to everything a SubscriptionConfig declares.

        Raises:
            InvalidSubscriptionError: If shard channels are declared without a topology
        """
        if config.shard_channels and self.topology is None:
            raise InvalidSubscriptionError("Shard channels require a topology provider")

        handles = []
        for key in config.keys():
            handles.append(
                await self.subscribe(key.kind, key.name, config.callback, mode, timeout)
            )
        logger.info("Subscription config applied", subscriptions=len(handles))
        return handles

    # =========================================================================
    # Unsubscribe
    # =========================================================================

    async def unsubscribe(
        self,
        target: ConsumerHandle | SubscriptionKind,
        names: str | Iterable[str] | None = None,
        mode: SubscribeMode = SubscribeMode.LAZY,
        timeout: float | None = None,
    ) -> None:
        """Unsubscribe one handle, or every consumer of some keys of a kind.

        Args:
            target: A handle, or a subscription kind
            names: With a kind, one name or several to drop (None = all of
                that kind)
            mode: LAZY or BLOCKING
            timeout: Blocking deadline in seconds
        """
        if isinstance(target, ConsumerHandle):
            await self.coordinator.unsubscribe_handle(target, mode=mode, timeout=timeout)
        else:
            await self.coordinator.unsubscribe(target, names, mode=mode, timeout=timeout)

    async def unsubscribe_all(
        self,
        mode: SubscribeMode = SubscribeMode.LAZY,
        timeout: float | None = None,
    ) -> None:
        await self.coordinator.unsubscribe_all(mode=mode, timeout=timeout)

    # =========================================================================
    # Queries
    # =========================================================================

    def as_queue(self, handle: ConsumerHandle) -> PullQueue:
        """Pull queue behind a queue subscription.

        Raises:
            InvalidSubscriptionError: If the subscription uses a callback
        """
        return handle.queue

    def get_subscriptions(self) -> PubSubState:
        return self.coordinator.state()

    def _require_introspection(self) -> PubSubIntrospection:
        if self.introspection is None:
            raise PubSubError("No command layer configured for PUBSUB queries")
        return self.introspection

    async def channels(self, pattern: str | None = None) -> list[str]:
        """Active channels on the server, optionally filtered by a glob pattern."""
        return await self._require_introspection().pubsub_channels(pattern)

    async def numsub(self, *channels: str) -> dict[str, int]:
        """Subscriber counts per channel."""
        return await self._require_introspection().pubsub_numsub(*channels)

    async def numpat(self) -> int:
        """Number of pattern subscriptions on the server."""
        return await self._require_introspection().pubsub_numpat()

    async def shard_channels(self, pattern: str | None = None) -> list[str]:
        return await self._require_introspection().pubsub_shard_channels(pattern)

    async def shard_numsub(self, *channels: str) -> dict[str, int]:
        return await self._require_introspection().pubsub_shard_numsub(*channels)
