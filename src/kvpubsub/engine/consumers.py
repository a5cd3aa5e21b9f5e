"""Consumers bound to subscription keys, and the handles returned to callers.

A consumer is either a callback or a pull queue. Each subscribe call creates
exactly one consumer bound to exactly one key; the same callable subscribed
twice is two consumers.
"""

from __future__ import annotations

import inspect
import itertools
from typing import TYPE_CHECKING

from kvpubsub.errors import InvalidSubscriptionError
from kvpubsub.models import (
    MessageCallback,
    PublishedMessage,
    SubscribeMode,
    SubscriptionKey,
)

from .queue import PullQueue

if TYPE_CHECKING:
    from .coordinator import SubscriptionCoordinator

# Process-wide so identifiers stay unique across subscribers
_consumer_ids = itertools.count(1)


class Consumer:
    """Base class for message consumers."""

    def __init__(self, key: SubscriptionKey):
        self.consumer_id = next(_consumer_ids)
        self.key = key
        self.active = True

    async def deliver(self, message: PublishedMessage) -> bool:
        """Deliver one message.

        Returns:
            True if the message was accepted, False if it was dropped
        """
        raise NotImplementedError

    async def detach(self) -> None:
        """Stop accepting messages. Idempotent."""
        self.active = False

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.consumer_id} key={self.key} active={self.active}>"


class CallbackConsumer(Consumer):
    """Invokes ``callback(channel, message)``; the callback may be sync or async."""

    def __init__(self, key: SubscriptionKey, callback: MessageCallback):
        super().__init__(key)
        self.callback = callback

    async def deliver(self, message: PublishedMessage) -> bool:
        result = self.callback(message.channel, message)
        if inspect.isawaitable(result):
            await result
        return True


class QueueConsumer(Consumer):
    """Buffers messages in a PullQueue for the caller to read."""

    def __init__(self, key: SubscriptionKey, queue: PullQueue | None = None, **queue_options):
        super().__init__(key)
        self.queue = queue or PullQueue(self.consumer_id, **queue_options)

    async def deliver(self, message: PublishedMessage) -> bool:
        return await self.queue.put(message)

    async def detach(self) -> None:
        self.active = False
        await self.queue.close()


class ConsumerHandle:
    """Caller-facing reference to one subscription."""

    def __init__(self, consumer: Consumer, coordinator: SubscriptionCoordinator):
        self._consumer = consumer
        self._coordinator = coordinator

    @property
    def consumer(self) -> Consumer:
        return self._consumer

    @property
    def consumer_id(self) -> int:
        return self._consumer.consumer_id

    @property
    def key(self) -> SubscriptionKey:
        return self._consumer.key

    @property
    def active(self) -> bool:
        return self._consumer.active

    @property
    def queue(self) -> PullQueue:
        """Pull queue of a queue subscription.

        Raises:
            InvalidSubscriptionError: If the subscription uses a callback
        """
        if not isinstance(self._consumer, QueueConsumer):
            raise InvalidSubscriptionError(f"Subscription {self.key} delivers to a callback")
        return self._consumer.queue

    async def unsubscribe(
        self,
        mode: SubscribeMode = SubscribeMode.LAZY,
        timeout: float | None = None,
    ) -> None:
        """Remove this subscription; see SubscriptionCoordinator.unsubscribe_handle."""
        await self._coordinator.unsubscribe_handle(self, mode=mode, timeout=timeout)

    def __repr__(self) -> str:
        return f"<ConsumerHandle id={self.consumer_id} key={self.key} active={self.active}>"
