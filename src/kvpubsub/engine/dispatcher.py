"""Message dispatcher.

Delivers each published message to the consumers the registry resolves for
it. A failing consumer is logged and counted; it never affects other
consumers or the reader.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import deque
from collections.abc import Awaitable, Callable

from kvpubsub.config import DispatchMode, PubSubSettings, get_settings
from kvpubsub.models import DispatcherStats, PublishedMessage
from kvpubsub.observability import get_logger

from .consumers import CallbackConsumer, Consumer
from .registry import SubscriptionRegistry

logger = get_logger(__name__)

CallbackErrorHook = Callable[[Consumer, PublishedMessage, Exception], Awaitable[None] | None]


class _Mailbox:
    """Ordered backlog of one callback consumer, drained by a single task."""

    def __init__(self, consumer: Consumer):
        self.consumer = consumer
        self.messages: deque[PublishedMessage] = deque()
        self.task: asyncio.Task[None] | None = None


class MessageDispatcher:
    """Fans published messages out to consumers.

    In INLINE mode every delivery completes on the calling (reader) task, in
    arrival order. In POOLED mode callback consumers each get a FIFO mailbox
    drained by a worker task, and at most ``callback_concurrency`` callbacks
    run at once; queue consumers are still fed inline.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        settings: PubSubSettings | None = None,
        on_callback_error: CallbackErrorHook | None = None,
    ):
        """Initialize the dispatcher.

        Args:
            registry: Registry resolving messages to consumers
            settings: Engine settings (defaults to get_settings())
            on_callback_error: Called as hook(consumer, message, exc) on failures
        """
        settings = settings or get_settings()
        self._registry = registry
        self.mode = DispatchMode(settings.dispatch_mode)
        self.shutdown_timeout = settings.shutdown_timeout_seconds
        self.on_callback_error = on_callback_error

        self._semaphore = asyncio.Semaphore(settings.callback_concurrency)
        self._mailboxes: dict[int, _Mailbox] = {}
        self._closed = False

        # Counters
        self._messages_dispatched = 0
        self._deliveries = 0
        self._deliveries_dropped = 0
        self._unmatched_messages = 0
        self._callback_errors = 0

    async def dispatch(self, message: PublishedMessage) -> None:
        """Deliver a message to every consumer bound to a matching key.

        Args:
            message: Message read from the network
        """
        self._messages_dispatched += 1
        consumers = self._registry.lookup(message)

        if not consumers:
            self._unmatched_messages += 1
            logger.debug(
                "No consumers for message",
                channel=message.channel,
                kind=message.kind.value,
                pattern=message.pattern,
            )
            return

        for consumer in consumers:
            if self.mode is DispatchMode.POOLED and isinstance(consumer, CallbackConsumer):
                self._enqueue(consumer, message)
            else:
                await self._deliver(consumer, message)

    async def _deliver(self, consumer: Consumer, message: PublishedMessage) -> None:
        # Consumer may have been detached after lookup
        if not consumer.active:
            self._deliveries_dropped += 1
            return

        try:
            accepted = await consumer.deliver(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._callback_errors += 1
            logger.error(
                "Consumer failed to handle message",
                consumer_id=consumer.consumer_id,
                key=str(consumer.key),
                channel=message.channel,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._report_error(consumer, message, e)
            return

        if accepted:
            self._deliveries += 1
        else:
            self._deliveries_dropped += 1

    async def _report_error(
        self, consumer: Consumer, message: PublishedMessage, error: Exception
    ) -> None:
        if self.on_callback_error is None:
            return
        try:
            result = self.on_callback_error(consumer, message, error)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Callback error hook failed", error=str(e))

    # =========================================================================
    # Pooled mode
    # =========================================================================

    def _enqueue(self, consumer: Consumer, message: PublishedMessage) -> None:
        if self._closed:
            self._deliveries_dropped += 1
            return

        mailbox = self._mailboxes.get(consumer.consumer_id)
        if mailbox is None:
            mailbox = self._mailboxes[consumer.consumer_id] = _Mailbox(consumer)
        mailbox.messages.append(message)

        if mailbox.task is None:
            mailbox.task = asyncio.create_task(
                self._drain_mailbox(mailbox),
                name=f"pubsub-consumer-{consumer.consumer_id}",
            )

    async def _drain_mailbox(self, mailbox: _Mailbox) -> None:
        try:
            while mailbox.messages:
                message = mailbox.messages.popleft()
                async with self._semaphore:
                    await self._deliver(mailbox.consumer, message)
        finally:
            mailbox.task = None
            if not mailbox.messages:
                self._mailboxes.pop(mailbox.consumer.consumer_id, None)

    def _workers(self) -> list[asyncio.Task[None]]:
        return [mb.task for mb in self._mailboxes.values() if mb.task is not None]

    async def drain(self) -> None:
        """Wait until every pooled callback backlog is empty."""
        while workers := self._workers():
            await asyncio.gather(*workers, return_exceptions=True)

    async def close(self, timeout: float | None = None) -> None:
        """Stop accepting pooled work and wait for backlogs, bounded by a timeout.

        Args:
            timeout: Seconds to wait (defaults to shutdown_timeout_seconds)
        """
        self._closed = True
        timeout = self.shutdown_timeout if timeout is None else timeout

        try:
            await asyncio.wait_for(self.drain(), timeout=timeout)
        except TimeoutError:
            workers = self._workers()
            pending = sum(len(mb.messages) for mb in self._mailboxes.values())
            logger.warning(
                "Dispatcher shutdown timed out; cancelling callbacks",
                workers=len(workers),
                pending_messages=pending,
            )
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            self._deliveries_dropped += pending
            self._mailboxes.clear()

        logger.debug("Dispatcher closed", **self.stats().model_dump())

    def stats(self) -> DispatcherStats:
        """Get dispatcher counters."""
        return DispatcherStats(
            messages_dispatched=self._messages_dispatched,
            deliveries=self._deliveries,
            deliveries_dropped=self._deliveries_dropped,
            unmatched_messages=self._unmatched_messages,
            callback_errors=self._callback_errors,
            pending_callbacks=sum(len(mb.messages) for mb in self._mailboxes.values()),
        )
