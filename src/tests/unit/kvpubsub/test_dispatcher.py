"""Unit tests for the message dispatcher."""

import asyncio

import pytest

from kvpubsub.config import DispatchMode, PubSubSettings
from kvpubsub.engine.consumers import CallbackConsumer, QueueConsumer
from kvpubsub.engine.dispatcher import MessageDispatcher
from kvpubsub.engine.registry import SubscriptionRegistry
from kvpubsub.models import PublishedMessage, SubscriptionKey, SubscriptionKind

NEWS = SubscriptionKey(SubscriptionKind.EXACT, "news")


def message(n: int) -> PublishedMessage:
    return PublishedMessage("news", SubscriptionKind.EXACT, str(n).encode())


class TestInlineDispatch:
    """Tests for dispatching on the calling task."""

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_affect_others(self, settings):
        registry = SubscriptionRegistry()
        good: list[str] = []
        flaky: list[str] = []

        def good_callback(channel, msg):
            good.append(msg.text)

        def flaky_callback(channel, msg):
            flaky.append(msg.text)
            if msg.text == "2":
                raise RuntimeError("boom")

        registry.bind(CallbackConsumer(NEWS, flaky_callback))
        registry.bind(CallbackConsumer(NEWS, good_callback))
        dispatcher = MessageDispatcher(registry, settings)

        for n in (1, 2, 3):
            await dispatcher.dispatch(message(n))

        assert good == ["1", "2", "3"]
        assert flaky == ["1", "2", "3"]
        stats = dispatcher.stats()
        assert stats.callback_errors == 1
        assert stats.deliveries == 5
        assert stats.messages_dispatched == 3

    @pytest.mark.asyncio
    async def test_async_callbacks_are_awaited(self, settings):
        registry = SubscriptionRegistry()
        received: list[str] = []

        async def callback(channel, msg):
            await asyncio.sleep(0)
            received.append(channel)

        registry.bind(CallbackConsumer(NEWS, callback))
        dispatcher = MessageDispatcher(registry, settings)
        await dispatcher.dispatch(message(1))

        assert received == ["news"]

    @pytest.mark.asyncio
    async def test_error_hook_receives_failure(self, settings):
        registry = SubscriptionRegistry()
        failures = []

        def bad(channel, msg):
            raise ValueError("bad payload")

        consumer = CallbackConsumer(NEWS, bad)
        registry.bind(consumer)
        dispatcher = MessageDispatcher(
            registry,
            settings,
            on_callback_error=lambda c, m, e: failures.append((c, m.text, type(e))),
        )
        await dispatcher.dispatch(message(1))

        assert failures == [(consumer, "1", ValueError)]

    @pytest.mark.asyncio
    async def test_unmatched_message_is_counted(self, settings):
        dispatcher = MessageDispatcher(SubscriptionRegistry(), settings)
        await dispatcher.dispatch(message(1))
        assert dispatcher.stats().unmatched_messages == 1

    @pytest.mark.asyncio
    async def test_queue_consumer_receives_messages(self, settings):
        registry = SubscriptionRegistry()
        consumer = QueueConsumer(NEWS)
        registry.bind(consumer)
        dispatcher = MessageDispatcher(registry, settings)

        await dispatcher.dispatch(message(1))
        assert consumer.queue.try_read().text == "1"

    @pytest.mark.asyncio
    async def test_detached_consumer_receives_nothing(self, settings):
        registry = SubscriptionRegistry()
        received = []
        consumer = CallbackConsumer(NEWS, lambda c, m: received.append(m))
        registry.bind(consumer)
        await consumer.detach()

        dispatcher = MessageDispatcher(registry, settings)
        await dispatcher.dispatch(message(1))

        assert received == []
        assert dispatcher.stats().deliveries_dropped == 1


class TestPooledDispatch:
    """Tests for dispatching on per-consumer workers."""

    @pytest.fixture
    def pooled_settings(self) -> PubSubSettings:
        return PubSubSettings(
            dispatch_mode=DispatchMode.POOLED,
            callback_concurrency=2,
            shutdown_timeout_seconds=0.1,
        )

    @pytest.mark.asyncio
    async def test_order_preserved_per_consumer(self, pooled_settings):
        registry = SubscriptionRegistry()
        first: list[str] = []
        second: list[str] = []

        async def slow(channel, msg):
            await asyncio.sleep(0.001)
            first.append(msg.text)

        registry.bind(CallbackConsumer(NEWS, slow))
        registry.bind(CallbackConsumer(NEWS, lambda c, m: second.append(m.text)))
        dispatcher = MessageDispatcher(registry, pooled_settings)

        for n in range(20):
            await dispatcher.dispatch(message(n))
        await dispatcher.drain()

        expected = [str(n) for n in range(20)]
        assert first == expected
        assert second == expected
        assert dispatcher.stats().pending_callbacks == 0

    @pytest.mark.asyncio
    async def test_dispatch_does_not_wait_for_callbacks(self, pooled_settings):
        registry = SubscriptionRegistry()
        release = asyncio.Event()
        received = []

        async def blocked(channel, msg):
            await release.wait()
            received.append(msg.text)

        registry.bind(CallbackConsumer(NEWS, blocked))
        dispatcher = MessageDispatcher(registry, pooled_settings)

        await asyncio.wait_for(dispatcher.dispatch(message(1)), 0.5)
        assert received == []

        release.set()
        await dispatcher.drain()
        assert received == ["1"]

    @pytest.mark.asyncio
    async def test_backlog_dropped_after_detach(self, pooled_settings):
        registry = SubscriptionRegistry()
        release = asyncio.Event()
        received = []

        async def blocked(channel, msg):
            await release.wait()
            received.append(msg.text)

        consumer = CallbackConsumer(NEWS, blocked)
        registry.bind(consumer)
        dispatcher = MessageDispatcher(registry, pooled_settings)

        for n in range(3):
            await dispatcher.dispatch(message(n))
        await asyncio.sleep(0)
        await consumer.detach()
        release.set()
        await dispatcher.drain()

        # Only the message already running completes
        assert received == ["0"]
        assert dispatcher.stats().deliveries_dropped == 2

    @pytest.mark.asyncio
    async def test_close_cancels_stuck_callbacks(self, pooled_settings):
        registry = SubscriptionRegistry()

        async def stuck(channel, msg):
            await asyncio.sleep(60)

        registry.bind(CallbackConsumer(NEWS, stuck))
        dispatcher = MessageDispatcher(registry, pooled_settings)
        await dispatcher.dispatch(message(1))
        await dispatcher.dispatch(message(2))

        await asyncio.wait_for(dispatcher.close(), 2.0)

        assert dispatcher.stats().pending_callbacks == 0
        assert dispatcher.stats().deliveries_dropped >= 1
