"""Unit tests for the Subscriber facade."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from kvpubsub.config import DispatchMode, PubSubSettings
from kvpubsub.engine import Subscriber
from kvpubsub.errors import InvalidSubscriptionError, PubSubError, QueueClosedError
from kvpubsub.models import (
    PublishedMessage,
    SubscribeMode,
    SubscriptionConfig,
    SubscriptionKey,
    SubscriptionKind,
)
from kvpubsub.transport import CommandReply, InMemoryTransport, StaticTopology


class TestSubscribe:
    """Tests for subscribing and receiving messages."""

    @pytest.mark.asyncio
    async def test_pattern_matches_suffix_only(self, subscriber, transport, collector, wait_until):
        received, callback = collector()
        await subscriber.subscribe_pattern("news.*", callback)

        transport.publish("news", "bare")
        transport.publish("news.sports", "goal")
        await wait_until(lambda: len(received) == 1)
        await asyncio.sleep(0.01)

        assert len(received) == 1
        assert received[0].channel == "news.sports"
        assert received[0].pattern == "news.*"
        assert received[0].text == "goal"

    @pytest.mark.asyncio
    async def test_one_delivery_per_matching_subscription(
        self, subscriber, transport, collector, wait_until
    ):
        received, callback = collector()
        await subscriber.subscribe_channel("news.a", callback)
        await subscriber.subscribe_pattern("news.*", callback)
        await subscriber.subscribe_pattern("*", callback)

        transport.publish("news.a", "x")
        await wait_until(lambda: len(received) == 3)

        kinds = sorted((m.kind.value, m.pattern or "") for m in received)
        assert kinds == [("exact", ""), ("pattern", "*"), ("pattern", "news.*")]

    @pytest.mark.asyncio
    async def test_failing_callback_is_isolated(
        self, subscriber, transport, collector, wait_until
    ):
        received, good = collector()
        calls = []

        def flaky(channel, message):
            calls.append(message.text)
            if message.text == "2":
                raise RuntimeError("boom")

        await subscriber.subscribe_channel("news", flaky)
        await subscriber.subscribe_channel("news", good)
        for n in ("1", "2", "3"):
            transport.publish("news", n)

        await wait_until(lambda: len(received) == 3)
        assert [m.text for m in received] == ["1", "2", "3"]
        assert calls == ["1", "2", "3"]
        assert subscriber.dispatcher.stats().callback_errors == 1

    @pytest.mark.asyncio
    async def test_bound_key_sends_no_request(self, subscriber, transport, collector, wait_until):
        received, callback = collector()
        await subscriber.subscribe_channel("news", callback)
        sent = len(transport.sent)

        await subscriber.subscribe_channel("news", callback, mode=SubscribeMode.BLOCKING)
        assert len(transport.sent) == sent

        transport.publish("news", "x")
        await wait_until(lambda: len(received) == 2)

    @pytest.mark.asyncio
    async def test_queue_preserves_order(self, subscriber, transport):
        handle = await subscriber.subscribe_channel("ticks")
        queue = subscriber.as_queue(handle)

        for n in range(50):
            transport.publish("ticks", str(n))

        texts = [(await queue.read(timeout=1.0)).text for _ in range(50)]
        assert texts == [str(n) for n in range(50)]

    @pytest.mark.asyncio
    async def test_lazy_returns_before_acknowledgement(self, settings, collector, wait_until):
        transport = InMemoryTransport(ack_delay=0.05)
        _, callback = collector()

        async with Subscriber(transport, settings=settings) as sub:
            await sub.subscribe_channel("lazy", callback)
            state = sub.get_subscriptions()
            assert "lazy" in state.desired[SubscriptionKind.EXACT]
            assert "lazy" not in state.actual[SubscriptionKind.EXACT]

            await sub.subscribe_channel("blocking", callback, mode=SubscribeMode.BLOCKING)
            assert "blocking" in sub.get_subscriptions().actual[SubscriptionKind.EXACT]

            await wait_until(lambda: sub.get_subscriptions().in_sync)

    @pytest.mark.asyncio
    async def test_pooled_dispatch_preserves_order(self, transport, collector, wait_until):
        settings = PubSubSettings(dispatch_mode=DispatchMode.POOLED, callback_concurrency=4)
        received, callback = collector()

        async with Subscriber(transport, settings=settings) as sub:
            await sub.subscribe_channel("news", callback)
            for n in range(20):
                transport.publish("news", str(n))
            await wait_until(lambda: len(received) == 20)

        assert [m.text for m in received] == [str(n) for n in range(20)]

    @pytest.mark.asyncio
    async def test_invalid_names_rejected_before_sending(self, subscriber, transport):
        with pytest.raises(InvalidSubscriptionError):
            await subscriber.subscribe_channel("")
        with pytest.raises(InvalidSubscriptionError):
            await subscriber.subscribe_pattern("news[")
        assert transport.sent == []


class TestUnsubscribe:
    """Tests for unsubscribing."""

    @pytest.mark.asyncio
    async def test_no_delivery_after_unsubscribe(
        self, subscriber, transport, collector, wait_until
    ):
        received, callback = collector()
        handle = await subscriber.subscribe_channel("news", callback)
        await handle.unsubscribe()

        # Message already in flight when the consumer was removed
        transport.inject(PublishedMessage("news", SubscriptionKind.EXACT, b"stale"))
        await wait_until(lambda: subscriber.dispatcher.stats().messages_dispatched == 1)

        assert received == []
        assert not handle.active

    @pytest.mark.asyncio
    async def test_other_consumers_keep_subscription(
        self, subscriber, transport, collector, wait_until
    ):
        first_received, first = collector()
        second_received, second = collector()
        handle = await subscriber.subscribe_channel("news", first)
        await subscriber.subscribe_channel("news", second)

        await subscriber.unsubscribe(handle)
        assert transport.server_subscriptions(SubscriptionKind.EXACT) == {"news"}

        transport.publish("news", "x")
        await wait_until(lambda: len(second_received) == 1)
        assert first_received == []

    @pytest.mark.asyncio
    async def test_bulk_unsubscribe_by_kind(self, subscriber, transport, collector, wait_until):
        _, callback = collector()
        handles = [await subscriber.subscribe_channel(name, callback) for name in "abc"]
        pattern = await subscriber.subscribe_pattern("x*", callback)

        await subscriber.unsubscribe(SubscriptionKind.EXACT)

        assert not any(h.active for h in handles)
        assert pattern.active
        assert (["UNSUBSCRIBE", "a", "b", "c"], None) in transport.sent
        assert transport.server_subscriptions(SubscriptionKind.EXACT) == set()
        await wait_until(lambda: subscriber.get_subscriptions().in_sync)

    @pytest.mark.asyncio
    async def test_bulk_unsubscribe_by_name(self, subscriber, transport, collector):
        _, callback = collector()
        a = await subscriber.subscribe_channel("a", callback)
        b = await subscriber.subscribe_channel("b", callback)

        await subscriber.unsubscribe(SubscriptionKind.EXACT, ["a", "unknown"])

        assert not a.active
        assert b.active
        assert transport.sent[-1] == (["UNSUBSCRIBE", "a"], None)

    @pytest.mark.asyncio
    async def test_unsubscribe_single_name(self, subscriber, transport, collector, wait_until):
        received, callback = collector()
        # Single-letter channels must survive removing "ch1" by name
        letters = [await subscriber.subscribe_channel(name, callback) for name in "ch1"]
        handle = await subscriber.subscribe_channel("ch1", callback)

        await subscriber.unsubscribe(SubscriptionKind.EXACT, "ch1")

        assert not handle.active
        assert all(h.active for h in letters)
        assert transport.sent[-1] == (["UNSUBSCRIBE", "ch1"], None)
        assert subscriber.registry.keys(SubscriptionKind.EXACT) == [
            SubscriptionKey(SubscriptionKind.EXACT, name) for name in "ch1"
        ]
        await wait_until(lambda: subscriber.get_subscriptions().in_sync)

        transport.publish("ch1", "x")
        transport.publish("c", "y")
        await wait_until(lambda: len(received) == 1)
        assert received[0].channel == "c"

    @pytest.mark.asyncio
    async def test_unsubscribe_all_blocking(self, subscriber, transport, collector):
        _, callback = collector()
        channel = await subscriber.subscribe_channel("a", callback)
        queued = await subscriber.subscribe_pattern("b.*")

        await subscriber.unsubscribe_all(mode=SubscribeMode.BLOCKING)

        assert not channel.active
        assert not queued.active
        assert subscriber.get_subscriptions().in_sync
        with pytest.raises(QueueClosedError):
            await queued.queue.read()


class TestConfigAndQueries:
    """Tests for declared subscriptions and introspection."""

    @pytest.mark.asyncio
    async def test_apply_config(self, subscriber, collector):
        _, callback = collector()
        config = SubscriptionConfig(channels=["a", "a", "b"], patterns=["c.*"], callback=callback)

        handles = await subscriber.apply_config(config)

        assert [h.key for h in handles] == [
            SubscriptionKey(SubscriptionKind.EXACT, "a"),
            SubscriptionKey(SubscriptionKind.EXACT, "b"),
            SubscriptionKey(SubscriptionKind.PATTERN, "c.*"),
        ]

    @pytest.mark.asyncio
    async def test_shard_config_requires_topology(self, subscriber):
        with pytest.raises(InvalidSubscriptionError):
            await subscriber.apply_config(SubscriptionConfig(shard_channels=["orders"]))

    @pytest.mark.asyncio
    async def test_shard_config_with_topology(self, transport, settings):
        topology = StaticTopology(nodes=["a:7000"])
        async with Subscriber(transport, topology=topology, settings=settings) as sub:
            handles = await sub.apply_config(SubscriptionConfig(shard_channels=["orders"]))
            assert handles[0].queue is not None
            assert transport.sent[-1] == (["SSUBSCRIBE", "orders"], "a:7000")

    @pytest.mark.asyncio
    async def test_as_queue_rejects_callback_handle(self, subscriber, collector):
        _, callback = collector()
        handle = await subscriber.subscribe_channel("news", callback)
        with pytest.raises(InvalidSubscriptionError):
            subscriber.as_queue(handle)

    @pytest.mark.asyncio
    async def test_introspection_is_delegated(self, transport, settings):
        introspection = AsyncMock()
        introspection.pubsub_numsub.return_value = {"news": 2}
        introspection.pubsub_numpat.return_value = 3
        introspection.pubsub_channels.return_value = ["news"]
        sub = Subscriber(transport, settings=settings, introspection=introspection)

        assert await sub.numsub("news") == {"news": 2}
        assert await sub.numpat() == 3
        assert await sub.channels("n*") == ["news"]
        introspection.pubsub_numsub.assert_awaited_once_with("news")
        introspection.pubsub_channels.assert_awaited_once_with("n*")

    @pytest.mark.asyncio
    async def test_introspection_requires_command_layer(self, subscriber):
        with pytest.raises(PubSubError):
            await subscriber.numpat()


class TestLifecycle:
    """Tests for start and close."""

    @pytest.mark.asyncio
    async def test_close_unsubscribes_and_closes_queues(self, transport, settings):
        async with Subscriber(transport, settings=settings) as sub:
            handle = await sub.subscribe_channel("news")

        assert not handle.active
        assert handle.queue.closed
        assert (["UNSUBSCRIBE", "news"], None) in transport.sent

        with pytest.raises(PubSubError):
            await sub.subscribe_channel("news")

    @pytest.mark.asyncio
    async def test_command_replies_reach_hook(self, transport, settings, wait_until):
        replies = []
        async with Subscriber(transport, settings=settings, on_reply=replies.append):
            transport.inject(CommandReply(b"PONG"))
            await wait_until(lambda: len(replies) == 1)

        assert replies[0].value == b"PONG"
