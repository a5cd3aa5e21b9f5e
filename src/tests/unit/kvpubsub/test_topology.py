"""Unit tests for shard channel routing."""

import pytest
from redis.crc import key_slot

from kvpubsub.errors import PubSubConnectionError, ShardRoutingError
from kvpubsub.transport.topology import StaticTopology, channel_slot


class TestChannelSlot:
    """Tests for slot hashing."""

    def test_matches_key_slot(self):
        assert channel_slot("orders") == key_slot(b"orders")

    def test_hash_tags_share_a_slot(self):
        assert channel_slot("{user1}.orders") == channel_slot("{user1}.payments")


class TestStaticTopology:
    """Tests for StaticTopology."""

    def test_even_split(self):
        topology = StaticTopology(nodes=["a:7000", "b:7000"])
        assert topology.nodes() == {"a:7000", "b:7000"}

    def test_explicit_slots(self):
        topology = StaticTopology(slots={(0, 16383): "a:7000"})
        assert topology.resolve_shard_owner("orders") == "a:7000"

    def test_unowned_slot_raises(self):
        topology = StaticTopology()
        with pytest.raises(ShardRoutingError):
            topology.resolve_shard_owner("orders")

    def test_routing_error_is_connection_error(self):
        assert issubclass(ShardRoutingError, PubSubConnectionError)

    def test_invalid_range(self):
        with pytest.raises(ValueError):
            StaticTopology(slots={(10, 20000): "a:7000"})

    @pytest.mark.asyncio
    async def test_replace_node_moves_slots_and_notifies(self):
        topology = StaticTopology(nodes=["a:7000", "b:7000"])
        calls = []

        async def async_listener(old, new):
            calls.append(("async", old, new))

        def failing_listener(old, new):
            raise RuntimeError("listener bug")

        topology.add_listener(failing_listener)
        topology.add_listener(async_listener)
        topology.add_listener(lambda old, new: calls.append(("sync", old, new)))

        await topology.replace_node("a:7000", "c:7000")

        assert topology.nodes() == {"b:7000", "c:7000"}
        assert calls == [("async", "a:7000", "c:7000"), ("sync", "a:7000", "c:7000")]

    @pytest.mark.asyncio
    async def test_removed_listener_not_called(self):
        topology = StaticTopology(nodes=["a:7000"])
        calls = []

        def listener(old, new):
            calls.append(new)

        topology.add_listener(listener)
        topology.remove_listener(listener)
        await topology.replace_node("a:7000", "b:7000")

        assert calls == []
