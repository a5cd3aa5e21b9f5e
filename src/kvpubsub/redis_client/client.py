"""Redis command client for publishing and PUBSUB introspection.

The subscriber never sends ordinary commands on its subscribed connections;
publishing and server-side queries go through this client instead.
"""

from __future__ import annotations

from typing import Any

import redis.asyncio as redis
from pydantic import BaseModel

from kvpubsub.observability import get_logger

logger = get_logger(__name__)


def _as_str(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="surrogateescape")
    return str(value)


def _counts(response: Any) -> dict[str, int]:
    """Normalize a NUMSUB reply, either flat or already paired, into a dict."""
    if not response:
        return {}
    if isinstance(response[0], (list, tuple)):
        pairs = response
    else:
        pairs = zip(response[0::2], response[1::2], strict=False)
    return {_as_str(channel): int(count) for channel, count in pairs}


class RedisClient:
    """Async Redis client with a connection pool.

    Implements the PubSubIntrospection protocol.
    """

    def __init__(self, url: str = "redis://localhost:6379"):
        """Initialize Redis client.

        Args:
            url: Redis connection URL
        """
        self._url = url
        self._pool: redis.ConnectionPool | None = None
        self._client: redis.Redis | None = None

    async def connect(self) -> None:
        """Initialize the connection pool."""
        self._pool = redis.ConnectionPool.from_url(self._url, decode_responses=True)
        self._client = redis.Redis(connection_pool=self._pool)
        logger.info("Redis client connected", url=self._url)

    async def close(self) -> None:
        """Close all connections."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._pool is not None:
            await self._pool.disconnect()
            self._pool = None

    def get_client(self) -> redis.Redis:
        """Get the underlying Redis client."""
        if self._client is None:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    # =========================================================================
    # Publishing
    # =========================================================================

    @staticmethod
    def _encode(message: str | bytes | BaseModel) -> str | bytes:
        if isinstance(message, BaseModel):
            return message.model_dump_json()
        return message

    async def publish(self, channel: str, message: str | bytes | BaseModel) -> int:
        """Publish a message on a channel.

        Args:
            channel: Channel name
            message: Payload (pydantic models are serialized to JSON)

        Returns:
            Number of subscribers that received the message
        """
        return int(await self.get_client().publish(channel, self._encode(message)))

    async def spublish(self, channel: str, message: str | bytes | BaseModel) -> int:
        """Publish a message on a shard channel.

        Returns:
            Number of shard subscribers that received the message
        """
        client = self.get_client()
        return int(await client.execute_command("SPUBLISH", channel, self._encode(message)))

    # =========================================================================
    # Introspection
    # =========================================================================

    async def pubsub_channels(self, pattern: str | None = None) -> list[str]:
        """List active channels, optionally filtered by a glob pattern."""
        args = [pattern] if pattern else []
        response = await self.get_client().execute_command("PUBSUB CHANNELS", *args)
        return [_as_str(channel) for channel in response or []]

    async def pubsub_numsub(self, *channels: str) -> dict[str, int]:
        """Count subscribers of each channel (patterns excluded)."""
        response = await self.get_client().execute_command("PUBSUB NUMSUB", *channels)
        return _counts(response)

    async def pubsub_numpat(self) -> int:
        """Count pattern subscriptions across all clients."""
        return int(await self.get_client().execute_command("PUBSUB NUMPAT"))

    async def pubsub_shard_channels(self, pattern: str | None = None) -> list[str]:
        """List active shard channels, optionally filtered by a glob pattern."""
        args = [pattern] if pattern else []
        response = await self.get_client().execute_command("PUBSUB SHARDCHANNELS", *args)
        return [_as_str(channel) for channel in response or []]

    async def pubsub_shard_numsub(self, *channels: str) -> dict[str, int]:
        """Count subscribers of each shard channel."""
        response = await self.get_client().execute_command("PUBSUB SHARDNUMSUB", *channels)
        return _counts(response)

    # =========================================================================
    # Health Check
    # =========================================================================

    async def health_check(self) -> dict[str, Any]:
        """Check Redis connectivity.

        Returns:
            Health status dict
        """
        try:
            await self.get_client().ping()
        except Exception as e:
            return {"status": "unhealthy", "error": str(e)}
        return {"status": "healthy"}
