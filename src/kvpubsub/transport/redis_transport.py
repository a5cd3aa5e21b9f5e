"""Transport over redis-py asyncio connections.

One dedicated connection per node carries subscribe/unsubscribe requests and
push messages. Each connection has its own reader task feeding a shared frame
queue; a dropped connection is re-established with exponential backoff and
reported with a Reconnected frame so the engine can replay subscriptions.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Sequence
from typing import Any

from redis.asyncio.connection import Connection, parse_url
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from kvpubsub.config import PubSubSettings, get_settings
from kvpubsub.errors import PubSubConnectionError
from kvpubsub.observability import ConnectionContext, get_logger

from .frames import NodeAddress, ParsedFrame, Reconnected, parse_push

logger = get_logger(__name__)


class RedisTransport:
    """Pub/sub transport backed by redis-py connections.

    Implements the Transport protocol.
    """

    def __init__(self, url: str | None = None, settings: PubSubSettings | None = None):
        """Initialize the transport.

        Args:
            url: Server URL (defaults to settings.redis_url)
            settings: Engine settings (defaults to get_settings())
        """
        self._settings = settings or get_settings()
        self._url = url or self._settings.redis_url

        kwargs: dict[str, Any] = parse_url(self._url)
        self._connection_class = kwargs.pop("connection_class", Connection)
        self._connection_kwargs = kwargs
        self.default_node: NodeAddress = (
            f"{kwargs.get('host', 'localhost')}:{kwargs.get('port', 6379)}"
        )

        self._connections: dict[NodeAddress | None, Connection] = {}
        self._readers: dict[NodeAddress | None, asyncio.Task[None]] = {}
        self._frames: asyncio.Queue[ParsedFrame | None] = asyncio.Queue()
        self._lock = asyncio.Lock()
        self._closed = False

    def _make_connection(self, node: NodeAddress | None) -> Connection:
        kwargs = dict(self._connection_kwargs)
        if node is not None and ":" in node:
            host, _, port = node.rpartition(":")
            kwargs["host"] = host
            kwargs["port"] = int(port)
        return self._connection_class(**kwargs)

    async def _get_connection(self, node: NodeAddress | None) -> Connection:
        async with self._lock:
            connection = self._connections.get(node)
            if connection is not None:
                return connection

            connection = self._make_connection(node)
            try:
                await connection.connect()
            except (RedisConnectionError, RedisTimeoutError, OSError) as e:
                raise PubSubConnectionError(f"Cannot connect to {node}: {e}") from e

            self._connections[node] = connection
            self._readers[node] = asyncio.create_task(
                self._read_loop(node), name=f"pubsub-reader-{node or self.default_node}"
            )
            logger.info("Pub/sub connection established", node=node or self.default_node)
            return connection

    async def send(self, command: Sequence[str], node: NodeAddress | None = None) -> None:
        """Write a command on the connection for ``node``.

        Raises:
            PubSubConnectionError: If the node cannot be reached
        """
        if self._closed:
            raise PubSubConnectionError("Transport is closed")

        connection = await self._get_connection(node)
        try:
            await connection.send_command(*command)
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            raise PubSubConnectionError(f"Send to {node or self.default_node} failed: {e}") from e

    async def _read_loop(self, node: NodeAddress | None) -> None:
        """Read push messages from one node, reconnecting on failure."""
        delay = self._settings.reconnect_backoff_seconds

        with ConnectionContext(node=node or self.default_node):
            while not self._closed:
                connection = self._connections[node]
                try:
                    response = await connection.read_response()
                except asyncio.CancelledError:
                    raise
                except (RedisConnectionError, RedisTimeoutError, OSError) as e:
                    if self._closed:
                        return
                    logger.warning("Pub/sub connection lost", error=str(e))
                    await self._reconnect(node, delay)
                    delay = min(delay * 2, self._settings.reconnect_backoff_max_seconds)
                    continue

                delay = self._settings.reconnect_backoff_seconds
                self._frames.put_nowait(parse_push(response, node))

    async def _reconnect(self, node: NodeAddress | None, delay: float) -> None:
        """Re-establish the node connection, retrying until it succeeds or closes."""
        connection = self._connections[node]
        with contextlib.suppress(Exception):
            await connection.disconnect()

        while not self._closed:
            await asyncio.sleep(delay)
            try:
                await connection.connect()
            except (RedisConnectionError, RedisTimeoutError, OSError) as e:
                logger.warning("Reconnect failed", error=str(e), retry_in=delay)
                delay = min(delay * 2, self._settings.reconnect_backoff_max_seconds)
                continue

            logger.info("Pub/sub connection re-established")
            self._frames.put_nowait(Reconnected(node))
            return

    async def receive(self) -> AsyncIterator[ParsedFrame]:
        while True:
            frame = await self._frames.get()
            if frame is None:
                return
            yield frame

    async def close(self) -> None:
        """Stop readers and close every connection."""
        if self._closed:
            return
        self._closed = True

        for task in self._readers.values():
            task.cancel()
        for task in self._readers.values():
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._readers.clear()

        for node, connection in self._connections.items():
            try:
                await connection.disconnect()
            except Exception as e:
                logger.warning("Error closing connection", node=node, error=str(e))
        self._connections.clear()

        self._frames.put_nowait(None)
        logger.info("Pub/sub transport closed")
