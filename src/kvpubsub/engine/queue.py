"""Pull queue for consumers that read messages on demand.

Handles slow readers by:
- Buffering without limit by default
- Optionally bounding the buffer, with a wait (time-bounded), drop-oldest
  or drop-newest overflow policy
- Tracking delivery latency and drop counts
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from datetime import UTC, datetime

from kvpubsub.config import QueueFullMode
from kvpubsub.errors import QueueClosedError
from kvpubsub.models import PublishedMessage, QueueMetrics
from kvpubsub.observability import get_logger

logger = get_logger(__name__)


class PullQueue:
    """Ordered buffer of delivered messages with async reads.

    Only the dispatcher writes; one reader at a time is expected, but
    concurrent readers each receive distinct messages.
    """

    def __init__(
        self,
        consumer_id: int,
        max_size: int = 0,
        full_mode: QueueFullMode = QueueFullMode.WAIT,
        enqueue_timeout: float = 0.1,
    ):
        """Initialize the queue.

        Args:
            consumer_id: Owning consumer identifier
            max_size: Maximum buffered messages (0 = unbounded)
            full_mode: Policy when a bounded queue is full
            enqueue_timeout: Longest put() waits for space under the WAIT policy
        """
        self.consumer_id = consumer_id
        self.max_size = max_size
        self.full_mode = full_mode
        self.enqueue_timeout = enqueue_timeout

        self._buffer: deque[tuple[PublishedMessage, datetime]] = deque()
        self._changed = asyncio.Condition()
        self._messages_delivered = 0
        self._messages_dropped = 0
        self._latencies: deque[float] = deque(maxlen=100)
        self._last_read_time: datetime | None = None
        self._closed = False
        self._notify_tasks: set[asyncio.Task[None]] = set()

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._buffer)

    def _is_full(self) -> bool:
        return self.max_size > 0 and len(self._buffer) >= self.max_size

    def _drop(self, policy: str) -> None:
        self._messages_dropped += 1
        logger.debug(
            "Message dropped",
            consumer_id=self.consumer_id,
            policy=policy,
            dropped_total=self._messages_dropped,
        )

    async def put(self, message: PublishedMessage) -> bool:
        """Add a message to the queue.

        Never waits longer than ``enqueue_timeout``.

        Args:
            message: Message to buffer

        Returns:
            True if buffered, False if dropped or the queue is closed
        """
        async with self._changed:
            if self._closed:
                return False

            if self._is_full():
                if self.full_mode == QueueFullMode.DROP_OLDEST:
                    self._buffer.popleft()
                    self._drop("oldest")
                elif self.full_mode == QueueFullMode.DROP_NEWEST:
                    self._drop("newest")
                    return False
                else:
                    try:
                        await asyncio.wait_for(
                            self._changed.wait_for(lambda: not self._is_full() or self._closed),
                            timeout=self.enqueue_timeout,
                        )
                    except TimeoutError:
                        self._drop("wait_timeout")
                        return False
                    if self._closed:
                        return False

            self._buffer.append((message, datetime.now(UTC)))
            self._changed.notify_all()
            return True

    def _pop(self) -> PublishedMessage:
        message, queued_at = self._buffer.popleft()
        now = datetime.now(UTC)
        self._latencies.append((now - queued_at).total_seconds() * 1000)
        self._last_read_time = now
        self._messages_delivered += 1
        return message

    def try_read(self) -> PublishedMessage | None:
        """Return the next message without waiting, or None if empty.

        Raises:
            QueueClosedError: If the queue is closed and drained
        """
        if self._buffer:
            loop = None
            if self.max_size > 0:
                # Writers waiting for room only exist on a running loop
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    loop = None
            message = self._pop()
            if loop is not None:
                task = loop.create_task(self._notify())
                self._notify_tasks.add(task)
                task.add_done_callback(self._notify_tasks.discard)
            return message
        if self._closed:
            raise QueueClosedError(f"Queue for consumer {self.consumer_id} is closed")
        return None

    async def _notify(self) -> None:
        async with self._changed:
            self._changed.notify_all()

    async def read(self, timeout: float | None = None) -> PublishedMessage:
        """Wait for and return the next message.

        Cancelling the calling task, or hitting the timeout, returns promptly
        and leaves the buffered messages untouched.

        Args:
            timeout: Seconds to wait (None = forever)

        Raises:
            QueueClosedError: If the queue is closed and drained
            TimeoutError: If no message arrives in time
        """
        async with self._changed:
            await asyncio.wait_for(
                self._changed.wait_for(lambda: bool(self._buffer) or self._closed),
                timeout=timeout,
            )
            if not self._buffer:
                raise QueueClosedError(f"Queue for consumer {self.consumer_id} is closed")
            message = self._pop()
            self._changed.notify_all()
            return message

    def __aiter__(self) -> AsyncIterator[PublishedMessage]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[PublishedMessage]:
        while True:
            try:
                yield await self.read()
            except QueueClosedError:
                return

    async def close(self) -> None:
        """Close the queue; readers drain what is buffered, then get QueueClosedError."""
        async with self._changed:
            if self._closed:
                return
            self._closed = True
            self._changed.notify_all()

        logger.debug(
            "Queue closed",
            consumer_id=self.consumer_id,
            remaining=len(self._buffer),
        )

    def metrics(self) -> QueueMetrics:
        """Get queue metrics."""
        avg_latency = sum(self._latencies) / len(self._latencies) if self._latencies else 0

        return QueueMetrics(
            consumer_id=self.consumer_id,
            buffer_size=len(self._buffer),
            max_buffer_size=self.max_size,
            messages_delivered=self._messages_delivered,
            messages_dropped=self._messages_dropped,
            last_read_time=self._last_read_time,
            average_latency_ms=round(avg_latency, 2),
        )
