"""Frame reader.

Single task consuming the transport and routing each frame by type:
messages to the dispatcher, acknowledgements and reconnects to the
coordinator, ordinary command replies to an optional hook.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable

from kvpubsub.models import PublishedMessage
from kvpubsub.observability import ConnectionContext, get_logger
from kvpubsub.transport.base import Transport
from kvpubsub.transport.frames import CommandReply, ParsedFrame, Reconnected, SubscriptionAck

from .coordinator import SubscriptionCoordinator
from .dispatcher import MessageDispatcher

logger = get_logger(__name__)

ReplyHook = Callable[[CommandReply], Awaitable[None] | None]


class FrameReader:
    """Routes frames from the transport to the engine."""

    def __init__(
        self,
        transport: Transport,
        dispatcher: MessageDispatcher,
        coordinator: SubscriptionCoordinator,
        on_reply: ReplyHook | None = None,
        connection_id: str | None = None,
    ):
        self.transport = transport
        self.connection_id = connection_id
        self.dispatcher = dispatcher
        self.coordinator = coordinator
        self.on_reply = on_reply
        self._task: asyncio.Task[None] | None = None
        self.frames_read = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the reader task."""
        if self.running:
            return
        self._task = asyncio.create_task(self.run(), name="pubsub-reader")
        logger.info("Frame reader started")

    async def run(self) -> None:
        """Read frames until the transport closes or the task is cancelled."""
        try:
            with ConnectionContext(connection_id=self.connection_id):
                await self._read_frames()
        except asyncio.CancelledError:
            logger.info("Frame reader cancelled", connection_id=self.connection_id)
            raise
        logger.info(
            "Frame reader stopped",
            connection_id=self.connection_id,
            frames_read=self.frames_read,
        )

    async def _read_frames(self) -> None:
        async for frame in self.transport.receive():
            self.frames_read += 1
            try:
                await self.handle_frame(frame)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Error handling frame",
                    frame_type=type(frame).__name__,
                    error=str(e),
                )

    async def handle_frame(self, frame: ParsedFrame) -> None:
        """Route one frame.

        Args:
            frame: Frame parsed by the transport
        """
        if isinstance(frame, PublishedMessage):
            await self.dispatcher.dispatch(frame)
        elif isinstance(frame, SubscriptionAck):
            await self.coordinator.handle_ack(frame)
        elif isinstance(frame, Reconnected):
            await self.coordinator.on_reconnected(frame.node)
        elif isinstance(frame, CommandReply):
            if self.on_reply is None:
                logger.debug("Ignoring command reply", node=frame.node)
                return
            result = self.on_reply(frame)
            if inspect.isawaitable(result):
                await result
        else:
            logger.warning("Unknown frame", frame_type=type(frame).__name__)

    async def stop(self) -> None:
        """Cancel the reader task and wait for it."""
        if self._task is None:
            return
        task, self._task = self._task, None
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
