"""Subscribe/unsubscribe coordination.

Tracks every request sent to the server as a PendingOperation and correlates
server acknowledgements with them in FIFO order per (action, key). Blocking
operations change the registry at the moment their acknowledgement is
processed on the reader, so no message published after the acknowledgement
is missed and none is delivered to a consumer removed by it.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from kvpubsub.config import PubSubSettings, get_settings
from kvpubsub.errors import (
    PubSubConnectionError,
    PubSubError,
    ShardRoutingError,
    SubscriptionTimeoutError,
)
from kvpubsub.models import (
    PubSubState,
    SubscribeMode,
    SubscriptionAction,
    SubscriptionKey,
    SubscriptionKind,
)
from kvpubsub.observability import get_logger
from kvpubsub.transport.base import TopologyProvider, Transport
from kvpubsub.transport.frames import NodeAddress, SubscriptionAck, build_command

from .consumers import Consumer, ConsumerHandle
from .matcher import validate_key
from .registry import SubscriptionRegistry

logger = get_logger(__name__)


class OperationState(str, Enum):
    """Lifecycle of a subscribe/unsubscribe request."""

    REQUESTED = "requested"
    SENT = "sent"
    ACKNOWLEDGED = "acknowledged"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass(eq=False)
class PendingOperation:
    """One subscribe or unsubscribe request awaiting acknowledgement.

    ``consumers`` are bound (subscribe) or detached (unsubscribe) when the
    acknowledgement arrives; lazy operations carry none.
    """

    action: SubscriptionAction
    key: SubscriptionKey
    node: NodeAddress | None = None
    mode: SubscribeMode = SubscribeMode.LAZY
    consumers: tuple[Consumer, ...] = ()
    state: OperationState = OperationState.REQUESTED
    future: asyncio.Future[None] | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def finished(self) -> bool:
        return self.state in (
            OperationState.ACKNOWLEDGED,
            OperationState.TIMED_OUT,
            OperationState.FAILED,
        )

    def mark_sent(self) -> None:
        if self.state is OperationState.REQUESTED:
            self.state = OperationState.SENT

    def resolve(self) -> None:
        self.state = OperationState.ACKNOWLEDGED
        if self.future is not None and not self.future.done():
            self.future.set_result(None)

    def fail(self, error: Exception) -> None:
        self.state = OperationState.FAILED
        if self.future is not None and not self.future.done():
            self.future.set_exception(error)
            # Mark retrieved; callers that stopped waiting must not warn
            self.future.exception()

    def expire(self) -> None:
        self.state = OperationState.TIMED_OUT
        if self.future is not None and not self.future.done():
            self.future.cancel()


class SubscriptionCoordinator:
    """Turns subscribe/unsubscribe calls into server requests and registry changes."""

    def __init__(
        self,
        registry: SubscriptionRegistry,
        transport: Transport,
        topology: TopologyProvider | None = None,
        settings: PubSubSettings | None = None,
    ):
        """Initialize the coordinator.

        Args:
            registry: Registry of bound consumers
            transport: Transport carrying requests
            topology: Shard owner resolution (cluster deployments only)
            settings: Engine settings (defaults to get_settings())
        """
        self._registry = registry
        self._transport = transport
        self._topology = topology
        self._settings = settings or get_settings()

        self._pending: dict[
            tuple[SubscriptionAction, SubscriptionKey], deque[PendingOperation]
        ] = defaultdict(deque)
        # Keys acknowledged by the server and the node holding them
        self._confirmed: dict[SubscriptionKey, NodeAddress | None] = {}
        # Node each subscribed key was last requested on
        self._routes: dict[SubscriptionKey, NodeAddress | None] = {}

        if topology is not None:
            topology.add_listener(self.on_node_replaced)

    @property
    def registry(self) -> SubscriptionRegistry:
        return self._registry

    def _timeout(self, timeout: float | None) -> float:
        return self._settings.blocking_timeout_seconds if timeout is None else timeout

    # =========================================================================
    # Routing and sending
    # =========================================================================

    def route(self, key: SubscriptionKey) -> NodeAddress | None:
        """Node a key's requests go to; None selects the default connection.

        Raises:
            ShardRoutingError: If a shard channel's owner cannot be resolved
        """
        if key.kind is not SubscriptionKind.SHARD or self._topology is None:
            return None
        try:
            return self._topology.resolve_shard_owner(key.name)
        except ShardRoutingError:
            raise
        except Exception as e:
            raise ShardRoutingError(f"Cannot resolve owner of shard channel {key.name}: {e}") from e

    def _has_pending(self, action: SubscriptionAction, key: SubscriptionKey) -> bool:
        queue = self._pending.get((action, key))
        return bool(queue)

    async def _send(self, operations: Sequence[PendingOperation]) -> None:
        """Register operations and send them, one command per (action, kind, node).

        Operations are registered before the write so an acknowledgement that
        arrives immediately finds them.

        Raises:
            PubSubConnectionError: If the transport rejects the write
        """
        groups: dict[
            tuple[SubscriptionAction, SubscriptionKind, NodeAddress | None],
            list[PendingOperation],
        ] = defaultdict(list)
        for op in operations:
            groups[(op.action, op.key.kind, op.node)].append(op)

        for (action, kind, node), group in groups.items():
            for op in group:
                self._pending[(op.action, op.key)].append(op)
                if action is SubscriptionAction.SUBSCRIBE:
                    self._routes[op.key] = node

            command = build_command(action, kind, [op.key.name for op in group])
            try:
                await self._transport.send(command, node)
            except Exception as e:
                error = e if isinstance(e, PubSubConnectionError) else PubSubConnectionError(str(e))
                if kind is SubscriptionKind.SHARD and not isinstance(error, ShardRoutingError):
                    error = ShardRoutingError(f"Shard owner {node} unreachable: {e}")
                for op in group:
                    self._forget(op)
                    op.fail(error)
                logger.warning(
                    "Subscription request failed",
                    action=action.value,
                    kind=kind.value,
                    node=node,
                    names=[op.key.name for op in group],
                    error=str(e),
                )
                if error is e:
                    raise
                raise error from e

            for op in group:
                op.mark_sent()
            logger.debug(
                "Subscription request sent",
                action=action.value,
                kind=kind.value,
                node=node,
                count=len(group),
            )

    def _forget(self, op: PendingOperation) -> None:
        queue = self._pending.get((op.action, op.key))
        if queue is None:
            return
        if op in queue:
            queue.remove(op)
        if not queue:
            del self._pending[(op.action, op.key)]

    async def _wait(self, operations: Sequence[PendingOperation], timeout: float) -> None:
        """Wait for blocking operations to be acknowledged.

        Raises:
            SubscriptionTimeoutError: For the first operation not acknowledged in time
            PubSubConnectionError: If an operation failed while waiting
        """
        futures = [op.future for op in operations if op.future is not None]
        try:
            await asyncio.wait_for(asyncio.shield(asyncio.gather(*futures)), timeout=timeout)
        except TimeoutError:
            pass
        finally:
            # Anything unresolved here (timeout or cancellation) is reconciled on late ack
            for op in operations:
                if not op.finished:
                    op.expire()

        for op in operations:
            if op.state is OperationState.FAILED and op.future is not None:
                raise op.future.exception()
        for op in operations:
            if op.state is OperationState.TIMED_OUT:
                logger.warning(
                    "Subscription request timed out",
                    action=op.action.value,
                    key=str(op.key),
                    timeout=timeout,
                )
                raise SubscriptionTimeoutError(op.key, op.action.value, timeout)

    # =========================================================================
    # Subscribe
    # =========================================================================

    async def subscribe(
        self,
        consumer: Consumer,
        mode: SubscribeMode = SubscribeMode.LAZY,
        timeout: float | None = None,
    ) -> ConsumerHandle:
        """Bind a consumer to its key, requesting the server subscription if needed.

        A key that already has consumers is bound locally without any request.
        LAZY binds immediately and returns once the request is written.
        BLOCKING binds when the server acknowledges.

        Args:
            consumer: New consumer, carrying its key
            mode: LAZY or BLOCKING
            timeout: Blocking deadline (defaults to blocking_timeout_seconds)

        Returns:
            Handle for the new subscription

        Raises:
            InvalidSubscriptionError: If the key is malformed
            ShardRoutingError: If the shard owner cannot be resolved or reached
            SubscriptionTimeoutError: If a blocking request is not acknowledged in time
        """
        key = consumer.key
        validate_key(key)
        handle = ConsumerHandle(consumer, self)

        if self._registry.contains(key):
            self._registry.bind(consumer)
            logger.debug("Consumer bound to existing subscription", key=str(key))
            return handle

        node = self.route(key)

        if SubscribeMode(mode) is SubscribeMode.LAZY:
            self._registry.bind(consumer)
            op = PendingOperation(SubscriptionAction.SUBSCRIBE, key, node)
            try:
                await self._send([op])
            except PubSubConnectionError:
                self._registry.unbind(consumer)
                await consumer.detach()
                raise
            logger.info("Subscribed", key=str(key), node=node, mode="lazy")
            return handle

        op = PendingOperation(
            SubscriptionAction.SUBSCRIBE,
            key,
            node,
            mode=SubscribeMode.BLOCKING,
            consumers=(consumer,),
            future=asyncio.get_running_loop().create_future(),
        )
        try:
            await self._send([op])
            await self._wait([op], self._timeout(timeout))
        except (PubSubError, asyncio.CancelledError):
            if self._registry.get(consumer.consumer_id) is None:
                await consumer.detach()
            raise
        logger.info("Subscribed", key=str(key), node=node, mode="blocking")
        return handle

    # =========================================================================
    # Unsubscribe
    # =========================================================================

    async def unsubscribe_handle(
        self,
        handle: ConsumerHandle,
        mode: SubscribeMode = SubscribeMode.LAZY,
        timeout: float | None = None,
    ) -> None:
        """Remove one consumer.

        The server subscription is dropped only when this was the last
        consumer of its key. LAZY detaches at once; BLOCKING detaches when the
        server acknowledges, leaving the consumer bound on timeout.

        Args:
            handle: Subscription to remove
            mode: LAZY or BLOCKING
            timeout: Blocking deadline (defaults to blocking_timeout_seconds)
        """
        consumer = handle.consumer
        key = consumer.key
        bound = self._registry.consumers(key)

        if not any(c.consumer_id == consumer.consumer_id for c in bound):
            return

        if len(bound) > 1 or SubscribeMode(mode) is SubscribeMode.LAZY:
            result = self._registry.unbind(consumer)
            await consumer.detach()
            if result is not None and result.last:
                await self._send([self._unsubscribe_op(key)])
            logger.info("Unsubscribed", key=str(key), last=bool(result and result.last))
            return

        op = self._unsubscribe_op(key, SubscribeMode.BLOCKING, (consumer,))
        await self._send([op])
        await self._wait([op], self._timeout(timeout))
        logger.info("Unsubscribed", key=str(key), last=True, mode="blocking")

    async def unsubscribe(
        self,
        kind: SubscriptionKind,
        names: str | Iterable[str] | None = None,
        mode: SubscribeMode = SubscribeMode.LAZY,
        timeout: float | None = None,
    ) -> None:
        """Remove every consumer of the given keys of one kind.

        Args:
            kind: Subscription kind
            names: One channel or pattern, or several; None means every key
                of the kind
            mode: LAZY or BLOCKING
            timeout: Blocking deadline (defaults to blocking_timeout_seconds)
        """
        kind = SubscriptionKind(kind)
        if names is None:
            keys = self._registry.keys(kind)
        else:
            if isinstance(names, str):
                names = [names]
            keys = []
            for name in dict.fromkeys(names):
                key = SubscriptionKey(kind, name)
                validate_key(key)
                if self._registry.contains(key) or key in self._confirmed:
                    keys.append(key)
        await self._unsubscribe_keys(keys, mode, timeout)

    async def unsubscribe_all(
        self,
        mode: SubscribeMode = SubscribeMode.LAZY,
        timeout: float | None = None,
    ) -> None:
        """Remove every consumer of every kind."""
        await self._unsubscribe_keys(self._registry.keys(), mode, timeout)

    async def _unsubscribe_keys(
        self,
        keys: Sequence[SubscriptionKey],
        mode: SubscribeMode,
        timeout: float | None,
    ) -> None:
        if not keys:
            return

        if SubscribeMode(mode) is SubscribeMode.LAZY:
            for consumer in self._registry.unbind_keys(keys):
                await consumer.detach()
            await self._send([self._unsubscribe_op(key) for key in keys])
            logger.info("Unsubscribed", keys=[str(k) for k in keys], mode="lazy")
            return

        operations = [
            self._unsubscribe_op(key, SubscribeMode.BLOCKING, self._registry.consumers(key))
            for key in keys
        ]
        await self._send(operations)
        await self._wait(operations, self._timeout(timeout))
        logger.info("Unsubscribed", keys=[str(k) for k in keys], mode="blocking")

    def _unsubscribe_op(
        self,
        key: SubscriptionKey,
        mode: SubscribeMode = SubscribeMode.LAZY,
        consumers: tuple[Consumer, ...] = (),
    ) -> PendingOperation:
        if key in self._confirmed:
            node = self._confirmed[key]
        elif key in self._routes:
            node = self._routes[key]
        else:
            node = self.route(key)

        future = None
        if mode is SubscribeMode.BLOCKING:
            future = asyncio.get_running_loop().create_future()
        return PendingOperation(
            SubscriptionAction.UNSUBSCRIBE, key, node, mode=mode, consumers=consumers, future=future
        )

    # =========================================================================
    # Acknowledgements (called on the reader task)
    # =========================================================================

    async def handle_ack(self, ack: SubscriptionAck) -> None:
        """Apply a server acknowledgement.

        Args:
            ack: Acknowledgement read from the network
        """
        if ack.name is None:
            return

        key = SubscriptionKey(ack.kind, ack.name)
        if ack.action is SubscriptionAction.SUBSCRIBE:
            self._confirmed[key] = ack.node
        else:
            self._confirmed.pop(key, None)

        queue = self._pending.get((ack.action, key))
        op = queue.popleft() if queue else None
        if queue is not None and not queue:
            del self._pending[(ack.action, key)]

        if op is None:
            logger.debug("Unsolicited acknowledgement", action=ack.action.value, key=str(key))
        elif op.state is OperationState.TIMED_OUT:
            logger.info("Late acknowledgement", action=ack.action.value, key=str(key))
        elif op.state is not OperationState.FAILED:
            if op.action is SubscriptionAction.SUBSCRIBE:
                for consumer in op.consumers:
                    self._registry.bind(consumer)
            else:
                for consumer in op.consumers:
                    self._registry.unbind(consumer)
                    await consumer.detach()
            op.resolve()

        await self._reconcile(key, ack.node)

    async def _reconcile(self, key: SubscriptionKey, node: NodeAddress | None) -> None:
        """Bring the server back in line with the registry for one key.

        Nothing is sent while another request for the key is still pending;
        its own acknowledgement reconciles again.
        """
        if self._has_pending(SubscriptionAction.SUBSCRIBE, key) or self._has_pending(
            SubscriptionAction.UNSUBSCRIBE, key
        ):
            return

        bound = self._registry.contains(key)
        confirmed = key in self._confirmed

        try:
            if confirmed and not bound:
                logger.info("Dropping orphaned subscription", key=str(key), node=node)
                await self._send([PendingOperation(SubscriptionAction.UNSUBSCRIBE, key, node)])
            elif bound and not confirmed:
                logger.info("Restoring subscription", key=str(key))
                await self._send(
                    [PendingOperation(SubscriptionAction.SUBSCRIBE, key, self.route(key))]
                )
        except PubSubConnectionError as e:
            logger.warning("Reconciliation failed", key=str(key), error=str(e))

    # =========================================================================
    # Replay
    # =========================================================================

    async def resubscribe(self, node: NodeAddress | None = None) -> int:
        """Re-request registry keys as lazy subscribes.

        Safe to repeat: the server treats duplicate subscribes as no-ops.

        Args:
            node: Only replay shard keys owned by this node; None replays all

        Returns:
            Number of keys requested
        """
        if node is None:
            keys = self._registry.keys()
        else:
            keys = [
                key
                for key in self._registry.keys(SubscriptionKind.SHARD)
                if self._owner_or_none(key) == node
            ]
        return await self._replay(keys)

    async def _replay(self, keys: Iterable[SubscriptionKey]) -> int:
        operations = []
        for key in keys:
            if self._has_pending(SubscriptionAction.SUBSCRIBE, key):
                continue
            try:
                operations.append(
                    PendingOperation(SubscriptionAction.SUBSCRIBE, key, self.route(key))
                )
            except ShardRoutingError as e:
                logger.warning("Cannot replay subscription", key=str(key), error=str(e))

        if not operations:
            return 0
        try:
            await self._send(operations)
        except PubSubConnectionError as e:
            logger.warning("Replay failed", count=len(operations), error=str(e))
            return 0

        logger.info("Subscriptions replayed", count=len(operations))
        return len(operations)

    def _owner_or_none(self, key: SubscriptionKey) -> NodeAddress | None:
        try:
            return self.route(key)
        except ShardRoutingError:
            return None

    def _fail_node(self, node: NodeAddress | None, reason: str) -> None:
        """Fail in-flight operations routed to a node and forget its confirmations."""
        error = PubSubConnectionError(reason)
        for queue_key in list(self._pending):
            queue = self._pending[queue_key]
            for op in [op for op in queue if op.node == node]:
                queue.remove(op)
                op.fail(error)
            if not queue:
                del self._pending[queue_key]

        for key in [k for k, n in self._confirmed.items() if n == node]:
            del self._confirmed[key]

    async def on_reconnected(self, node: NodeAddress | None = None) -> None:
        """Replay subscriptions after the connection to a node was re-established.

        Args:
            node: Node whose connection was replaced; None is the default connection
        """
        self._fail_node(node, f"Connection to {node or 'default node'} was reset")
        keys = [key for key in self._registry.keys() if self._owner_or_none(key) == node]
        count = await self._replay(keys)
        logger.info("Connection recovered", node=node, replayed=count)

    async def on_node_replaced(self, old: NodeAddress, new: NodeAddress) -> None:
        """Move shard subscriptions held on a replaced node to its successor.

        Args:
            old: Node that left the topology
            new: Node that took over its slots
        """
        keys = [
            key
            for key in self._registry.keys(SubscriptionKind.SHARD)
            if self._routes.get(key) == old or self._confirmed.get(key) == old
        ]
        self._fail_node(old, f"Node {old} was replaced by {new}")
        count = await self._replay(keys)
        logger.info("Shard subscriptions moved", old=old, new=new, replayed=count)

    # =========================================================================
    # Introspection
    # =========================================================================

    def state(self) -> PubSubState:
        """Desired (registry) versus confirmed (server) subscriptions."""
        desired: dict[SubscriptionKind, set[str]] = {kind: set() for kind in SubscriptionKind}
        actual: dict[SubscriptionKind, set[str]] = {kind: set() for kind in SubscriptionKind}
        for key in self._registry.keys():
            desired[key.kind].add(key.name)
        for key in self._confirmed:
            actual[key.kind].add(key.name)
        return PubSubState(desired=desired, actual=actual)

    def pending(self) -> list[PendingOperation]:
        """Operations still awaiting acknowledgement, oldest first per key."""
        return [op for queue in self._pending.values() for op in queue]

    async def close(self) -> None:
        """Fail every in-flight operation."""
        error = PubSubConnectionError("Subscriber closed")
        for queue in self._pending.values():
            for op in queue:
                op.fail(error)
        self._pending.clear()

