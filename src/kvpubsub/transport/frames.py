"""Frames exchanged with the transport, and the push-message codec.

The server answers pub/sub commands with push arrays:

    [b"subscribe", b"news", 1]                  acknowledgement
    [b"message", b"news", b"payload"]           exact-channel delivery
    [b"pmessage", b"news.*", b"news.a", b"p"]   pattern delivery
    [b"smessage", b"orders", b"payload"]        shard-channel delivery

Everything that is not a recognised push array is passed through as a
CommandReply for the external command layer.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, TypeAlias

from kvpubsub.models import PublishedMessage, SubscriptionAction, SubscriptionKind

NodeAddress: TypeAlias = str


@dataclass(frozen=True, slots=True)
class SubscriptionAck:
    """Server acknowledgement of one subscribe/unsubscribe target.

    ``name`` is None when the server reports an unsubscribe while nothing of
    that kind was subscribed.
    """

    action: SubscriptionAction
    kind: SubscriptionKind
    name: str | None
    count: int
    node: NodeAddress | None = None


@dataclass(frozen=True, slots=True)
class CommandReply:
    """Reply to an ordinary command, not handled by the pub/sub engine."""

    value: Any
    node: NodeAddress | None = None


@dataclass(frozen=True, slots=True)
class Reconnected:
    """The transport re-established a connection; its subscriptions are gone."""

    node: NodeAddress | None = None


ParsedFrame: TypeAlias = PublishedMessage | SubscriptionAck | CommandReply | Reconnected


_COMMANDS: dict[tuple[SubscriptionAction, SubscriptionKind], str] = {
    (SubscriptionAction.SUBSCRIBE, SubscriptionKind.EXACT): "SUBSCRIBE",
    (SubscriptionAction.UNSUBSCRIBE, SubscriptionKind.EXACT): "UNSUBSCRIBE",
    (SubscriptionAction.SUBSCRIBE, SubscriptionKind.PATTERN): "PSUBSCRIBE",
    (SubscriptionAction.UNSUBSCRIBE, SubscriptionKind.PATTERN): "PUNSUBSCRIBE",
    (SubscriptionAction.SUBSCRIBE, SubscriptionKind.SHARD): "SSUBSCRIBE",
    (SubscriptionAction.UNSUBSCRIBE, SubscriptionKind.SHARD): "SUNSUBSCRIBE",
}

_ACK_TYPES: dict[bytes, tuple[SubscriptionAction, SubscriptionKind]] = {
    command.lower().encode(): action_kind for action_kind, command in _COMMANDS.items()
}

_MESSAGE_TYPES: dict[bytes, SubscriptionKind] = {
    b"message": SubscriptionKind.EXACT,
    b"pmessage": SubscriptionKind.PATTERN,
    b"smessage": SubscriptionKind.SHARD,
}


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8", errors="surrogateescape")
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    return str(value).encode()


def _to_str(value: Any) -> str:
    if isinstance(value, str):
        return value
    return _to_bytes(value).decode("utf-8", errors="surrogateescape")


def build_command(
    action: SubscriptionAction,
    kind: SubscriptionKind,
    names: Iterable[str],
) -> list[str]:
    """Encode a subscribe/unsubscribe request.

    Args:
        action: Subscribe or unsubscribe
        kind: Subscription kind, selecting the command variant
        names: Channels or patterns

    Returns:
        Command word followed by its arguments
    """
    return [_COMMANDS[(action, kind)], *names]


def command_action(word: str) -> tuple[SubscriptionAction, SubscriptionKind] | None:
    """Map a command word such as ``PSUBSCRIBE`` back to its action and kind."""
    return _ACK_TYPES.get(word.lower().encode())


def parse_push(response: Any, node: NodeAddress | None = None) -> ParsedFrame:
    """Classify a raw response read from a subscribed connection.

    Args:
        response: Decoded RESP value (list for push messages)
        node: Node the response was read from

    Returns:
        PublishedMessage, SubscriptionAck, or CommandReply
    """
    if not isinstance(response, (list, tuple)) or not response:
        return CommandReply(response, node)

    head = response[0]
    if not isinstance(head, (bytes, str)):
        return CommandReply(response, node)
    message_type = _to_bytes(head).lower()

    kind = _MESSAGE_TYPES.get(message_type)
    if kind is SubscriptionKind.PATTERN and len(response) == 4:
        return PublishedMessage(
            channel=_to_str(response[2]),
            kind=kind,
            payload=_to_bytes(response[3]),
            pattern=_to_str(response[1]),
        )
    if kind is not None and kind is not SubscriptionKind.PATTERN and len(response) == 3:
        return PublishedMessage(
            channel=_to_str(response[1]),
            kind=kind,
            payload=_to_bytes(response[2]),
        )

    action_kind = _ACK_TYPES.get(message_type)
    if action_kind is not None and len(response) == 3:
        action, ack_kind = action_kind
        name = response[1]
        return SubscriptionAck(
            action=action,
            kind=ack_kind,
            name=None if name is None else _to_str(name),
            count=int(response[2] or 0),
            node=node,
        )

    return CommandReply(response, node)
