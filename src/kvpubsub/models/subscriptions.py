"""Subscription and message models.

Hot-path values (keys and published messages) are frozen dataclasses so they
are hashable and cheap to construct on the reader task. Reporting and
configuration types are pydantic models.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from enum import Enum

from pydantic import ConfigDict, Field, field_validator

from .base import PubSubBaseModel


class SubscriptionKind(str, Enum):
    """Kind of subscription target."""

    EXACT = "exact"
    PATTERN = "pattern"
    SHARD = "shard"


class SubscribeMode(str, Enum):
    """Whether a subscribe/unsubscribe call waits for server acknowledgement."""

    LAZY = "lazy"
    BLOCKING = "blocking"


class SubscriptionAction(str, Enum):
    """Protocol action carried by requests and acknowledgements."""

    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


@dataclass(frozen=True, slots=True)
class SubscriptionKey:
    """One subscribable target: a kind plus a channel name or glob pattern."""

    kind: SubscriptionKind
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.name}"


@dataclass(frozen=True, slots=True)
class PublishedMessage:
    """A message published on a channel, as read from the network.

    ``pattern`` is set for pattern deliveries when the server reports which
    pattern matched.
    """

    channel: str
    kind: SubscriptionKind
    payload: bytes
    pattern: str | None = None

    @property
    def text(self) -> str:
        """Payload decoded as UTF-8."""
        return self.payload.decode("utf-8", errors="replace")


MessageCallback = Callable[[str, PublishedMessage], Awaitable[None] | None]


class PubSubState(PubSubBaseModel):
    """Desired versus acknowledged subscriptions, indexed by kind.

    ``desired`` is what local consumers are bound to; ``actual`` is what the
    server has confirmed for this connection.
    """

    # Keep enum members as keys so lookups by SubscriptionKind work
    model_config = ConfigDict(use_enum_values=False)

    desired: dict[SubscriptionKind, set[str]] = Field(default_factory=dict)
    actual: dict[SubscriptionKind, set[str]] = Field(default_factory=dict)

    @property
    def in_sync(self) -> bool:
        """True when every desired subscription is confirmed and nothing extra is."""
        for kind in SubscriptionKind:
            if self.desired.get(kind, set()) != self.actual.get(kind, set()):
                return False
        return True


class SubscriptionConfig(PubSubBaseModel):
    """Subscriptions declared up front and applied when a subscriber starts."""

    channels: list[str] = Field(default_factory=list, description="Exact channels")
    patterns: list[str] = Field(default_factory=list, description="Glob patterns")
    shard_channels: list[str] = Field(
        default_factory=list, description="Shard channels (cluster only)"
    )
    callback: MessageCallback | None = Field(
        default=None,
        description="Callback for every declared subscription; queues are used if omitted",
        exclude=True,
    )

    @field_validator("channels", "patterns", "shard_channels")
    @classmethod
    def validate_names(cls, v: list[str]) -> list[str]:
        """Reject blank names and drop duplicates, keeping first occurrence."""
        seen: list[str] = []
        for name in v:
            if not name or not name.strip():
                raise ValueError("Channel name or pattern cannot be empty or whitespace")
            if name not in seen:
                seen.append(name)
        return seen

    def keys(self) -> Iterator[SubscriptionKey]:
        """Yield every declared subscription key."""
        for name in self.channels:
            yield SubscriptionKey(SubscriptionKind.EXACT, name)
        for name in self.patterns:
            yield SubscriptionKey(SubscriptionKind.PATTERN, name)
        for name in self.shard_channels:
            yield SubscriptionKey(SubscriptionKind.SHARD, name)

    def is_empty(self) -> bool:
        return not (self.channels or self.patterns or self.shard_channels)
