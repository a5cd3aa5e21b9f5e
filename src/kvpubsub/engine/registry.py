"""Subscription registry.

Maps subscription keys to their bound consumers. Readers take an immutable
snapshot with a single attribute read; writers build a new snapshot under a
lock and swap it in. A lookup that started before a bind or unbind sees the
old snapshot in full, never a partial update.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from types import MappingProxyType

from kvpubsub.models import PublishedMessage, SubscriptionKey, SubscriptionKind

from .consumers import Consumer
from .matcher import match_keys

_Tables = dict[SubscriptionKind, dict[str, tuple[Consumer, ...]]]


@dataclass(frozen=True, slots=True)
class Unbound:
    """Result of removing one consumer.

    ``last`` is True when the key has no consumers left, meaning the server
    subscription is no longer needed.
    """

    key: SubscriptionKey
    last: bool


@dataclass(frozen=True)
class _Snapshot:
    tables: MappingProxyType = field(
        default_factory=lambda: MappingProxyType({kind: {} for kind in SubscriptionKind})
    )
    by_id: MappingProxyType = field(default_factory=lambda: MappingProxyType({}))


class SubscriptionRegistry:
    """Copy-on-write map of key -> consumers."""

    def __init__(self):
        self._snapshot = _Snapshot()
        self._write_lock = threading.Lock()

    def _publish(self, tables: _Tables, by_id: dict[int, Consumer]) -> None:
        self._snapshot = _Snapshot(MappingProxyType(tables), MappingProxyType(by_id))

    def _copy(self) -> tuple[_Tables, dict[int, Consumer]]:
        snapshot = self._snapshot
        return {kind: dict(table) for kind, table in snapshot.tables.items()}, dict(snapshot.by_id)

    # =========================================================================
    # Writers
    # =========================================================================

    def bind(self, consumer: Consumer) -> bool:
        """Bind a consumer to its key.

        Returns:
            True if this is the first consumer for the key
        """
        key = consumer.key
        with self._write_lock:
            tables, by_id = self._copy()
            if consumer.consumer_id in by_id:
                return False
            existing = tables[key.kind].get(key.name, ())
            tables[key.kind][key.name] = (*existing, consumer)
            by_id[consumer.consumer_id] = consumer
            self._publish(tables, by_id)
            return not existing

    def unbind(self, consumer: Consumer) -> Unbound | None:
        """Remove one consumer.

        Returns:
            Unbound result, or None if the consumer was not bound
        """
        key = consumer.key
        with self._write_lock:
            tables, by_id = self._copy()
            if by_id.pop(consumer.consumer_id, None) is None:
                return None
            bound = tables[key.kind].get(key.name, ())
            remaining = tuple(c for c in bound if c.consumer_id != consumer.consumer_id)
            if remaining:
                tables[key.kind][key.name] = remaining
            else:
                tables[key.kind].pop(key.name, None)
            self._publish(tables, by_id)
            return Unbound(key, last=not remaining)

    def unbind_keys(self, keys: Iterable[SubscriptionKey]) -> tuple[Consumer, ...]:
        """Remove every consumer of several keys in one snapshot swap.

        Lookups see either all of the keys or none of them.
        """
        with self._write_lock:
            tables, by_id = self._copy()
            removed = tuple(
                consumer for key in keys for consumer in tables[key.kind].pop(key.name, ())
            )
            if not removed:
                return ()
            for consumer in removed:
                by_id.pop(consumer.consumer_id, None)
            self._publish(tables, by_id)
            return removed

    def unbind_all(self) -> tuple[Consumer, ...]:
        """Remove every consumer and return them."""
        with self._write_lock:
            removed = tuple(self._snapshot.by_id.values())
            self._snapshot = _Snapshot()
            return removed

    # =========================================================================
    # Readers
    # =========================================================================

    def lookup(self, message: PublishedMessage) -> tuple[Consumer, ...]:
        """Consumers that should receive a published message."""
        tables = self._snapshot.tables
        keys = match_keys(
            message.channel,
            message.kind,
            tables[SubscriptionKind.EXACT],
            tables[SubscriptionKind.PATTERN],
            tables[SubscriptionKind.SHARD],
            pattern=message.pattern,
        )
        if len(keys) == 1:
            return tables[keys[0].kind][keys[0].name]
        return tuple(consumer for key in keys for consumer in tables[key.kind][key.name])

    def keys(self, kind: SubscriptionKind | None = None) -> list[SubscriptionKey]:
        """Keys with at least one consumer, optionally of one kind."""
        tables = self._snapshot.tables
        kinds = [kind] if kind is not None else list(SubscriptionKind)
        return [SubscriptionKey(k, name) for k in kinds for name in tables[k]]

    def contains(self, key: SubscriptionKey) -> bool:
        return key.name in self._snapshot.tables[key.kind]

    def consumers(self, key: SubscriptionKey) -> tuple[Consumer, ...]:
        return self._snapshot.tables[key.kind].get(key.name, ())

    def get(self, consumer_id: int) -> Consumer | None:
        return self._snapshot.by_id.get(consumer_id)

    def __iter__(self) -> Iterator[Consumer]:
        return iter(tuple(self._snapshot.by_id.values()))

    def __len__(self) -> int:
        return len(self._snapshot.by_id)
