"""Counters reported by queues and the dispatcher."""

from datetime import datetime

from .base import PubSubBaseModel


class QueueMetrics(PubSubBaseModel):
    """Metrics for a pull queue's buffer state."""

    consumer_id: int
    buffer_size: int
    max_buffer_size: int
    messages_delivered: int
    messages_dropped: int
    last_read_time: datetime | None = None
    average_latency_ms: float = 0


class DispatcherStats(PubSubBaseModel):
    """Running totals for the message dispatcher."""

    messages_dispatched: int = 0
    deliveries: int = 0
    deliveries_dropped: int = 0
    unmatched_messages: int = 0
    callback_errors: int = 0
    pending_callbacks: int = 0
