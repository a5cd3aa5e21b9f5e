"""Unit tests for configuration and logging setup."""

import pytest
from pydantic import ValidationError

from kvpubsub.config import DispatchMode, LogFormat, PubSubSettings, QueueFullMode
from kvpubsub.models import SubscriptionConfig
from kvpubsub.observability import ConnectionContext, connection_id_var, node_var, setup_logging


class TestPubSubSettings:
    """Tests for PubSubSettings."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("PUBSUB_DISPATCH_MODE", raising=False)
        settings = PubSubSettings()
        assert settings.dispatch_mode == DispatchMode.INLINE
        assert settings.queue_capacity == 0
        assert settings.queue_full_mode == QueueFullMode.WAIT
        assert settings.blocking_timeout_seconds == 5.0

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("PUBSUB_DISPATCH_MODE", "pooled")
        monkeypatch.setenv("PUBSUB_CALLBACK_CONCURRENCY", "8")
        monkeypatch.setenv("PUBSUB_REDIS_URL", "redis://cache:6380/0")

        settings = PubSubSettings()

        assert settings.dispatch_mode == DispatchMode.POOLED
        assert settings.callback_concurrency == 8
        assert settings.redis_url == "redis://cache:6380/0"

    def test_test_environment_uses_text_logs(self):
        assert PubSubSettings().log_format == LogFormat.TEXT

    def test_values_are_clamped(self):
        settings = PubSubSettings(callback_concurrency=0, queue_capacity=-5)
        assert settings.callback_concurrency == 1
        assert settings.queue_capacity == 0

    @pytest.mark.parametrize(
        "field", ["blocking_timeout_seconds", "shutdown_timeout_seconds", "enqueue_timeout_seconds"]
    )
    def test_timeouts_must_be_positive(self, field):
        with pytest.raises(ValidationError):
            PubSubSettings(**{field: 0})


class TestSubscriptionConfig:
    """Tests for declared subscriptions."""

    def test_blank_names_rejected(self):
        with pytest.raises(ValidationError):
            SubscriptionConfig(channels=["ok", " "])

    def test_empty(self):
        assert SubscriptionConfig().is_empty()
        assert not SubscriptionConfig(patterns=["a*"]).is_empty()


class TestLogging:
    """Tests for logging setup and context."""

    def test_setup_logging_accepts_overrides(self):
        setup_logging(log_format=LogFormat.JSON)
        setup_logging(log_format=LogFormat.TEXT)

    def test_connection_context_resets(self):
        with ConnectionContext(connection_id="sub-1", node="a:7000"):
            assert connection_id_var.get() == "sub-1"
            assert node_var.get() == "a:7000"
        assert connection_id_var.get() is None
        assert node_var.get() is None

    @pytest.mark.asyncio
    async def test_async_connection_context(self):
        async with ConnectionContext(connection_id="sub-2"):
            assert connection_id_var.get() == "sub-2"
        assert connection_id_var.get() is None
