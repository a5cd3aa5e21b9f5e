"""Pytest configuration and shared fixtures."""

import asyncio
import os
from collections.abc import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio

# Set test environment before importing settings
os.environ["PUBSUB_LOG_LEVEL"] = "DEBUG"
os.environ["PUBSUB_LOG_FORMAT"] = "text"

from kvpubsub.config import PubSubSettings  # noqa: E402
from kvpubsub.engine import Subscriber  # noqa: E402
from kvpubsub.models import PublishedMessage  # noqa: E402
from kvpubsub.transport import InMemoryTransport  # noqa: E402


@pytest.fixture
def settings() -> PubSubSettings:
    """Settings with short timeouts for fast tests."""
    return PubSubSettings(
        blocking_timeout_seconds=0.5,
        shutdown_timeout_seconds=0.5,
        enqueue_timeout_seconds=0.05,
        reconnect_backoff_seconds=0.01,
        reconnect_backoff_max_seconds=0.05,
    )


@pytest.fixture
def transport() -> InMemoryTransport:
    """Loopback transport that acknowledges every request."""
    return InMemoryTransport()


@pytest_asyncio.fixture
async def subscriber(
    transport: InMemoryTransport, settings: PubSubSettings
) -> AsyncGenerator[Subscriber, None]:
    """Started subscriber over the loopback transport."""
    sub = Subscriber(transport, settings=settings)
    await sub.start()
    yield sub
    await sub.close()


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    """Poll a condition while letting the reader task run."""

    async def _wait(condition: Callable[[], bool], timeout: float = 1.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not condition():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.001)

    return _wait


@pytest.fixture
def collector() -> Callable[[], tuple[list[PublishedMessage], Callable]]:
    """Build a callback that records every message it receives."""

    def _make() -> tuple[list[PublishedMessage], Callable]:
        received: list[PublishedMessage] = []

        def callback(channel: str, message: PublishedMessage) -> None:
            received.append(message)

        return received, callback

    return _make


# =============================================================================
# Markers
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (no external dependencies)")
    config.addinivalue_line(
        "markers", "integration: Integration tests (require a running server)"
    )
    config.addinivalue_line("markers", "slow: Slow tests")
