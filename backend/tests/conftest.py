"""Pytest configuration and fixtures."""

import pytest

from archive_relay.config import RelayConfig
from archive_relay.progress import ProgressChannel
from fakes import FakeClock


@pytest.fixture
def config() -> RelayConfig:
    """Defaults with every wait removed."""
    return RelayConfig(
        retry_delay=0.0,
        retry_jitter=0.0,
        finalize_grace=0.0,
        io_chunk_size=100,
        cors_origins=["*"],
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def channel() -> ProgressChannel:
    return ProgressChannel(queue_size=100_000)


@pytest.fixture
def anyio_backend():
    """Use asyncio as the async backend."""
    return "asyncio"
