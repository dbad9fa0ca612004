"""
Shared test configuration and fixtures.

Every test runs against the in-memory stores; live Cosmos tests are
skipped unless CANVAS_COSMOS_ENDPOINT is set.
"""

import os
from datetime import UTC, datetime

import pytest

from shared_canvas.board import Compactor
from shared_canvas.config import CanvasConfig, ReaderConfig, ServiceEndpoints
from shared_canvas.coordinator import WriteCoordinator
from shared_canvas.models import Pixel
from shared_canvas.resilience import RetryConfig
from shared_canvas.stores import (
    InMemoryBlobStore,
    InMemoryChangeLog,
    InMemoryPushTransport,
    InMemoryUserStore,
)

# Fixed clock for admission tests
NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)

requires_cosmos = pytest.mark.skipif(
    not os.environ.get("CANVAS_COSMOS_ENDPOINT"),
    reason="CANVAS_COSMOS_ENDPOINT not set",
)


def pixel(x: int = 1, y: int = 1, color: int = 3) -> Pixel:
    return Pixel(x=x, y=y, color=color)


@pytest.fixture
def canvas_config() -> CanvasConfig:
    return CanvasConfig(width=8, height=8, throttle_seconds=30, append_chunk_size=300)


@pytest.fixture
def reader_config() -> ReaderConfig:
    return ReaderConfig(poll_delay=0.01, default_max_item_count=100)


@pytest.fixture
def fast_retry() -> RetryConfig:
    return RetryConfig(max_retries=2, backoff_base=0.0)


@pytest.fixture
def change_log() -> InMemoryChangeLog:
    return InMemoryChangeLog()


@pytest.fixture
def users() -> InMemoryUserStore:
    return InMemoryUserStore()


@pytest.fixture
def transport() -> InMemoryPushTransport:
    return InMemoryPushTransport()


@pytest.fixture
def blobs() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def coordinator(users, change_log, canvas_config, fast_retry) -> WriteCoordinator:
    return WriteCoordinator(users, change_log, canvas_config, retry_config=fast_retry)


@pytest.fixture
def compactor(change_log, blobs, canvas_config, fast_retry) -> Compactor:
    return Compactor(change_log, blobs, canvas_config, retry_config=fast_retry)


@pytest.fixture
def endpoints() -> ServiceEndpoints:
    return ServiceEndpoints(
        get_board="http://localhost/api/board",
        login="http://localhost/.auth/login",
        update_pixel="http://localhost/api/update-pixel",
        websocket="ws://localhost/hubs/changes",
        user="http://localhost/api/user",
        admin="http://localhost/admin",
        logout="http://localhost/.auth/logout",
        throttle_rate=30,
    )
