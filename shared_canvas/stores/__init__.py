"""Non-Cosmos store implementations: in-memory and local files."""

from .local_blob import LocalBlobStore
from .memory import (
    InMemoryBlobStore,
    InMemoryChangeLog,
    InMemoryPushTransport,
    InMemoryUserStore,
    MemoryCursorStore,
)

__all__ = [
    "LocalBlobStore",
    "InMemoryBlobStore",
    "InMemoryChangeLog",
    "InMemoryPushTransport",
    "InMemoryUserStore",
    "MemoryCursorStore",
]
