"""
Shared Canvas

Collaborative pixel board service: many users paint a fixed-size 4-bit
board, writes are admitted per user and appended to an ordered change log,
and every change is pushed live to connected viewers.

Provides:
- Packed 4-bit board codec and snapshot compaction
- Per-user throttling with an optimistic-concurrency user store
- Change log reader with live WebSocket fan-out
- Cosmos DB backend plus in-memory and local-file stores
- aiohttp HTTP/WebSocket service and a viewer client

Usage:

    >>> from shared_canvas import WriteCoordinator, Pixel
    >>> from shared_canvas.stores import InMemoryChangeLog, InMemoryUserStore
    >>> coordinator = WriteCoordinator(InMemoryUserStore(), InMemoryChangeLog())
    >>> result = await coordinator.submit_batch("user-1", None, [Pixel(x=3, y=4, color=9)])

Backend Selection:

    # Cosmos DB for the change log and user state
    from shared_canvas.cosmos import CosmosChangeLog, CosmosClientWrapper, CosmosConfig, CosmosUserStore

    # In-memory for tests and local development
    from shared_canvas.stores import InMemoryChangeLog, InMemoryUserStore
"""

from .board import Board, CompactionReport, Compactor, generate_board, pack, unpack
from .config import CanvasConfig, ReaderConfig, ServiceEndpoints
from .coordinator import WriteCoordinator
from .exceptions import (
    AuthenticationError,
    BatchTooLargeError,
    CanvasError,
    ConcurrencyConflictError,
    ConfigurationError,
    FatalStoreError,
    MalformedBoardError,
    OutOfBoundsError,
    PartialAppendError,
    RateLimitedError,
    StoreError,
    StoreErrorKind,
    ThrottleRejection,
    TransientStoreError,
    ValidationError,
)
from .feed import Broadcaster, ChangeLogReader, decode_entries, encode_entries
from .models import (
    AppendReport,
    ChangeLogEntry,
    FeedPage,
    Pixel,
    SubmitResult,
    ThrottleDecision,
    ThrottleReason,
    UserState,
)
from .protocol import BlobCursorStore, BlobStore, CursorStore, OrderedLogClient, PushTransport, UserStore
from .throttle import ThrottleGate

__version__ = "0.1.0"

__all__ = [
    # Board
    "Board",
    "Compactor",
    "CompactionReport",
    "generate_board",
    "pack",
    "unpack",
    # Config
    "CanvasConfig",
    "ReaderConfig",
    "ServiceEndpoints",
    # Write path
    "WriteCoordinator",
    "ThrottleGate",
    # Feed
    "Broadcaster",
    "ChangeLogReader",
    "decode_entries",
    "encode_entries",
    # Models
    "AppendReport",
    "ChangeLogEntry",
    "FeedPage",
    "Pixel",
    "SubmitResult",
    "ThrottleDecision",
    "ThrottleReason",
    "UserState",
    # Interfaces
    "BlobCursorStore",
    "BlobStore",
    "CursorStore",
    "OrderedLogClient",
    "PushTransport",
    "UserStore",
    # Exceptions
    "CanvasError",
    "AuthenticationError",
    "BatchTooLargeError",
    "ConcurrencyConflictError",
    "ConfigurationError",
    "FatalStoreError",
    "MalformedBoardError",
    "OutOfBoundsError",
    "PartialAppendError",
    "RateLimitedError",
    "StoreError",
    "StoreErrorKind",
    "ThrottleRejection",
    "TransientStoreError",
    "ValidationError",
]
