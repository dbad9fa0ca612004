"""
Abstract interfaces for the collaborators the canvas core consumes.

The document store, push transport and blob store are external systems;
these base classes describe the only calls the core makes on them.
Concrete implementations live in ``shared_canvas.cosmos`` (Azure Cosmos DB),
``shared_canvas.stores`` (in-memory and local files) and
``shared_canvas.server`` (WebSocket push).
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Sequence

from .exceptions import BlobNotFoundError, ValidationError
from .models import FeedPage, Pixel, UserState

# Page-size hint meaning "let the store decide"
UNBOUNDED_PAGE_SIZE = -1


class OrderedLogClient(ABC):
    """An ordered, paginated, append-only log of pixel batches."""

    @abstractmethod
    async def fetch_page(
        self,
        cursor: str | None,
        page_size_hint: int = UNBOUNDED_PAGE_SIZE,
        start_from_beginning: bool = True,
    ) -> FeedPage:
        """Fetch the entries that follow ``cursor``.

        Args:
            cursor: Continuation token from a previous page, or None to start
            page_size_hint: Maximum entries to return, or -1 for unbounded
            start_from_beginning: With no cursor, start at the first entry
                (True) or only see entries appended from now on (False)

        Returns:
            The page, whose ``continuation`` resumes after its last entry

        Raises:
            StoreError: Classified by ``kind``; see StoreErrorKind
        """

    @abstractmethod
    async def append_batch(self, items: Sequence[Pixel]) -> None:
        """Append one batch of pixels as a single log entry.

        Raises:
            StoreError: If the write was not acknowledged
        """


class UserStore(ABC):
    """Persistence for per-user admission state."""

    @abstractmethod
    async def get_or_create(self, user_id: str) -> UserState:
        """Read a user's state, creating an immediately-eligible record if absent."""

    @abstractmethod
    async def replace(self, user: UserState) -> UserState:
        """Write ``user`` back if nobody changed it since it was read.

        Compares ``user.etag`` with the stored version.

        Returns:
            The stored state carrying its new etag

        Raises:
            ConcurrencyConflictError: If the stored etag differs
        """


class PushTransport(ABC):
    """One-to-many broadcast to every connected viewer."""

    @abstractmethod
    async def broadcast_all(self, channel: str, payload: str) -> None:
        """Send ``payload`` on ``channel`` to all connections; no delivery confirmation."""


class BlobStore(ABC):
    """Opaque named blobs grouped in containers."""

    @abstractmethod
    async def read_blob(self, container: str, name: str) -> bytes:
        """Read a blob.

        Raises:
            BlobNotFoundError: If the blob does not exist
        """

    @abstractmethod
    async def write_blob(self, container: str, name: str, data: bytes) -> None:
        """Create or overwrite a blob."""


class CursorStore(ABC):
    """Durable home for a change log continuation token."""

    @abstractmethod
    async def load(self) -> str | None:
        """Return the saved token, or None if there is none."""

    @abstractmethod
    async def save(self, token: str | None) -> None:
        """Persist ``token``; None clears it."""


class BlobCursorStore(CursorStore):
    """Keeps a cursor as a small JSON blob next to the board snapshot.

    Extra fields (such as the last applied sequence number) can be stored
    alongside the token with ``save_state``.
    """

    def __init__(self, blobs: BlobStore, container: str, name: str):
        self.blobs = blobs
        self.container = container
        self.name = name

    async def load_state(self) -> dict:
        try:
            raw = await self.blobs.read_blob(self.container, self.name)
        except BlobNotFoundError:
            return {}
        try:
            state = json.loads(raw)
        except ValueError as e:
            raise ValidationError(self.name, f"cursor blob is not valid JSON: {e}") from e
        if not isinstance(state, dict):
            raise ValidationError(self.name, "cursor blob must hold a JSON object")
        return state

    async def save_state(self, state: dict) -> None:
        await self.blobs.write_blob(self.container, self.name, json.dumps(state).encode("utf-8"))

    async def load(self) -> str | None:
        return (await self.load_state()).get("continuation")

    async def save(self, token: str | None) -> None:
        state = await self.load_state()
        state["continuation"] = token
        await self.save_state(state)
