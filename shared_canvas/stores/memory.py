"""
In-memory implementations of the store interfaces.

Used by the test suite and by ``shared-canvas serve --memory`` for local
development. Failures can be injected with ``fail_next`` to exercise the
error paths of the reader, coordinator and compactor.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Sequence
from datetime import UTC, datetime

from ..exceptions import BlobNotFoundError, ConcurrencyConflictError, StoreError, StoreErrorKind
from ..models import ChangeLogEntry, FeedPage, Pixel, UserState
from ..protocol import UNBOUNDED_PAGE_SIZE, BlobStore, CursorStore, OrderedLogClient, PushTransport, UserStore


class InMemoryChangeLog(OrderedLogClient):
    """Ordered log held in a list; the cursor is the index of the next entry.

    Args:
        max_unbounded_page: If set, an unbounded fetch that would return
            more entries than this raises PAGE_TOO_LARGE, the way a store
            rejects an oversized response.
    """

    def __init__(self, max_unbounded_page: int | None = None):
        self.entries: list[ChangeLogEntry] = []
        self.max_unbounded_page = max_unbounded_page
        self.fetch_calls: list[tuple[str | None, int]] = []
        self._fetch_failures: deque[Exception] = deque()
        self._append_failures: deque[Exception] = deque()
        self._lock = asyncio.Lock()

    def fail_next_fetch(self, *errors: Exception) -> None:
        """Queue errors raised by the next fetches, one per call."""
        self._fetch_failures.extend(errors)

    def fail_next_append(self, *errors: Exception) -> None:
        """Queue errors raised by the next appends, one per call."""
        self._append_failures.extend(errors)

    @property
    def items(self) -> list[Pixel]:
        """Every pixel ever appended, in log order."""
        return [pixel for entry in self.entries for pixel in entry.items]

    async def append_batch(self, items: Sequence[Pixel]) -> None:
        if self._append_failures:
            raise self._append_failures.popleft()
        async with self._lock:
            entry = ChangeLogEntry(sequence_number=len(self.entries) + 1, items=list(items))
            self.entries.append(entry)

    async def fetch_page(
        self,
        cursor: str | None,
        page_size_hint: int = UNBOUNDED_PAGE_SIZE,
        start_from_beginning: bool = True,
    ) -> FeedPage:
        self.fetch_calls.append((cursor, page_size_hint))
        if self._fetch_failures:
            raise self._fetch_failures.popleft()

        if cursor is not None:
            start = int(cursor)
        else:
            start = 0 if start_from_beginning else len(self.entries)

        remaining = self.entries[start:]
        if page_size_hint == UNBOUNDED_PAGE_SIZE:
            if self.max_unbounded_page is not None and len(remaining) > self.max_unbounded_page:
                raise StoreError(StoreErrorKind.PAGE_TOO_LARGE, "Reduce page size and try again.")
            page = remaining
        else:
            page = remaining[:page_size_hint]

        return FeedPage(entries=list(page), continuation=str(start + len(page)))


class InMemoryUserStore(UserStore):
    """User documents with integer etags bumped on every write."""

    def __init__(self):
        self._docs: dict[str, dict] = {}
        self._etags: dict[str, int] = {}
        self.replace_calls = 0

    def put(self, user: UserState) -> None:
        """Seed or overwrite a user directly, bumping its etag."""
        self._docs[user.id] = user.to_dict()
        self._etags[user.id] = self._etags.get(user.id, 0) + 1

    def block(self, user_id: str) -> None:
        user = self._load(user_id) or UserState.new(user_id)
        user.is_blocked = True
        self.put(user)

    def _load(self, user_id: str) -> UserState | None:
        doc = self._docs.get(user_id)
        if doc is None:
            return None
        return UserState.from_dict({**doc, "_etag": str(self._etags[user_id])})

    async def get_or_create(self, user_id: str) -> UserState:
        user = self._load(user_id)
        if user is None:
            self.put(UserState.new(user_id, datetime.now(UTC)))
            user = self._load(user_id)
        return user

    async def replace(self, user: UserState) -> UserState:
        self.replace_calls += 1
        current = self._etags.get(user.id)
        if current is None or user.etag != str(current):
            raise ConcurrencyConflictError(user.id)
        self.put(user)
        return self._load(user.id)


class InMemoryPushTransport(PushTransport):
    """Records every broadcast instead of sending it."""

    def __init__(self):
        self.messages: list[tuple[str, str]] = []
        self._failures: deque[Exception] = deque()

    def fail_next(self, *errors: Exception) -> None:
        self._failures.extend(errors)

    async def broadcast_all(self, channel: str, payload: str) -> None:
        if self._failures:
            raise self._failures.popleft()
        self.messages.append((channel, payload))


class InMemoryBlobStore(BlobStore):
    def __init__(self):
        self.blobs: dict[tuple[str, str], bytes] = {}

    async def read_blob(self, container: str, name: str) -> bytes:
        try:
            return self.blobs[(container, name)]
        except KeyError:
            raise BlobNotFoundError(container, name) from None

    async def write_blob(self, container: str, name: str, data: bytes) -> None:
        self.blobs[(container, name)] = bytes(data)


class MemoryCursorStore(CursorStore):
    def __init__(self, token: str | None = None):
        self.token = token
        self.saved: list[str | None] = []

    async def load(self) -> str | None:
        return self.token

    async def save(self, token: str | None) -> None:
        self.token = token
        self.saved.append(token)
