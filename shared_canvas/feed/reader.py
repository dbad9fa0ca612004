"""
Continuous reader over the ordered change log.

Polls the log from a continuation cursor and hands every non-empty page
to the Broadcaster. Pages are drained eagerly while entries keep coming;
an empty page puts the reader to sleep for ``poll_delay``.

Delivery is at-least-once: a page is published before its cursor is
saved, so a crash in between replays that page after restart. Viewers
apply updates last-write-wins per pixel, which makes replays harmless.

Error handling per failed fetch (the cursor is never advanced):

- NOT_FOUND (collection removed) or any FatalStoreError: stop the reader
- GONE (partition moved): retry after the store's retry-after, if any
- TOO_MANY_REQUESTS / SERVICE_UNAVAILABLE: retry after retry-after or poll_delay
- PAGE_TOO_LARGE: halve the page-size hint and retry at once; at 1 it is fatal
- anything else: retry after retry-after or poll_delay
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..config import ReaderConfig
from ..exceptions import FatalStoreError, StoreError, StoreErrorKind
from ..protocol import UNBOUNDED_PAGE_SIZE, CursorStore, OrderedLogClient
from .broadcaster import Broadcaster

logger = logging.getLogger(__name__)

OVERLOAD_KINDS = frozenset({StoreErrorKind.TOO_MANY_REQUESTS, StoreErrorKind.SERVICE_UNAVAILABLE})


class ReaderState(Enum):
    """Lifecycle of the reader loop."""

    STOPPED = "stopped"
    RUNNING = "running"


@dataclass(frozen=True)
class PollOutcome:
    """Result of one loop iteration.

    Attributes:
        delivered: Entries handed to the broadcaster
        delay: Seconds to wait before the next iteration
        fatal: The reader must stop
    """

    delivered: int
    delay: float
    fatal: bool = False


class ChangeLogReader:
    """Drains the change log into the broadcaster.

    Exactly one reader may own a cursor. ``start`` is idempotent;
    ``stop`` is cooperative and lets an in-flight fetch finish.

    Example:
        >>> reader = ChangeLogReader(log, Broadcaster(hub), ReaderConfig(poll_delay=1))
        >>> await reader.start()
        >>> ...
        >>> reader.stop()
        >>> await reader.wait_stopped()
    """

    def __init__(
        self,
        log: OrderedLogClient,
        broadcaster: Broadcaster,
        config: ReaderConfig | None = None,
        cursor_store: CursorStore | None = None,
    ):
        self.log = log
        self.broadcaster = broadcaster
        self.config = config or ReaderConfig()
        self.cursor_store = cursor_store

        self.continuation: str | None = None
        self.page_size_hint = UNBOUNDED_PAGE_SIZE
        self.last_error: Exception | None = None
        self.entries_delivered = 0

        self._state = ReaderState.STOPPED
        self._stop_requested = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ReaderState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == ReaderState.RUNNING

    async def start(self) -> None:
        """Start the background loop; a no-op if it is already running.

        Resumes from the cursor store when one is configured and holds a cursor.
        """
        if self._state == ReaderState.RUNNING:
            return

        self._state = ReaderState.RUNNING
        self._stop_requested.clear()
        self.last_error = None

        if self.cursor_store is not None and self.continuation is None:
            self.continuation = await self.cursor_store.load()
            if self.continuation is not None:
                logger.info("Resuming change log reader from saved cursor")

        self._task = asyncio.create_task(self._run(), name="change-log-reader")

    def stop(self) -> None:
        """Ask the loop to stop at its next iteration boundary."""
        self._stop_requested.set()

    async def wait_stopped(self) -> None:
        """Wait for the loop task to finish."""
        if self._task is not None:
            await self._task
            self._task = None

    async def _run(self) -> None:
        logger.info(
            "Change log reader started",
            extra={"poll_delay": self.config.poll_delay, "has_cursor": self.continuation is not None},
        )
        try:
            while not self._stop_requested.is_set():
                outcome = await self.poll_once()
                if outcome.fatal:
                    break
                if outcome.delay > 0:
                    await self._sleep(outcome.delay)
        finally:
            self._state = ReaderState.STOPPED
            logger.info("Change log reader stopped", extra={"delivered": self.entries_delivered})

    async def _sleep(self, delay: float) -> None:
        """Bounded wait that ends early when stop is requested."""
        try:
            await asyncio.wait_for(self._stop_requested.wait(), timeout=delay)
        except TimeoutError:
            pass

    async def poll_once(self) -> PollOutcome:
        """Fetch one page, deliver it and advance the cursor.

        Never raises for store or delivery failures; the outcome says how
        long to wait before retrying and whether the reader must stop.
        """
        try:
            page = await self.log.fetch_page(
                self.continuation,
                self.page_size_hint,
                self.config.start_from_beginning,
            )
        except StoreError as e:
            return self._handle_store_error(e)
        except Exception as e:
            logger.warning(f"Unexpected error reading change log, will retry: {e}", exc_info=True)
            self.last_error = e
            return PollOutcome(0, self.config.poll_delay)

        logger.debug(f"Detected {len(page.entries)} documents.")

        if page.entries:
            try:
                await self.broadcaster.publish(page.entries)
            except Exception as e:
                # Cursor stays put so the same page is published again
                logger.warning(f"Failed to publish change batch, will retry: {e}", exc_info=True)
                self.last_error = e
                return PollOutcome(0, self.config.poll_delay)

        await self._advance(page.continuation)

        if page.entries:
            self.entries_delivered += len(page.entries)
            return PollOutcome(len(page.entries), 0.0)
        return PollOutcome(0, self.config.poll_delay)

    async def _advance(self, token: str | None) -> None:
        if token is None or token == self.continuation:
            return
        self.continuation = token
        if self.cursor_store is None:
            return
        try:
            await self.cursor_store.save(token)
        except Exception as e:
            # Not fatal: a restart replays from the last saved cursor
            logger.warning(f"Could not persist change log cursor: {e}", exc_info=True)

    def _fatal(self, error: Exception, message: str) -> PollOutcome:
        logger.error(message, exc_info=error)
        self.last_error = error
        self._stop_requested.set()
        return PollOutcome(0, 0.0, fatal=True)

    def _handle_store_error(self, error: StoreError) -> PollOutcome:
        self.last_error = error
        kind = error.kind
        poll_delay = self.config.poll_delay

        if kind == StoreErrorKind.NOT_FOUND or isinstance(error, FatalStoreError):
            return self._fatal(error, f"Change log is gone, stopping reader: {error}")

        if kind == StoreErrorKind.GONE:
            logger.warning(f"Partition moved, retrying same cursor: {error}")
            return PollOutcome(0, error.retry_after or 0.0)

        if kind in OVERLOAD_KINDS:
            logger.warning(f"Retriable exception: {error}")
            return PollOutcome(0, error.retry_after or poll_delay)

        if kind == StoreErrorKind.PAGE_TOO_LARGE:
            if self.page_size_hint == UNBOUNDED_PAGE_SIZE:
                current = self.config.default_max_item_count
            elif self.page_size_hint <= 1:
                return self._fatal(
                    error,
                    f"Cannot reduce page size further as it's already at {self.page_size_hint}.",
                )
            else:
                current = self.page_size_hint
            self.page_size_hint = max(1, current // 2)
            logger.info(f"Reducing page size hint, new value: {self.page_size_hint}.")
            return PollOutcome(0, 0.0)

        logger.warning(f"Error reading change log, will retry: {error}")
        return PollOutcome(0, error.retry_after or poll_delay)

    def stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "page_size_hint": self.page_size_hint,
            "entries_delivered": self.entries_delivered,
            "messages_sent": self.broadcaster.messages_sent,
            "last_error": str(self.last_error) if self.last_error else None,
        }
