"""
Board viewer client.

Keeps a local replica of the board: downloads the packed snapshot, applies
live change batches from the push channel, and re-downloads the snapshot
periodically. Updates received since the previous snapshot are buffered
and replayed on top of each new snapshot, because the snapshot may lag
the live feed.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Iterable
from typing import Any

import aiohttp

from .board import DEFAULT_BOARD_SIZE, Board
from .config import ServiceEndpoints
from .exceptions import OutOfBoundsError, ServiceUnreachableError, ValidationError
from .feed import DEFAULT_CHANNEL, decode_entries
from .models import ChangeLogEntry

logger = logging.getLogger(__name__)

SEQUENCE_HEADER = "x-board-sequence"
DEFAULT_REFRESH_INTERVAL = 30.0
# Received entries kept for replay after a snapshot refresh
DEFAULT_MAX_BUFFERED = 10_000


class BoardReplica:
    """Local copy of the board with last-write-wins pixel updates.

    Each pixel remembers the sequence number of the entry that last set
    it; an entry older than that is ignored for the pixel, so duplicates
    and out-of-order deliveries are harmless.

    At most ``max_buffered`` received entries are kept for replay; the
    lowest sequence numbers go first.
    """

    def __init__(
        self,
        width: int = DEFAULT_BOARD_SIZE,
        height: int = DEFAULT_BOARD_SIZE,
        max_buffered: int = DEFAULT_MAX_BUFFERED,
    ):
        self.width = width
        self.height = height
        self.max_buffered = max_buffered
        self.board = Board.blank(width, height)
        self.snapshot_sequence: int | None = None
        self.pixels_skipped = 0
        self._received: dict[int, ChangeLogEntry] = {}
        self._pixel_sequence: dict[tuple[int, int], int] = {}

    @property
    def buffered(self) -> int:
        """Number of received entries kept for replay."""
        return len(self._received)

    def load_snapshot(self, blob: bytes, sequence: int | None = None) -> None:
        """Replace the replica with a downloaded snapshot.

        Raises:
            MalformedBoardError: If the blob does not match the board size
        """
        self.board = Board(bytearray(blob), self.width, self.height)
        self.snapshot_sequence = sequence
        self._pixel_sequence.clear()

    def apply(self, entries: Iterable[ChangeLogEntry]) -> int:
        """Apply live entries; returns the number of pixels written."""
        written = 0
        for entry in sorted(entries, key=lambda e: e.sequence_number):
            self._received[entry.sequence_number] = entry
            written += self._apply_entry(entry)

        overflow = len(self._received) - self.max_buffered
        if overflow > 0:
            for seq in sorted(self._received)[:overflow]:
                del self._received[seq]
        return written

    def _apply_entry(self, entry: ChangeLogEntry) -> int:
        written = 0
        for pixel in entry.items:
            key = (pixel.x, pixel.y)
            if self._pixel_sequence.get(key, -1) > entry.sequence_number:
                continue
            try:
                self.board.insert_pixel(pixel)
            except OutOfBoundsError as e:
                logger.debug(f"Ignoring update: {e.message}")
                self.pixels_skipped += 1
                continue
            self._pixel_sequence[key] = entry.sequence_number
            written += 1
        return written

    def refresh(self, blob: bytes, sequence: int | None = None) -> int:
        """Load a new snapshot, then replay buffered entries it may not contain.

        Entries with a sequence number at or after ``sequence`` are replayed
        and kept; older ones are already in the snapshot and are dropped.
        With no snapshot sequence every buffered entry is replayed.

        Returns:
            Number of entries replayed
        """
        self.load_snapshot(blob, sequence)
        start = sequence if sequence is not None else 0
        kept = {seq: entry for seq, entry in self._received.items() if seq >= start}
        self._received = kept

        for seq in sorted(kept):
            self._apply_entry(kept[seq])
        logger.debug(f"Replayed {len(kept)} received updates")
        return len(kept)

    def color_at(self, x: int, y: int) -> int:
        return self.board.color_at(x, y)


class CanvasViewer:
    """Follows a canvas service: metadata, then board, then live updates.

    Example:
        >>> viewer = CanvasViewer("http://localhost:7071/api/metadata")
        >>> viewer.on_update = lambda entries: print(len(entries))
        >>> await viewer.start()
        >>> ...
        >>> await viewer.stop()
    """

    def __init__(
        self,
        metadata_url: str,
        replica: BoardReplica | None = None,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
        channel: str = DEFAULT_CHANNEL,
        auto_reconnect: bool = True,
        reconnect_delay: float = 5.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.metadata_url = metadata_url
        self.replica = replica or BoardReplica()
        self.refresh_interval = refresh_interval
        self.channel = channel
        self.auto_reconnect = auto_reconnect
        self.reconnect_delay = reconnect_delay

        self.endpoints: ServiceEndpoints | None = None
        self.messages_received = 0
        self.messages_rejected = 0

        self._session = session
        self._owns_session = session is None
        self._running = False
        self._tasks: list[asyncio.Task[None]] = []

        # Callbacks
        self.on_update: Callable[[list[ChangeLogEntry]], None] | None = None
        self.on_refresh: Callable[[BoardReplica], None] | None = None

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def fetch_metadata(self) -> ServiceEndpoints:
        async with self._client().get(self.metadata_url) as response:
            if response.status != 200:
                raise ServiceUnreachableError(self.metadata_url, RuntimeError(f"HTTP {response.status}"))
            self.endpoints = ServiceEndpoints.from_dict(await response.json())
        return self.endpoints

    async def fetch_board(self) -> tuple[bytes, int | None]:
        """Download the packed snapshot and the sequence it reflects."""
        endpoints = self.endpoints or await self.fetch_metadata()
        async with self._client().get(endpoints.get_board) as response:
            if response.status != 200:
                raise ServiceUnreachableError(endpoints.get_board, RuntimeError(f"HTTP {response.status}"))
            blob = await response.read()
            raw_sequence = response.headers.get(SEQUENCE_HEADER)
        sequence = int(raw_sequence) if raw_sequence and raw_sequence.isdigit() else None
        return blob, sequence

    async def refresh_board(self) -> int:
        blob, sequence = await self.fetch_board()
        replayed = self.replica.refresh(blob, sequence)
        if self.on_refresh:
            self.on_refresh(self.replica)
        return replayed

    def handle_message(self, raw: str) -> list[ChangeLogEntry]:
        """Decode one push message and apply it to the replica.

        Messages for other channels, or that fail to decode, are logged
        and ignored.
        """
        self.messages_received += 1
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse change message: {e.msg}")
            self.messages_rejected += 1
            return []

        if not isinstance(message, dict) or message.get("channel") != self.channel:
            return []

        try:
            entries = decode_entries(message.get("payload") or "[]")
        except ValidationError as e:
            logger.warning(f"Failed to parse change data: {e.message}")
            self.messages_rejected += 1
            return []

        if not entries:
            logger.debug("Change data is empty")
            return []

        self.replica.apply(entries)
        if self.on_update:
            self.on_update(entries)
        return entries

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._connection_loop(), name="viewer-connection"),
            asyncio.create_task(self._refresh_loop(), name="viewer-refresh"),
        ]
        logger.info(f"Viewer started: {self.metadata_url}")

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        logger.info("Viewer stopped")

    async def _refresh_loop(self) -> None:
        while self._running:
            try:
                await self.refresh_board()
            except (aiohttp.ClientError, ServiceUnreachableError, ValidationError) as e:
                logger.warning(f"Board refresh failed: {e}")
            await asyncio.sleep(self.refresh_interval)

    async def _connection_loop(self) -> None:
        while self._running:
            try:
                await self._websocket_loop()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Change channel connection error: {e}")
                if not (self.auto_reconnect and self._running):
                    raise

            if self.auto_reconnect and self._running:
                logger.info(f"Reconnecting in {self.reconnect_delay}s...")
                await asyncio.sleep(self.reconnect_delay)
            else:
                break

    async def _websocket_loop(self) -> None:
        endpoints = self.endpoints or await self.fetch_metadata()
        async with self._client().ws_connect(endpoints.websocket) as ws:
            logger.info(f"Connected to change channel {endpoints.websocket}")
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self.handle_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    raise ServiceUnreachableError(endpoints.websocket, ws.exception())

    def stats(self) -> dict[str, Any]:
        return {
            "messages_received": self.messages_received,
            "messages_rejected": self.messages_rejected,
            "buffered": self.replica.buffered,
            "snapshot_sequence": self.replica.snapshot_sequence,
            "pixels_skipped": self.replica.pixels_skipped,
        }
