"""
Board snapshot compaction.

Folds the change log into the packed board blob that clients download.
The compactor keeps its own cursor (separate from the live reader's) in
a small JSON blob next to the snapshot, together with the sequence number
of the last entry it applied.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from ..config import CanvasConfig
from ..exceptions import BlobNotFoundError, OutOfBoundsError
from ..models import Pixel
from ..protocol import UNBOUNDED_PAGE_SIZE, BlobCursorStore, BlobStore, OrderedLogClient
from ..resilience import RetryConfig, retry_with_backoff
from .codec import Board, FillMode, SolidFill, generate_board

logger = logging.getLogger(__name__)

LAST_SEQUENCE_KEY = "lastSequence"
CONTINUATION_KEY = "continuation"


@dataclass
class CompactionReport:
    """Summary of one compaction pass."""

    entries: int = 0
    pixels_applied: int = 0
    pixels_rejected: int = 0
    continuation: str | None = None
    last_sequence: int | None = None
    board_written: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries": self.entries,
            "pixels_applied": self.pixels_applied,
            "pixels_rejected": self.pixels_rejected,
            "last_sequence": self.last_sequence,
            "board_written": self.board_written,
        }


class Compactor:
    """Applies change log entries to the board snapshot.

    One pass at a time per instance; ``compact`` and ``reset`` share a lock
    because both rewrite the same blob.
    """

    def __init__(
        self,
        log: OrderedLogClient,
        blobs: BlobStore,
        config: CanvasConfig | None = None,
        cursor_store: BlobCursorStore | None = None,
        retry_config: RetryConfig | None = None,
        page_size_hint: int = UNBOUNDED_PAGE_SIZE,
    ):
        self.log = log
        self.blobs = blobs
        self.config = config or CanvasConfig()
        self.cursor_store = cursor_store or BlobCursorStore(
            blobs, self.config.board_container, self.config.cursor_blob_name
        )
        self.retry_config = retry_config or RetryConfig()
        self.page_size_hint = page_size_hint
        self._lock = asyncio.Lock()

    async def load_board(self) -> Board:
        """Read the current snapshot.

        Raises:
            BlobNotFoundError: If no snapshot has been written yet
            MalformedBoardError: If the blob has the wrong length
        """
        data = await self.blobs.read_blob(self.config.board_container, self.config.board_name)
        return Board(bytearray(data), self.config.width, self.config.height)

    async def _write_board(self, board: Board) -> None:
        await self.blobs.write_blob(
            self.config.board_container, self.config.board_name, board.to_bytes()
        )

    async def compact(self) -> CompactionReport:
        """Fold every entry after the saved cursor into the snapshot.

        A missing snapshot starts from a blank board. The blob is written
        before the cursor, so a crash in between re-applies the same entries
        on the next pass, which is harmless for last-write-wins pixels.

        Raises:
            MalformedBoardError: If the stored snapshot is corrupt
            StoreError: If the log could not be read after retries
        """
        async with self._lock:
            created = False
            try:
                board = await self.load_board()
            except BlobNotFoundError:
                logger.info(
                    f"No snapshot at {self.config.board_container}/{self.config.board_name}, starting blank"
                )
                board = generate_board(SolidFill(), self.config.width, self.config.height)
                created = True

            state = await self.cursor_store.load_state()
            cursor = state.get(CONTINUATION_KEY)
            report = CompactionReport(continuation=cursor, last_sequence=state.get(LAST_SEQUENCE_KEY))

            while True:
                page = await retry_with_backoff(
                    self.log.fetch_page,
                    cursor,
                    self.page_size_hint,
                    True,
                    config=self.retry_config,
                    context_msg="compaction",
                )
                if page.continuation is not None:
                    cursor = page.continuation
                if not page.entries:
                    break
                for entry in sorted(page.entries, key=lambda e: e.sequence_number):
                    self._fold(board, entry.items, report)
                    report.entries += 1
                    if report.last_sequence is None or entry.sequence_number > report.last_sequence:
                        report.last_sequence = entry.sequence_number

            report.continuation = cursor
            if report.entries == 0 and not created:
                logger.debug("Compaction found no new entries")
                return report

            await self._write_board(board)
            report.board_written = True
            await self.cursor_store.save_state(
                {CONTINUATION_KEY: cursor, LAST_SEQUENCE_KEY: report.last_sequence}
            )

            logger.info(
                f"Compacted {report.entries} entries into board snapshot",
                extra=report.to_dict(),
            )
            return report

    def _fold(self, board: Board, pixels: Sequence[Pixel], report: CompactionReport) -> None:
        for pixel in pixels:
            try:
                board.insert_pixel(pixel)
            except OutOfBoundsError as e:
                logger.warning(f"Skipping pixel: {e.message}")
                report.pixels_rejected += 1
            else:
                report.pixels_applied += 1

    async def reset(self, fill: FillMode | None = None) -> Board:
        """Replace the snapshot with a freshly generated board.

        The compaction cursor is left where it is, so only writes made
        after this point land on the new board.
        """
        async with self._lock:
            board = generate_board(fill, self.config.width, self.config.height)
            await self._write_board(board)
            logger.info(f"Board reset with {type(fill or SolidFill()).__name__}")
            return board

    async def snapshot_sequence(self) -> int | None:
        """Sequence number of the last entry folded into the snapshot."""
        state = await self.cursor_store.load_state()
        return state.get(LAST_SEQUENCE_KEY)
