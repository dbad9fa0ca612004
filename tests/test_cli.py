"""
Tests for the command line entry point and structured logging.
"""

import io
import json
import logging

import pytest

from shared_canvas.board import ImageFill, RandomFill, SolidFill, packed_length
from shared_canvas.cli import build_parser, cursor_stores, fill_from_args, main
from shared_canvas.exceptions import StoreErrorKind
from shared_canvas.feed import Broadcaster, ChangeLogReader
from shared_canvas.logging_utils import (
    CanvasLoggerAdapter,
    ConsoleFormatter,
    StructuredJsonFormatter,
    configure_logging,
)
from shared_canvas.stores import InMemoryChangeLog, LocalBlobStore

from conftest import pixel


@pytest.fixture
def restore_logging():
    package_logger = logging.getLogger("shared_canvas")
    handlers, level = list(package_logger.handlers), package_logger.level
    yield
    package_logger.handlers[:] = handlers
    package_logger.setLevel(level)


class TestParser:
    def test_reset_board_modes(self):
        parser = build_parser()

        assert fill_from_args(parser.parse_args(["reset-board"])) == SolidFill(0)
        assert fill_from_args(parser.parse_args(["reset-board", "--color", "4"])) == SolidFill(4)
        assert fill_from_args(parser.parse_args(["reset-board", "--random", "--seed", "7"])) == RandomFill(7)

        fill = fill_from_args(parser.parse_args(["reset-board", "--image", "shirt.png", "--x-offset", "400"]))
        assert isinstance(fill, ImageFill)
        assert fill.x_offset == 400
        assert (fill.color, fill.background) == (5, 3)

    def test_reset_board_modes_are_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["reset-board", "--random", "--color", "2"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestMain:
    def test_reset_board_writes_snapshot(self, tmp_path, monkeypatch, restore_logging):
        monkeypatch.setenv("CANVAS_BLOB_ROOT", str(tmp_path))
        monkeypatch.setenv("CANVAS_WIDTH", "10")
        monkeypatch.setenv("CANVAS_HEIGHT", "5")

        assert main(["--memory", "reset-board", "--random", "--seed", "1"]) == 0

        assert len((tmp_path / "boards" / "default").read_bytes()) == packed_length(10, 5)

    def test_canvas_errors_exit_with_status_one(self, tmp_path, monkeypatch, restore_logging):
        config = tmp_path / "missing.yaml"
        assert main(["--config", str(config), "--memory", "compact"]) == 1


class TestStructuredLogging:
    def test_extra_fields_in_json(self):
        record = logging.LogRecord("shared_canvas.reader", logging.INFO, __file__, 1, "polled %d", (3,), None)
        record.continuation = "42"
        record.kind = StoreErrorKind.GONE
        record.opaque = object()

        data = json.loads(StructuredJsonFormatter().format(record))

        assert data["message"] == "polled 3"
        assert data["level"] == "INFO"
        assert data["logger"] == "shared_canvas.reader"
        assert data["continuation"] == "42"
        assert data["kind"] == StoreErrorKind.GONE.value
        assert data["opaque"].startswith("<object")

    def test_console_line(self):
        record = logging.LogRecord("shared_canvas.reader", logging.WARNING, __file__, 1, "retrying", (), None)
        record.page_size = 25

        line = ConsoleFormatter().format(record)

        assert "WARNING" in line
        assert "reader: retrying" in line
        assert line.endswith("page_size=25")

    def test_configure_replaces_handler(self, restore_logging):
        stream = io.StringIO()
        configure_logging(logging.INFO, "text")
        logger = configure_logging(logging.INFO, "text", stream=stream)

        logging.getLogger("shared_canvas.cli").info("ready")

        assert len(logger.handlers) == 1
        assert "cli: ready" in stream.getvalue()

    def test_unknown_format(self, restore_logging):
        with pytest.raises(ValueError):
            configure_logging(fmt="xml")

    def test_adapter_adds_context(self, caplog):
        adapter = CanvasLoggerAdapter(
            logging.getLogger("shared_canvas.test"), {"invocation_id": "abc", "user_id": None, "path": "/api/user"}
        )

        with caplog.at_level(logging.INFO, logger="shared_canvas.test"):
            adapter.info("hello", extra={"path": "/api/board"})

        [record] = caplog.records
        assert record.invocation_id == "abc"
        assert record.path == "/api/board"
        assert not hasattr(record, "user_id")


class TestCursorStores:
    @staticmethod
    async def drain(log, cursor, transport, reader_config) -> int:
        reader = ChangeLogReader(log, Broadcaster(transport), reader_config, cursor)
        reader.continuation = await cursor.load()
        delivered = 0
        while (outcome := await reader.poll_once()).delivered:
            delivered += outcome.delivered
        return delivered

    @pytest.mark.asyncio
    async def test_memory_log_restart_reads_new_entries(self, tmp_path, canvas_config, reader_config, transport):
        blobs = LocalBlobStore(tmp_path)

        first_log = InMemoryChangeLog()
        for x in range(5):
            await first_log.append_batch([pixel(x, 0)])
        reader_cursor, _ = cursor_stores(canvas_config, blobs, use_memory=True)
        assert await self.drain(first_log, reader_cursor, transport, reader_config) == 5

        restarted_log = InMemoryChangeLog()
        for x in range(3):
            await restarted_log.append_batch([pixel(x, 1)])
        reader_cursor, compactor_cursor = cursor_stores(canvas_config, blobs, use_memory=True)

        assert await reader_cursor.load() is None
        assert await compactor_cursor.load_state() == {}
        assert await self.drain(restarted_log, reader_cursor, transport, reader_config) == 3
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_durable_backend_keeps_cursor_on_disk(self, tmp_path, canvas_config):
        blobs = LocalBlobStore(tmp_path)
        reader_cursor, _ = cursor_stores(canvas_config, blobs, use_memory=False)
        await reader_cursor.save("5")

        reader_cursor, _ = cursor_stores(canvas_config, blobs, use_memory=False)
        assert await reader_cursor.load() == "5"
