"""
Command line entry point.

Usage:
    shared-canvas serve --port 7071
    shared-canvas serve --memory --compact-interval 10
    shared-canvas compact --loop 60
    shared-canvas reset-board --random --seed 7
    shared-canvas reset-board --image shirt.png --x-offset 400 --y-offset 300
    shared-canvas watch --metadata-url http://localhost:7071/api/metadata

Without ``--memory`` the change log and users live in Cosmos DB; set
CANVAS_COSMOS_ENDPOINT (and CANVAS_COSMOS_KEY for key auth). The board
snapshot and cursors live under CANVAS_BLOB_ROOT.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from collections.abc import AsyncIterator
from pathlib import Path

from aiohttp import web

from .board import Compactor, FillMode, ImageFill, RandomFill, SolidFill
from .config import CanvasConfig, ReaderConfig, ServiceEndpoints
from .coordinator import WriteCoordinator
from .exceptions import CanvasError
from .feed import Broadcaster, ChangeLogReader
from .logging_utils import LOG_FORMATS, configure_logging, get_canvas_logger
from .protocol import BlobCursorStore, BlobStore, OrderedLogClient, UserStore
from .server import WebSocketHub, create_app
from .stores import InMemoryBlobStore, InMemoryChangeLog, InMemoryUserStore, LocalBlobStore
from .viewer import BoardReplica, CanvasViewer

logger = get_canvas_logger("cli")


@contextlib.asynccontextmanager
async def open_backend(use_memory: bool) -> AsyncIterator[tuple[OrderedLogClient, UserStore]]:
    """Yield the change log and user store for the selected backend."""
    if use_memory:
        logger.warning("Using in-memory change log and users; nothing is persisted")
        yield InMemoryChangeLog(), InMemoryUserStore()
        return

    from .cosmos import CosmosChangeLog, CosmosClientWrapper, CosmosConfig, CosmosUserStore

    async with CosmosClientWrapper(CosmosConfig.from_env()) as client:
        yield CosmosChangeLog(client), CosmosUserStore(client)


def cursor_stores(
    canvas: CanvasConfig, blobs: BlobStore, use_memory: bool
) -> tuple[BlobCursorStore, BlobCursorStore]:
    """Reader and compactor cursors, in that order.

    An in-memory change log starts empty on every run, so its cursors are
    kept in memory too; a cursor left on disk by an earlier run would point
    past the entries of the new log.
    """
    home = InMemoryBlobStore() if use_memory else blobs
    return (
        BlobCursorStore(home, canvas.board_container, canvas.reader_cursor_blob_name),
        BlobCursorStore(home, canvas.board_container, canvas.cursor_blob_name),
    )


async def compaction_loop(compactor: Compactor, interval: float) -> None:
    """Compact forever, logging failures and trying again after ``interval``."""
    while True:
        try:
            report = await compactor.compact()
            logger.debug("Compaction pass finished", extra=report.to_dict())
        except CanvasError as e:
            logger.error(f"Compaction failed: {e.message}", extra={"details": e.details})
        await asyncio.sleep(interval)


async def _wait_for_shutdown() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    await stop.wait()


async def cmd_serve(args: argparse.Namespace) -> int:
    canvas = CanvasConfig.from_env(args.config)
    reader_config = ReaderConfig.from_env(args.config)
    endpoints = ServiceEndpoints.from_env(throttle_rate=canvas.throttle_seconds, config_path=args.config)
    blobs = LocalBlobStore(canvas.blob_root)
    reader_cursor, compactor_cursor = cursor_stores(canvas, blobs, args.memory)

    async with open_backend(args.memory) as (log, users):
        hub = WebSocketHub()
        reader = ChangeLogReader(log, Broadcaster(hub, reader_config.channel), reader_config, reader_cursor)
        compactor = Compactor(log, blobs, canvas, cursor_store=compactor_cursor)
        app = create_app(
            WriteCoordinator(users, log, canvas),
            compactor,
            endpoints,
            hub=hub,
            reader=reader,
            allowed_origins=tuple(args.origins),
        )

        if args.compact_interval > 0:

            async def background_compaction(app: web.Application) -> AsyncIterator[None]:
                task = asyncio.create_task(compaction_loop(compactor, args.compact_interval))
                yield
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

            app.cleanup_ctx.append(background_compaction)

        runner = web.AppRunner(app)
        await runner.setup()
        try:
            await web.TCPSite(runner, args.host, args.port).start()
            logger.info(f"Serving on http://{args.host}:{args.port}")
            await _wait_for_shutdown()
        finally:
            await runner.cleanup()
    return 0


async def cmd_compact(args: argparse.Namespace) -> int:
    canvas = CanvasConfig.from_env(args.config)
    async with open_backend(args.memory) as (log, _users):
        blobs = LocalBlobStore(canvas.blob_root)
        _, compactor_cursor = cursor_stores(canvas, blobs, args.memory)
        compactor = Compactor(log, blobs, canvas, cursor_store=compactor_cursor)
        if args.loop:
            await compaction_loop(compactor, args.loop)
            return 0
        report = await compactor.compact()
    print(json.dumps(report.to_dict(), indent=2))
    return 0


def fill_from_args(args: argparse.Namespace) -> FillMode:
    if args.image:
        return ImageFill(
            image=args.image,
            color=args.image_color,
            background=args.background,
            x_offset=args.x_offset,
            y_offset=args.y_offset,
        )
    if args.random:
        return RandomFill(seed=args.seed)
    return SolidFill(color=args.color)


async def cmd_reset_board(args: argparse.Namespace) -> int:
    canvas = CanvasConfig.from_env(args.config)
    fill = fill_from_args(args)
    async with open_backend(args.memory) as (log, _users):
        blobs = LocalBlobStore(canvas.blob_root)
        _, compactor_cursor = cursor_stores(canvas, blobs, args.memory)
        compactor = Compactor(log, blobs, canvas, cursor_store=compactor_cursor)
        await compactor.reset(fill)
    print(f"Board {canvas.board_container}/{canvas.board_name} reset ({type(fill).__name__})")
    return 0


async def cmd_watch(args: argparse.Namespace) -> int:
    canvas = CanvasConfig.from_env(args.config)
    viewer = CanvasViewer(
        args.metadata_url,
        BoardReplica(canvas.width, canvas.height),
        refresh_interval=args.refresh,
    )

    def report(entries) -> None:
        pixels = sum(len(entry.items) for entry in entries)
        print(f"seq {entries[-1].sequence_number}: {pixels} pixel(s)")

    viewer.on_update = report
    await viewer.start()
    try:
        await _wait_for_shutdown()
    finally:
        await viewer.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shared-canvas",
        description="Shared pixel canvas service and tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", type=Path, help="YAML settings file")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument(
        "--log-format", default="json", choices=LOG_FORMATS, help="json for collectors, text for a terminal"
    )
    parser.add_argument("--memory", action="store_true", help="Use in-memory change log and users")

    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP/WebSocket service")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=7071)
    serve.add_argument("--origins", nargs="*", default=["*"], help="Origins allowed by CORS")
    serve.add_argument(
        "--compact-interval", type=float, default=0, help="Also compact every N seconds (0 = off)"
    )
    serve.set_defaults(func=cmd_serve)

    compact = sub.add_parser("compact", help="Fold the change log into the board snapshot")
    compact.add_argument("--loop", type=float, metavar="SECONDS", help="Keep compacting at this interval")
    compact.set_defaults(func=cmd_compact)

    reset = sub.add_parser("reset-board", help="Replace the board snapshot")
    mode = reset.add_mutually_exclusive_group()
    mode.add_argument("--random", action="store_true", help="Random colors")
    mode.add_argument("--color", type=int, default=0, help="Solid color index (default 0)")
    mode.add_argument("--image", type=Path, help="Seed from an image's pure-red pixels")
    reset.add_argument("--seed", type=int, help="Random seed")
    reset.add_argument("--image-color", type=int, default=5)
    reset.add_argument("--background", type=int, default=3)
    reset.add_argument("--x-offset", type=int, default=0)
    reset.add_argument("--y-offset", type=int, default=0)
    reset.set_defaults(func=cmd_reset_board)

    watch = sub.add_parser("watch", help="Follow live changes from a running service")
    watch.add_argument("--metadata-url", default="http://localhost:7071/api/metadata")
    watch.add_argument("--refresh", type=float, default=30.0, help="Board refresh interval (seconds)")
    watch.set_defaults(func=cmd_watch)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(getattr(logging, args.log_level), args.log_format)

    try:
        return asyncio.run(args.func(args))
    except CanvasError as e:
        logger.error(e.message, extra={"details": e.details})
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
