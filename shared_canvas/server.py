"""
HTTP and WebSocket surface of the canvas.

Routes:
    GET  /api/metadata      service endpoints document
    GET  /api/user          the caller's user record
    POST /api/update-pixel  submit a batch of pixels
    GET  /api/board         packed board snapshot (x-board-sequence header)
    GET  /hubs/changes      WebSocket push of change batches

Caller identity comes from gateway headers (x-ms-client-principal-id and
x-ms-client-principal-idp) and is trusted as is.

Example:
    >>> app = create_app(coordinator, compactor, endpoints, hub=hub, reader=reader)
    >>> web.run_app(app, port=7071)
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from aiohttp import WSMsgType, web

from .board import Compactor
from .config import ServiceEndpoints
from .coordinator import WriteCoordinator, raise_for_rejection
from .exceptions import (
    AuthenticationError,
    BatchTooLargeError,
    BlobNotFoundError,
    CanvasError,
    RateLimitedError,
    ValidationError,
)
from .feed import ChangeLogReader
from .logging_utils import CanvasLoggerAdapter, get_canvas_logger
from .models import Pixel
from .protocol import PushTransport

logger = get_canvas_logger("server")

PRINCIPAL_ID_HEADER = "x-ms-client-principal-id"
PRINCIPAL_IDP_HEADER = "x-ms-client-principal-idp"
SEQUENCE_HEADER = "x-board-sequence"
DEFAULT_QUEUE_SIZE = 256

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


# =============================================================================
# Push hub
# =============================================================================


@dataclass
class ConnectedViewer:
    """A connected WebSocket viewer."""

    client_id: str
    connected_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    dropped: int = 0

    # Outgoing messages; bounded so one stalled socket cannot grow without limit
    message_queue: asyncio.Queue[str] = field(
        default_factory=lambda: asyncio.Queue(maxsize=DEFAULT_QUEUE_SIZE)
    )


class WebSocketHub(PushTransport):
    """Fans broadcasts out to every connected WebSocket.

    Every message is ``{"channel": <channel>, "payload": <json string>}``.
    A viewer whose queue is full loses its oldest pending message; it
    recovers on its next board refresh.
    """

    def __init__(self) -> None:
        self._clients: dict[str, ConnectedViewer] = {}
        self._sockets: dict[str, web.WebSocketResponse] = {}
        self._lock = asyncio.Lock()

    async def register_client(self, client_id: str, ws: web.WebSocketResponse | None = None) -> ConnectedViewer:
        async with self._lock:
            viewer = ConnectedViewer(client_id=client_id)
            self._clients[client_id] = viewer
            if ws is not None:
                self._sockets[client_id] = ws
            logger.info(f"Viewer connected: {client_id}", extra={"viewers": len(self._clients)})
            return viewer

    async def unregister_client(self, client_id: str) -> None:
        async with self._lock:
            if self._clients.pop(client_id, None) is not None:
                self._sockets.pop(client_id, None)
                logger.info(f"Viewer disconnected: {client_id}", extra={"viewers": len(self._clients)})

    async def broadcast_all(self, channel: str, payload: str) -> None:
        message = json.dumps({"channel": channel, "payload": payload})
        async with self._lock:
            for viewer in self._clients.values():
                if viewer.message_queue.full():
                    viewer.message_queue.get_nowait()
                    viewer.dropped += 1
                viewer.message_queue.put_nowait(message)

    def get_connected_clients(self) -> list[dict[str, Any]]:
        return [
            {"client_id": v.client_id, "connected_at": v.connected_at, "dropped": v.dropped}
            for v in self._clients.values()
        ]

    async def handle(self, request: web.Request) -> web.WebSocketResponse:
        """aiohttp handler for one viewer connection."""
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)

        client_id = str(uuid.uuid4())
        viewer = await self.register_client(client_id, ws)

        async def send_loop() -> None:
            while True:
                message = await viewer.message_queue.get()
                await ws.send_str(message)

        sender = asyncio.create_task(send_loop(), name=f"viewer-{client_id}")
        try:
            async for msg in ws:
                # Viewers only listen; anything they send is ignored
                if msg.type == WSMsgType.ERROR:
                    logger.warning(f"Viewer {client_id} connection error: {ws.exception()}")
        finally:
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            except ConnectionError as e:
                logger.debug(f"Viewer {client_id} went away mid-send: {e}")
            await self.unregister_client(client_id)
        return ws

    async def close_all(self) -> None:
        async with self._lock:
            sockets = list(self._sockets.values())
        for ws in sockets:
            await ws.close(code=1001, message=b"server shutdown")


# =============================================================================
# HTTP handlers
# =============================================================================


def _error_response(status: int, error: CanvasError | Exception, invocation_id: str) -> web.Response:
    message = error.message if isinstance(error, CanvasError) else "Internal server error"
    body: dict[str, Any] = {"error": message, "invocationId": invocation_id}
    if isinstance(error, CanvasError) and status < 500:
        body["details"] = error.details
    return web.json_response(body, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Map canvas errors to HTTP statuses; unexpected errors become 500."""
    invocation_id = str(uuid.uuid4())
    log = CanvasLoggerAdapter(
        logger,
        {"invocation_id": invocation_id, "path": request.path, "user_id": request.headers.get(PRINCIPAL_ID_HEADER)},
    )
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except RateLimitedError as e:
        response = _error_response(429, e, invocation_id)
        if e.retry_at is not None:
            seconds = max(0, int((e.retry_at - datetime.now(UTC)).total_seconds()) + 1)
            response.headers["Retry-After"] = str(seconds)
        return response
    except (ValidationError, BatchTooLargeError) as e:
        return _error_response(400, e, invocation_id)
    except AuthenticationError as e:
        return _error_response(401, e, invocation_id)
    except BlobNotFoundError as e:
        return _error_response(404, e, invocation_id)
    except Exception as e:
        log.error(f"Request failed, reference {invocation_id}: {e}", exc_info=True)
        return _error_response(500, e, invocation_id)


def cors_middleware(allowed_origins: tuple[str, ...] = ("*",)) -> Any:
    """CORS headers for browser clients; applied only when an Origin is sent."""

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        origin = request.headers.get("Origin")
        if request.method == "OPTIONS" and origin:
            response: web.StreamResponse = web.Response(status=204)
        else:
            response = await handler(request)

        if origin and ("*" in allowed_origins or origin in allowed_origins):
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Credentials"] = "true"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            response.headers["Access-Control-Expose-Headers"] = SEQUENCE_HEADER
        return response

    return middleware


def _identity(request: web.Request) -> tuple[str, str]:
    user_id = request.headers.get(PRINCIPAL_ID_HEADER)
    if not user_id:
        raise AuthenticationError(f"{PRINCIPAL_ID_HEADER} header missing", request.path)
    idp = request.headers.get(PRINCIPAL_IDP_HEADER)
    if not idp:
        raise AuthenticationError(f"{PRINCIPAL_IDP_HEADER} header missing", request.path)
    return user_id, idp


def _parse_pixels(body: Any) -> list[Pixel]:
    if not isinstance(body, list):
        raise ValidationError("body", "expected a JSON array of pixels")
    return [Pixel.from_dict(item) for item in body]


class CanvasHandlers:
    """Request handlers bound to the canvas services."""

    def __init__(
        self,
        coordinator: WriteCoordinator,
        compactor: Compactor,
        endpoints: ServiceEndpoints,
    ):
        self.coordinator = coordinator
        self.compactor = compactor
        self.endpoints = endpoints

    async def metadata(self, request: web.Request) -> web.Response:
        return web.json_response(self.endpoints.to_dict())

    async def user(self, request: web.Request) -> web.Response:
        user_id, idp = _identity(request)
        user = await self.coordinator.users.get_or_create(user_id)
        return web.json_response(
            {
                "id": user.id,
                "lastInsert": user.last_insert.isoformat(),
                "isAdmin": self.coordinator.is_admin(idp),
            }
        )

    async def update_pixel(self, request: web.Request) -> web.Response:
        user_id, idp = _identity(request)
        try:
            body = await request.json()
        except json.JSONDecodeError as e:
            raise ValidationError("body", f"invalid JSON: {e.msg}") from e
        except UnicodeDecodeError as e:
            raise ValidationError("body", "not valid UTF-8") from e

        pixels = _parse_pixels(body)
        result = await self.coordinator.submit_batch(user_id, idp, pixels)
        raise_for_rejection(result, user_id, len(pixels))
        return web.json_response(result.to_dict(), status=201)

    async def board(self, request: web.Request) -> web.Response:
        config = self.compactor.config
        data = await self.compactor.blobs.read_blob(config.board_container, config.board_name)
        headers = {"Cache-Control": "no-cache"}
        sequence = await self.compactor.snapshot_sequence()
        if sequence is not None:
            headers[SEQUENCE_HEADER] = str(sequence)
        return web.Response(body=data, content_type="application/octet-stream", headers=headers)


# =============================================================================
# Application
# =============================================================================

HUB_KEY = web.AppKey("hub", WebSocketHub)
READER_KEY = web.AppKey("reader", ChangeLogReader)


async def _start_reader(app: web.Application) -> None:
    reader = app.get(READER_KEY)
    if reader is not None:
        await reader.start()


async def _stop_background(app: web.Application) -> None:
    reader = app.get(READER_KEY)
    if reader is not None:
        reader.stop()
        await reader.wait_stopped()
    await app[HUB_KEY].close_all()


def create_app(
    coordinator: WriteCoordinator,
    compactor: Compactor,
    endpoints: ServiceEndpoints,
    hub: WebSocketHub | None = None,
    reader: ChangeLogReader | None = None,
    allowed_origins: tuple[str, ...] = ("*",),
) -> web.Application:
    """Build the aiohttp application.

    Args:
        coordinator: Admission and append of pixel writes
        compactor: Source of the board snapshot
        endpoints: Metadata document served at /api/metadata
        hub: WebSocket fan-out; the reader's broadcaster should push to it
        reader: Change log reader started with the app and stopped on cleanup
        allowed_origins: Origins granted CORS access ("*" for any)
    """
    app = web.Application(middlewares=[cors_middleware(allowed_origins), error_middleware])
    hub = hub or WebSocketHub()
    app[HUB_KEY] = hub
    if reader is not None:
        app[READER_KEY] = reader

    handlers = CanvasHandlers(coordinator, compactor, endpoints)
    app.router.add_get("/api/metadata", handlers.metadata)
    app.router.add_get("/api/user", handlers.user)
    app.router.add_post("/api/update-pixel", handlers.update_pixel)
    app.router.add_get("/api/board", handlers.board)
    app.router.add_get("/hubs/changes", hub.handle)

    app.on_startup.append(_start_reader)
    app.on_cleanup.append(_stop_background)
    return app
