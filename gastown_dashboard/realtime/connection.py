"""WebSocket-backed subscriber connections."""

from __future__ import annotations

import asyncio
import logging
import uuid

from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

logger = logging.getLogger(__name__)

# Frames queued for a client that stopped reading before it is dropped.
MAX_PENDING_FRAMES = 10_000

_CLOSE = object()


class WebSocketConnection:
    """Connection with an outbound queue drained by a single writer task.

    ``send_text`` only enqueues, so producers (the hub, peek streams) never
    wait on a slow client and frames reach each client in the order they
    were queued. Liveness is tracked explicitly: the endpoint calls
    ``mark_closed`` on the transport's close/error notification, and a
    failed write marks it closed as well.
    """

    def __init__(self, websocket: WebSocket, max_pending: int = MAX_PENDING_FRAMES) -> None:
        self._websocket = websocket
        self._id = uuid.uuid4().hex[:8]
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=max_pending)
        self._closed = False

    @property
    def id(self) -> str:
        return self._id

    @property
    def is_open(self) -> bool:
        return not self._closed and self._websocket.application_state == WebSocketState.CONNECTED

    def send_text(self, data: str) -> bool:
        if not self.is_open:
            return False
        try:
            self._queue.put_nowait(data)
        except asyncio.QueueFull:
            logger.warning("Connection %s is not keeping up; dropping it", self._id)
            self.mark_closed()
            return False
        return True

    def mark_closed(self) -> None:
        """Record that the transport is gone and stop the writer (idempotent)."""
        if self._closed:
            return
        self._closed = True
        # Drop pending frames so the sentinel always fits.
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSE)

    async def run_writer(self) -> None:
        """Deliver queued frames until ``mark_closed`` is called or a write fails."""
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                return
            try:
                await self._websocket.send_text(item)  # type: ignore[arg-type]
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                logger.debug("Write to connection %s failed: %s", self._id, exc)
                self.mark_closed()
                return

    async def receive_until_closed(self) -> None:
        """Consume inbound frames until the client disconnects."""
        try:
            while True:
                message = await self._websocket.receive()
                if message["type"] == "websocket.disconnect":
                    return
        except (WebSocketDisconnect, RuntimeError):
            return
