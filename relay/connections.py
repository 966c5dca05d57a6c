"""
Server-side connection handles.

Handlers never await socket writes: send() enqueues onto a per-connection
outbox drained by a writer task, so registry and broadcaster work stays
synchronous within the handling of one event.
"""

import asyncio
import logging
import uuid
from typing import Optional, Protocol

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

# WebSocket close codes
CLOSE_NORMAL = 1000
CLOSE_POLICY_VIOLATION = 1008
CLOSE_TRY_AGAIN_LATER = 1013


class ConnectionClosed(Exception):
    """Raised when sending on a connection that is closing or gone."""


class Connection(Protocol):
    id: str

    @property
    def open(self) -> bool:
        ...

    def send(self, data: str) -> None:
        ...

    def close(self, code: int = CLOSE_NORMAL) -> None:
        ...


def new_connection_id() -> str:
    return uuid.uuid4().hex[:12]


class WebSocketConnection:
    """A FastAPI WebSocket with a queued outbound side."""

    def __init__(self, websocket: WebSocket, connection_id: Optional[str] = None, max_outbox: int = 256):
        self.id = connection_id or new_connection_id()
        self._websocket = websocket
        self._outbox: "asyncio.Queue[Optional[str]]" = asyncio.Queue(maxsize=max_outbox)
        self._closing = False
        self._close_code = CLOSE_NORMAL
        self._peer_gone = False

    @property
    def open(self) -> bool:
        return not self._closing

    def send(self, data: str) -> None:
        if self._closing:
            raise ConnectionClosed(f"connection {self.id} is closed")
        try:
            self._outbox.put_nowait(data)
        except asyncio.QueueFull:
            logger.warning(f"Outbox full on connection {self.id} ({self._outbox.maxsize} frames), closing")
            while not self._outbox.empty():
                self._outbox.get_nowait()
            self.close(CLOSE_TRY_AGAIN_LATER)
            raise ConnectionClosed(f"connection {self.id} fell behind")

    def _wake_writer(self) -> None:
        try:
            self._outbox.put_nowait(None)
        except asyncio.QueueFull:
            # Writer stops once the queue drains
            pass

    def close(self, code: int = CLOSE_NORMAL) -> None:
        """Flush queued frames, then close the socket with `code`."""
        if self._closing:
            return
        self._closing = True
        self._close_code = code
        self._wake_writer()

    def detach(self) -> None:
        """Stop the writer after the peer disconnected; nothing more is sent."""
        self._peer_gone = True
        if not self._closing:
            self._closing = True
            self._wake_writer()

    async def run_writer(self) -> None:
        while True:
            data = await self._outbox.get()
            if data is None or self._peer_gone:
                break
            try:
                await self._websocket.send_text(data)
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                logger.info(f"Send failed on connection {self.id}, dropping outbox: {e}")
                self._closing = True
                self._peer_gone = True
                break
            if self._closing and self._outbox.empty():
                break

        if not self._peer_gone:
            try:
                await self._websocket.close(code=self._close_code)
            except (RuntimeError, OSError) as e:
                logger.debug(f"Close on connection {self.id} after peer left: {e}")
