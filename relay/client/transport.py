"""
WebSocket transport for the chat client, built on the `websockets` library.

A transport is single-use: it connects once, pumps frames both ways, and
reports exactly one close. Reconnecting means asking the factory for a new one.
"""

import asyncio
import logging
from typing import Callable, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

logger = logging.getLogger(__name__)

CLOSE_ABNORMAL = 1006


class WebSocketTransport:
    def __init__(
        self,
        url: str,
        on_open: Callable[[], None],
        on_message: Callable[[Union[str, bytes]], None],
        on_close: Callable[[int], None],
        open_timeout: float = 10.0,
    ):
        self.url = url
        self.open_timeout = open_timeout
        self._on_open = on_open
        self._on_message = on_message
        self._on_close = on_close
        self._outbox: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._closing

    def start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._run())

    def send(self, data: str) -> None:
        if not self.connected:
            raise ConnectionError("transport is not connected")
        self._outbox.put_nowait(data)

    def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        if self._ws is None:
            if self._task is not None:
                self._task.cancel()
        else:
            self._outbox.put_nowait(None)

    async def _run(self) -> None:
        code = CLOSE_ABNORMAL
        try:
            async with websockets.connect(self.url, open_timeout=self.open_timeout) as ws:
                self._ws = ws
                if self._closing:
                    return
                self._on_open()
                writer = asyncio.create_task(self._write(ws))
                try:
                    async for raw in ws:
                        self._on_message(raw)
                finally:
                    writer.cancel()
                code = ws.close_code or CLOSE_ABNORMAL
        except ConnectionClosed as e:
            code = e.rcvd.code if e.rcvd is not None else CLOSE_ABNORMAL
            logger.info(f"Connection to {self.url} closed: {e}")
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.warning(f"Failed to connect to {self.url}: {e}")
        except asyncio.CancelledError:
            logger.debug(f"Connect to {self.url} cancelled")
        finally:
            self._ws = None
            self._on_close(code)

    async def _write(self, ws) -> None:
        while True:
            data = await self._outbox.get()
            if data is None:
                await ws.close()
                return
            try:
                await ws.send(data)
            except ConnectionClosed:
                return
