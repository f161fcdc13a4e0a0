from __future__ import annotations

import logging
from typing import Any, Protocol

import websockets
from websockets.exceptions import ConnectionClosed

from binance_usdm_streams.core.errors import ConnectionClosedError

logger = logging.getLogger(__name__)


class SocketConnection(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send(self, message: str) -> None: ...

    async def recv(self) -> str | bytes:
        """Next inbound message; raises :class:`ConnectionClosedError` once the socket is gone."""
        ...

    async def close(self) -> None: ...


class WebSocketConnection:
    def __init__(self, url: str, websocket: Any) -> None:
        self._url = url
        self._websocket = websocket
        self._closed = False

    @classmethod
    async def open(cls, url: str) -> WebSocketConnection:
        websocket = await websockets.connect(
            url,
            ping_interval=20,
            ping_timeout=20,
            close_timeout=5,
            max_size=2**22,
        )
        logger.info("WebSocket connected", extra={"url": url})
        return cls(url, websocket)

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_open(self) -> bool:
        return not self._closed

    async def send(self, message: str) -> None:
        if self._closed:
            raise ConnectionClosedError(f"Connection to {self._url} is closed")
        try:
            await self._websocket.send(message)
        except ConnectionClosed as exc:
            self._closed = True
            raise ConnectionClosedError(f"Connection to {self._url} closed: {exc}") from exc

    async def recv(self) -> str | bytes:
        if self._closed:
            raise ConnectionClosedError(f"Connection to {self._url} is closed")
        try:
            return await self._websocket.recv()
        except ConnectionClosed as exc:
            self._closed = True
            raise ConnectionClosedError(f"Connection to {self._url} closed: {exc}") from exc

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._websocket.close()
        logger.info("WebSocket closed", extra={"url": self._url})
