"""Feed transport protocol and the WebSocket implementation.

The connector only sees `FeedTransport.connect()` and the returned
`FeedConnection`; tests drive it with scripted fakes.
"""

from __future__ import annotations

from typing import Protocol

import structlog
import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus, InvalidURI

from tradeflow.errors import FeedConnectionError, TransientFeedError

log = structlog.get_logger(__name__)

# Handshake statuses no amount of retrying will fix.
FATAL_HTTP_STATUSES = frozenset({400, 401, 403, 404, 451})


class FeedConnection(Protocol):
    """One live duplex connection to the feed."""

    async def send(self, message: str) -> None: ...
    async def recv(self) -> str | bytes: ...
    async def close(self) -> None: ...


class FeedTransport(Protocol):
    """Factory for feed connections. Raise TransientFeedError or FeedConnectionError."""

    async def connect(self) -> FeedConnection: ...


class WebSocketConnection:
    """FeedConnection over a websockets client connection."""

    def __init__(self, ws: ClientConnection) -> None:
        self._ws = ws

    async def send(self, message: str) -> None:
        try:
            await self._ws.send(message)
        except ConnectionClosed as e:
            raise TransientFeedError(f"connection closed during send: {e}") from e

    async def recv(self) -> str | bytes:
        try:
            return await self._ws.recv()
        except ConnectionClosed as e:
            raise TransientFeedError(f"connection closed: {e}") from e

    async def close(self) -> None:
        await self._ws.close()


class WebSocketTransport:
    """Connects to a WebSocket endpoint with keepalive pings."""

    def __init__(
        self,
        url: str,
        *,
        open_timeout: float = 10.0,
        ping_interval: float | None = 20.0,
        ping_timeout: float | None = 20.0,
        close_timeout: float = 5.0,
    ) -> None:
        self.url = url
        self.open_timeout = open_timeout
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.close_timeout = close_timeout

    async def connect(self) -> WebSocketConnection:
        try:
            ws = await websockets.connect(
                self.url,
                open_timeout=self.open_timeout,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
                close_timeout=self.close_timeout,
            )
        except InvalidURI as e:
            raise FeedConnectionError(f"invalid feed URL {self.url!r}: {e}") from e
        except InvalidStatus as e:
            status = e.response.status_code
            if status in FATAL_HTTP_STATUSES:
                raise FeedConnectionError(f"feed rejected handshake with HTTP {status}") from e
            raise TransientFeedError(f"feed handshake failed with HTTP {status}") from e
        except (OSError, InvalidHandshake, TimeoutError) as e:
            raise TransientFeedError(f"connect failed: {e!r}") from e
        log.info("ws_connected", url=self.url)
        return WebSocketConnection(ws)
