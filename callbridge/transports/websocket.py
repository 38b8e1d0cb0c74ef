"""WebSocket transports for callbridge.

``WebSocketClientTransport`` dials the speech-AI provider using the
``websockets`` asyncio client. ``FastAPIWebSocketTransport`` wraps a media
socket the telephony provider opened against our FastAPI server.
"""

from __future__ import annotations

from typing import Any

import websockets
import websockets.asyncio.client
from loguru import logger
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState
from websockets.protocol import State

from callbridge.transports.base import BaseTransport, TransportClosed


class WebSocketClientTransport(BaseTransport):
    """WebSocket client transport for connecting to a remote endpoint.

    Used for the AI leg: callbridge connects as a client to the provider's
    realtime WebSocket API.
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        **ws_kwargs: Any,
    ) -> None:
        if not url:
            raise ValueError("WebSocket URL is required")
        self._url = url
        self._headers = headers or {}
        self._ws: Any | None = None
        self._ws_kwargs = ws_kwargs

    async def connect(self) -> None:
        logger.info(f"Connecting to WebSocket: {self._url}")
        self._ws = await websockets.asyncio.client.connect(
            self._url,
            additional_headers=self._headers,
            **self._ws_kwargs,
        )
        logger.info(f"Connected to {self._url}")

    async def send(self, data: bytes | str) -> None:
        if not self._ws:
            raise TransportClosed("Not connected")
        try:
            await self._ws.send(data)
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportClosed(str(e)) from e

    async def recv(self) -> bytes | str:
        if not self._ws:
            raise TransportClosed("Not connected")
        try:
            return await self._ws.recv()
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportClosed(str(e)) from e

    async def disconnect(self) -> None:
        if self._ws:
            ws, self._ws = self._ws, None
            await ws.close()
            logger.info(f"WebSocket client disconnected from {self._url}")

    def is_connected(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN


class FastAPIWebSocketTransport(BaseTransport):
    """Adapter exposing an accepted FastAPI/Starlette WebSocket as a transport."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket
        self._connected = True

    @property
    def query_params(self) -> dict[str, str]:
        return dict(self._ws.query_params)

    async def connect(self) -> None:
        pass  # Already accepted by the endpoint

    async def send(self, data: bytes | str) -> None:
        if not self._connected:
            raise TransportClosed("Media socket closed")
        try:
            if isinstance(data, bytes):
                await self._ws.send_bytes(data)
            else:
                await self._ws.send_text(data)
        except (WebSocketDisconnect, RuntimeError) as e:
            self._connected = False
            raise TransportClosed(str(e)) from e

    async def recv(self) -> bytes | str:
        if not self._connected:
            raise TransportClosed("Media socket closed")
        try:
            msg = await self._ws.receive()
        except RuntimeError as e:
            self._connected = False
            raise TransportClosed(str(e)) from e
        if msg["type"] == "websocket.disconnect":
            self._connected = False
            raise TransportClosed(f"Media socket disconnected (code={msg.get('code')})")
        if msg.get("bytes") is not None:
            return msg["bytes"]
        if msg.get("text") is not None:
            return msg["text"]
        raise TransportClosed(f"Unexpected WebSocket message: {msg['type']}")

    async def disconnect(self) -> None:
        if not self._connected:
            return
        self._connected = False
        if self._ws.application_state is WebSocketState.CONNECTED:
            try:
                await self._ws.close()
            except RuntimeError as e:
                logger.debug(f"Media socket already closed: {e}")
        logger.info("Media WebSocket disconnected")

    def is_connected(self) -> bool:
        return self._connected
