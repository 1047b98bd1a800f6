"""Peer connection adapters used by the relay.

Both adapters raise ``TransportError`` when the underlying socket is closed or
fails, so the relay handles one exception type for either side.
"""

from __future__ import annotations

import logging
from typing import Protocol

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState
from websockets.exceptions import ConnectionClosed

from calls.errors import TransportError

LOGGER = logging.getLogger(__name__)


class PeerConnection(Protocol):
    async def receive_text(self) -> str: ...

    async def send_text(self, data: str) -> None: ...

    async def close(self) -> None: ...


class StarletteMediaPeer:
    """Media peer backed by an accepted FastAPI ``WebSocket``."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    async def receive_text(self) -> str:
        try:
            return await self._websocket.receive_text()
        except WebSocketDisconnect as exc:
            raise TransportError(f"Media peer disconnected ({exc.code})") from exc
        except RuntimeError as exc:
            # Starlette raises RuntimeError when receiving on a closed socket.
            raise TransportError(f"Media peer unavailable: {exc}") from exc

    async def send_text(self, data: str) -> None:
        if self._websocket.application_state != WebSocketState.CONNECTED:
            raise TransportError("Media peer is closed")
        try:
            await self._websocket.send_text(data)
        except (WebSocketDisconnect, RuntimeError) as exc:
            raise TransportError(f"Media peer send failed: {exc}") from exc

    async def close(self) -> None:
        if self._websocket.application_state == WebSocketState.CONNECTED:
            await self._websocket.close()


class WebsocketsPeer:
    """AI peer backed by a ``websockets`` client connection."""

    def __init__(self, connection) -> None:
        self._connection = connection

    async def receive_text(self) -> str:
        try:
            message = await self._connection.recv()
        except ConnectionClosed as exc:
            raise TransportError(f"AI peer disconnected: {exc}") from exc
        if isinstance(message, bytes):
            return message.decode("utf-8", errors="replace")
        return message

    async def send_text(self, data: str) -> None:
        try:
            await self._connection.send(data)
        except ConnectionClosed as exc:
            raise TransportError(f"AI peer send failed: {exc}") from exc

    async def close(self) -> None:
        await self._connection.close()
