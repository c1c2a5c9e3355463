"""
Transport seam between the realtime core and live sockets.

The core only knows connection ids. `WebSocketTransport` maps those ids to
Starlette WebSockets; tests substitute a recording fake.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

from starlette.websockets import WebSocket, WebSocketState

from blogcast.components.core.constants import RealtimeConstants, WSCloseCode
from blogcast.config.logging import get_logger

logger = get_logger(__name__)


class Transport(Protocol):
    """Delivery of frames to connection ids."""

    async def send(self, connection_id: str, frame: dict[str, Any]) -> bool:
        """Deliver one frame. Returns False instead of raising when delivery fails."""
        ...

    async def close(self, connection_id: str, code: int = WSCloseCode.GOING_AWAY, reason: str = "") -> None:
        ...


def is_ws_connected(ws: WebSocket) -> bool:
    """
    Check that both sides of a Starlette WebSocket are still connected.

    Transitional states are not exposed, so a socket may look connected
    briefly after a disconnect started.
    """
    return (
        ws.client_state == WebSocketState.CONNECTED
        and ws.application_state == WebSocketState.CONNECTED
    )


class WebSocketTransport:
    """connection_id -> WebSocket, with best-effort sends."""

    def __init__(self, send_timeout: float = RealtimeConstants.SEND_TIMEOUT) -> None:
        self._sockets: dict[str, WebSocket] = {}
        self._send_timeout = send_timeout

    def attach(self, connection_id: str, websocket: WebSocket) -> None:
        self._sockets[connection_id] = websocket

    def detach(self, connection_id: str) -> None:
        self._sockets.pop(connection_id, None)

    def __len__(self) -> int:
        return len(self._sockets)

    async def send(self, connection_id: str, frame: dict[str, Any]) -> bool:
        ws = self._sockets.get(connection_id)
        if ws is None or not is_ws_connected(ws):
            return False
        try:
            await asyncio.wait_for(ws.send_json(frame), timeout=self._send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.debug("Send timed out", connection_id=connection_id)
            return False
        except (ConnectionError, RuntimeError, OSError) as e:
            # Peer went away between the state check and the write
            logger.debug("Send failed", connection_id=connection_id, error=str(e))
            return False

    async def close(self, connection_id: str, code: int = WSCloseCode.GOING_AWAY, reason: str = "") -> None:
        ws = self._sockets.get(connection_id)
        if ws is None or not is_ws_connected(ws):
            return
        try:
            await ws.close(code=code, reason=reason)
        except (ConnectionError, RuntimeError, OSError) as e:
            logger.debug("Close failed", connection_id=connection_id, error=str(e))
