"""
Transport Bridge.

Runs one WebSocket from accept to close: assigns the connection id,
enforces size and rate limits, answers keepalive pings and hands every
other frame to the dispatcher. Whatever ends the loop, the connection
goes through the dispatcher's disconnect path exactly once.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import TYPE_CHECKING

from fastapi import WebSocket, WebSocketDisconnect

from blogcast.components.connection.heartbeat import handle_heartbeat
from blogcast.components.core.constants import WSCloseCode
from blogcast.components.core.context import sanitize_log_data
from blogcast.components.endpoints.transport import WebSocketTransport, is_ws_connected
from blogcast.config.logging import get_logger

if TYPE_CHECKING:
    from blogcast.core.gateway import RealtimeGateway

logger = get_logger(__name__)


class RealtimeEndpoint:
    """
    One client connection.

    Usage:
        endpoint = RealtimeEndpoint(websocket, gateway)
        await endpoint.run()
    """

    def __init__(
        self,
        websocket: WebSocket,
        gateway: "RealtimeGateway",
        endpoint_name: str = "/ws",
    ):
        self.websocket = websocket
        self.gateway = gateway
        self.endpoint_name = endpoint_name
        self.connection_id = uuid.uuid4().hex
        self.receive_timeout = gateway.settings.ws_receive_timeout
        self.max_message_size = gateway.settings.ws_max_message_size
        self._is_running = False

    async def run(self) -> None:
        """
        Handle the complete lifecycle:
        1. Accept and register
        2. Message loop
        3. Disconnect and unregister
        """
        await self.websocket.accept()

        transport = self.gateway.transport
        if isinstance(transport, WebSocketTransport):
            transport.attach(self.connection_id, self.websocket)
        self.gateway.dispatcher.connect(self.connection_id)
        self.gateway.metrics.connections.opened += 1
        logger.info("WebSocket connected", endpoint=self.endpoint_name, connection_id=self.connection_id)

        self._is_running = True
        reason = "client_disconnect"
        try:
            reason = await self._message_loop()
        except WebSocketDisconnect:
            reason = "client_disconnect"
        except Exception as e:
            reason = "error"
            logger.error(
                "Unexpected error in message loop",
                endpoint=self.endpoint_name,
                connection_id=self.connection_id,
                error=str(e),
                exc_info=True,
            )
        finally:
            self._is_running = False
            await self.gateway.dispatcher.disconnect(self.connection_id, reason=reason)
            if isinstance(transport, WebSocketTransport):
                transport.detach(self.connection_id)
            self.gateway.rate_limiter.remove_connection(self.connection_id)
            self.gateway.metrics.connections.closed += 1
            logger.info(
                "WebSocket disconnected",
                endpoint=self.endpoint_name,
                connection_id=self.connection_id,
                reason=reason,
            )

    async def _message_loop(self) -> str:
        """
        Receive and dispatch until the connection ends.

        Returns:
            Why the loop stopped.
        """
        while self._is_running:
            data = await self._receive_with_timeout()
            if data is None:
                logger.info(
                    "Connection timed out (no messages)",
                    endpoint=self.endpoint_name,
                    connection_id=self.connection_id,
                    timeout=self.receive_timeout,
                )
                self.gateway.metrics.connections.timeouts += 1
                await self._close(WSCloseCode.NORMAL, "Connection timeout")
                return "timeout"

            if not await self.validate_message_size(data):
                return "message_too_big"

            if not await self.check_rate_limit():
                return "rate_limited"

            if isinstance(data, bytes):
                self._drop_binary_frame(data)
                continue

            if await handle_heartbeat(self.websocket, data):
                self.gateway.registry.touch(self.connection_id)
                continue

            await self.gateway.dispatcher.handle_frame(self.connection_id, data)
        return "stopped"

    async def _receive_with_timeout(self) -> str | bytes | None:
        """
        Next frame from the client, or None if `receive_timeout` elapses.

        Binary frames come back as bytes. The protocol is text only, so the
        loop drops them as malformed input instead of failing on them.

        Raises:
            WebSocketDisconnect: The client closed the connection.
        """
        try:
            message = await asyncio.wait_for(
                self.websocket.receive(),
                timeout=self.receive_timeout,
            )
        except asyncio.TimeoutError:
            return None

        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(
                code=message.get("code", WSCloseCode.NORMAL),
                reason=message.get("reason"),
            )
        text = message.get("text")
        if text is not None:
            return text
        return message.get("bytes") or b""

    def _drop_binary_frame(self, data: bytes) -> None:
        self.gateway.metrics.events.unknown += 1
        logger.warning(
            "Dropping binary frame",
            endpoint=self.endpoint_name,
            connection_id=self.connection_id,
            size=len(data),
        )

    async def validate_message_size(self, data: str | bytes) -> bool:
        """
        Returns:
            True if valid, False if too large (connection closed).
        """
        if len(data) > self.max_message_size:
            logger.warning(
                "Message size exceeded limit",
                endpoint=self.endpoint_name,
                connection_id=self.connection_id,
                size=len(data),
                max_size=self.max_message_size,
                preview=sanitize_log_data(data[:80]) if isinstance(data, str) else None,
            )
            await self._close(WSCloseCode.MESSAGE_TOO_BIG, "Message too large")
            return False
        return True

    async def check_rate_limit(self) -> bool:
        """
        Returns:
            True if allowed, False if rate limited (connection closed).
        """
        if not self.gateway.rate_limiter.is_allowed(self.connection_id):
            logger.warning(
                "Rate limit exceeded",
                endpoint=self.endpoint_name,
                connection_id=self.connection_id,
            )
            self.gateway.metrics.connections.rate_limited += 1
            await self._close(WSCloseCode.RATE_LIMITED, "Rate limit exceeded")
            return False
        return True

    async def _close(self, code: int, reason: str) -> None:
        if not is_ws_connected(self.websocket):
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except (ConnectionError, RuntimeError, OSError) as e:
            logger.debug("Close failed", connection_id=self.connection_id, error=str(e))
