"""
Transport-level keepalive.

Plain ``ping`` frames are answered with ``pong`` before dispatch so a
keepalive never counts as an event. The protocol-level ``heartbeat``
event is handled by the dispatcher instead, because it also refreshes
presence.
"""

from __future__ import annotations

from starlette.websockets import WebSocket

from blogcast.components.core.constants import MSG_PING_JSON, MSG_PING_PLAIN, MSG_PONG_JSON
from blogcast.config.logging import get_logger

logger = get_logger(__name__)


async def handle_heartbeat(ws: WebSocket, data: str) -> bool:
    """
    Answer a keepalive ping.

    Returns:
        True if `data` was a ping (answered or not), False otherwise.
    """
    if data != MSG_PING_PLAIN and data != MSG_PING_JSON:
        return False
    try:
        await ws.send_text(MSG_PONG_JSON)
    except (ConnectionError, RuntimeError, OSError):
        # Connection closed; the receive loop will notice
        pass
    except Exception as e:
        logger.warning(
            "Unexpected error sending heartbeat response",
            error=type(e).__name__,
            message=str(e),
        )
    return True
