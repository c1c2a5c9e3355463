"""
Transport bridge: WebSocket endpoint and the transport seam.
"""

from blogcast.components.endpoints.transport import Transport, WebSocketTransport, is_ws_connected
from blogcast.components.endpoints.base import RealtimeEndpoint

__all__ = [
    "Transport",
    "WebSocketTransport",
    "is_ws_connected",
    "RealtimeEndpoint",
]
