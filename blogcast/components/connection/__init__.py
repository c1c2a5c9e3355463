"""
Connection components: session registry, inbound rate limiting, keepalive.
"""

from blogcast.components.connection.registry import Connection, ConnectionRegistry
from blogcast.components.connection.rate_limiter import MessageRateLimiter
from blogcast.components.connection.heartbeat import handle_heartbeat

__all__ = [
    "Connection",
    "ConnectionRegistry",
    "MessageRateLimiter",
    "handle_heartbeat",
]
