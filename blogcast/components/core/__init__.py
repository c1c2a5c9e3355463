"""
Foundational components: constants, log hygiene, exceptions.
"""

from blogcast.components.core.constants import (
    WSCloseCode,
    RealtimeConstants,
    MSG_PING_PLAIN,
    MSG_PING_JSON,
    MSG_PONG_JSON,
    DEFAULT_ALLOWED_ORIGINS,
)
from blogcast.components.core.context import sanitize_log_data
from blogcast.components.core.exceptions import (
    RealtimeError,
    InvalidEventError,
    CircuitOpenError,
)

__all__ = [
    "WSCloseCode",
    "RealtimeConstants",
    "MSG_PING_PLAIN",
    "MSG_PING_JSON",
    "MSG_PONG_JSON",
    "DEFAULT_ALLOWED_ORIGINS",
    "sanitize_log_data",
    "RealtimeError",
    "InvalidEventError",
    "CircuitOpenError",
]
