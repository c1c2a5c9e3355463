"""
Realtime Gateway Constants.

Centralized constants with documentation explaining the value of each.
Values that operators tune live in `blogcast.config.settings` instead.
"""

from enum import IntEnum
from typing import Final

__all__ = [
    "WSCloseCode",
    "RealtimeConstants",
    "MSG_PING_PLAIN",
    "MSG_PING_JSON",
    "MSG_PONG_JSON",
    "DEFAULT_ALLOWED_ORIGINS",
]


class WSCloseCode(IntEnum):
    """
    WebSocket close codes used by the gateway.

    Standard codes (1000-1999) from RFC 6455.
    Custom codes (4000-4999) for application-specific errors.
    """

    # Standard codes (RFC 6455)
    NORMAL = 1000  # Normal closure
    GOING_AWAY = 1001  # Server shutting down or connection reaped
    POLICY_VIOLATION = 1008  # Generic policy violation
    MESSAGE_TOO_BIG = 1009  # Message too large to process
    SERVER_ERROR = 1011  # Unexpected server error

    # Custom application codes (4000-4999)
    RATE_LIMITED = 4029  # Too many messages per window (see ws_message_rate_limit)


class RealtimeConstants:
    """
    Realtime core operational constants.

    These are defaults for values the settings can override at runtime, plus
    internal limits that are not meant to be tuned.
    """

    # ==========================================================================
    # Reaper
    # ==========================================================================

    # REAPER_INTERVAL: 30 seconds
    # Matches the client heartbeat period, so an idle connection is noticed
    # within one heartbeat of crossing IDLE_TIMEOUT.
    REAPER_INTERVAL: Final[float] = 30.0

    # IDLE_TIMEOUT: 5 minutes
    # Ten missed heartbeats. Long enough to survive a laptop lid close on a
    # flaky network, short enough to keep viewer counts honest.
    IDLE_TIMEOUT: Final[float] = 300.0

    # ==========================================================================
    # Typing indicators
    # ==========================================================================

    # TYPING_AUTO_CLEAR: 3 seconds
    # Clients refresh the indicator on every keystroke burst; three seconds of
    # silence means the user stopped typing.
    TYPING_AUTO_CLEAR: Final[float] = 3.0

    # TYPING_REAP_TIMEOUT: 10 seconds
    # Backstop applied by the idle reaper in case the sweep loop stalled.
    TYPING_REAP_TIMEOUT: Final[float] = 10.0

    TYPING_SWEEP_INTERVAL: Final[float] = 1.0

    # ==========================================================================
    # Payload limits
    # ==========================================================================

    MAX_ID_LENGTH: Final[int] = 128
    MAX_DISPLAY_NAME_LENGTH: Final[int] = 100
    MAX_ACTION_LENGTH: Final[int] = 64
    MAX_CHAT_MESSAGE_LENGTH: Final[int] = 4000
    MAX_COMMENT_LENGTH: Final[int] = 4000
    MAX_EVENT_NAME_LENGTH: Final[int] = 64

    # ==========================================================================
    # Transport
    # ==========================================================================

    WS_RECEIVE_TIMEOUT: Final[float] = 90.0
    SEND_TIMEOUT: Final[float] = 5.0

    # Rate limiter bound on tracked connections (memory guard)
    MAX_TRACKED_CONNECTIONS: Final[int] = 5000

    # ==========================================================================
    # Circuit breaker (persistence collaborator)
    # ==========================================================================

    CIRCUIT_FAILURE_THRESHOLD: Final[int] = 5
    CIRCUIT_RECOVERY_TIMEOUT: Final[float] = 30.0
    CIRCUIT_HALF_OPEN_MAX_CALLS: Final[int] = 1


# Heartbeat frames handled by the transport bridge before dispatch
MSG_PING_PLAIN: Final[str] = "ping"
MSG_PING_JSON: Final[str] = '{"type":"ping"}'
MSG_PONG_JSON: Final[str] = '{"type":"pong"}'

DEFAULT_ALLOWED_ORIGINS: Final[tuple[str, ...]] = (
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
)
