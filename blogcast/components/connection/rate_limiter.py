"""
Message Rate Limiter.

Per-connection sliding window limiter for inbound frames. The transport
bridge consults it before dispatching, so a flooding client is closed
before it can churn room state.
"""

from __future__ import annotations

import time

from blogcast.components.core.constants import RealtimeConstants
from blogcast.config.logging import get_logger

logger = get_logger(__name__)

# Share of tracked connections dropped when the limiter is full
EVICTION_PERCENTAGE = 10


class MessageRateLimiter:
    """
    Sliding window counter keyed by connection id.

    - Each connection keeps the timestamps of its recent frames
    - Timestamps older than the window are discarded on every check
    - A frame is rejected when the window already holds `max_messages`

    Memory is bounded by `max_tracked`; when full, the connections with the
    oldest activity are evicted first.
    """

    def __init__(
        self,
        max_messages: int,
        window_seconds: float,
        max_tracked: int = RealtimeConstants.MAX_TRACKED_CONNECTIONS,
    ) -> None:
        self._max_messages = max_messages
        self._window_seconds = window_seconds
        self._max_tracked = max_tracked

        self._counters: dict[str, list[float]] = {}
        self._overflow_warning_logged = False

        self._total_allowed = 0
        self._total_rejected = 0
        self._evictions = 0

    @property
    def max_messages(self) -> int:
        return self._max_messages

    @property
    def window_seconds(self) -> float:
        return self._window_seconds

    @property
    def tracked_count(self) -> int:
        return len(self._counters)

    def is_allowed(self, connection_id: str, now: float | None = None) -> bool:
        """
        Record a frame from `connection_id` and report whether it is allowed.

        Rejected frames are not recorded, so a client that backs off recovers
        as soon as the window slides.
        """
        now = now if now is not None else time.time()
        window_start = now - self._window_seconds

        if connection_id not in self._counters and len(self._counters) >= self._max_tracked:
            self._evict_oldest_entries()

        timestamps = [t for t in self._counters.get(connection_id, ()) if t > window_start]
        if len(timestamps) >= self._max_messages:
            self._counters[connection_id] = timestamps
            self._total_rejected += 1
            return False

        timestamps.append(now)
        self._counters[connection_id] = timestamps
        self._total_allowed += 1
        return True

    def _evict_oldest_entries(self) -> None:
        if not self._overflow_warning_logged:
            logger.warning(
                "Rate limiter at capacity, evicting oldest entries",
                max_tracked=self._max_tracked,
                current_tracked=len(self._counters),
            )
            self._overflow_warning_logged = True

        entries_to_remove = max(1, self._max_tracked * EVICTION_PERCENTAGE // 100)
        by_last_seen = sorted(
            self._counters.items(),
            key=lambda item: max(item[1]) if item[1] else 0.0,
        )
        for connection_id, _ in by_last_seen[:entries_to_remove]:
            del self._counters[connection_id]
            self._evictions += 1

    def remove_connection(self, connection_id: str) -> None:
        """Stop tracking a connection. Call when it closes."""
        self._counters.pop(connection_id, None)

    def cleanup_stale(self, now: float | None = None) -> int:
        """
        Drop connections with no frame inside the current window.

        Returns:
            Number of entries removed.
        """
        now = now if now is not None else time.time()
        window_start = now - self._window_seconds

        stale = [
            connection_id
            for connection_id, timestamps in self._counters.items()
            if not any(t > window_start for t in timestamps)
        ]
        for connection_id in stale:
            del self._counters[connection_id]

        if len(self._counters) < self._max_tracked * 0.9:
            self._overflow_warning_logged = False
        return len(stale)

    def get_stats(self) -> dict[str, int | float]:
        return {
            "tracked_connections": len(self._counters),
            "max_tracked": self._max_tracked,
            "max_messages_per_window": self._max_messages,
            "window_seconds": self._window_seconds,
            "total_allowed": self._total_allowed,
            "total_rejected": self._total_rejected,
            "evictions": self._evictions,
        }
