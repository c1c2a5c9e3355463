"""
Metrics Collector for the realtime gateway.

Plain counters grouped by concern. Everything runs on one event loop and
no increment awaits, so the counters need no locking.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any


@dataclass
class EventMetrics:
    """Inbound event processing."""
    processed: int = 0
    invalid: int = 0  # Payload failed validation
    unknown: int = 0  # Not JSON, not an object, or unknown event name
    handler_errors: int = 0


@dataclass
class BroadcastMetrics:
    """Outbound fan-out."""
    total: int = 0
    recipients: int = 0
    failed_sends: int = 0


@dataclass
class ConnectionMetrics:
    """Transport lifecycle."""
    opened: int = 0
    closed: int = 0
    reaped: int = 0
    rate_limited: int = 0
    timeouts: int = 0


@dataclass
class StateMetrics:
    """Room and presence state housekeeping."""
    typing_expired: int = 0
    presence_evicted: int = 0
    persistence_failures: int = 0


class MetricsCollector:
    """
    Counter store with snapshot retrieval.

    Usage:
        metrics = MetricsCollector()
        metrics.events.processed += 1
        metrics.increment("custom_thing")
        stats = metrics.get_snapshot()
    """

    def __init__(self) -> None:
        self.events = EventMetrics()
        self.broadcasts = BroadcastMetrics()
        self.connections = ConnectionMetrics()
        self.state = StateMetrics()
        self._custom: dict[str, int] = {}

    def record_broadcast(self, recipients: int, failed: int) -> None:
        self.broadcasts.total += 1
        self.broadcasts.recipients += recipients
        self.broadcasts.failed_sends += failed

    def increment(self, name: str, count: int = 1) -> None:
        """Increment a custom metric by name."""
        self._custom[name] = self._custom.get(name, 0) + count

    def get_snapshot(self) -> dict[str, Any]:
        """
        Flat copy of every counter.

        Names follow {category}_{metric} with a plural category.
        """
        snapshot: dict[str, Any] = {}
        for prefix, group in (
            ("events", self.events),
            ("broadcasts", self.broadcasts),
            ("connections", self.connections),
            ("state", self.state),
        ):
            for f in fields(group):
                snapshot[f"{prefix}_{f.name}"] = getattr(group, f.name)
        snapshot.update(self._custom)
        return snapshot

    def reset(self) -> dict[str, Any]:
        """Reset all counters and return the previous values."""
        snapshot = self.get_snapshot()
        self.events = EventMetrics()
        self.broadcasts = BroadcastMetrics()
        self.connections = ConnectionMetrics()
        self.state = StateMetrics()
        self._custom.clear()
        return snapshot
