"""
Prometheus metrics export.

Formats the gateway's stats in Prometheus text exposition format.
No external dependencies required.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any


class MetricType(str, Enum):
    """Prometheus metric types."""

    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass(frozen=True)
class MetricDefinition:
    """
    A metric and where its value lives in the stats dict.

    `path` is a dotted lookup such as ``"metrics.events_processed"``.
    """

    name: str
    help_text: str
    metric_type: MetricType
    path: str


METRIC_DEFINITIONS: list[MetricDefinition] = [
    # Connection gauges
    MetricDefinition("connections_active", "Live transport connections", MetricType.GAUGE, "connections.connections"),
    MetricDefinition("identities_connected", "Distinct identities with a live connection", MetricType.GAUGE, "connections.identities"),
    MetricDefinition("channels_active", "Channels with at least one connection", MetricType.GAUGE, "connections.channels"),
    MetricDefinition("identities_online", "Identities marked online", MetricType.GAUGE, "presence.online"),
    MetricDefinition("rooms_active", "Tracked rooms with at least one member", MetricType.GAUGE, "rooms.rooms_total"),
    MetricDefinition("background_tasks_pending", "Persistence tasks in flight", MetricType.GAUGE, "background_tasks.pending"),
    MetricDefinition("rate_limiter_tracked", "Connections tracked by the rate limiter", MetricType.GAUGE, "rate_limiter.tracked_connections"),

    # Event counters
    MetricDefinition("events_processed", "Inbound events dispatched", MetricType.COUNTER, "metrics.events_processed"),
    MetricDefinition("events_invalid", "Inbound events dropped for an invalid payload", MetricType.COUNTER, "metrics.events_invalid"),
    MetricDefinition("events_unknown", "Inbound frames dropped as unparseable or unknown", MetricType.COUNTER, "metrics.events_unknown"),
    MetricDefinition("events_handler_errors", "Handlers that raised unexpectedly", MetricType.COUNTER, "metrics.events_handler_errors"),

    # Broadcast counters
    MetricDefinition("broadcasts_total", "Fan-out operations", MetricType.COUNTER, "metrics.broadcasts_total"),
    MetricDefinition("broadcasts_recipients", "Frames delivered across all fan-outs", MetricType.COUNTER, "metrics.broadcasts_recipients"),
    MetricDefinition("broadcasts_failed_sends", "Frames that could not be delivered", MetricType.COUNTER, "metrics.broadcasts_failed_sends"),

    # Lifecycle counters
    MetricDefinition("connections_opened", "Connections accepted", MetricType.COUNTER, "metrics.connections_opened"),
    MetricDefinition("connections_closed", "Connections closed", MetricType.COUNTER, "metrics.connections_closed"),
    MetricDefinition("connections_reaped", "Connections evicted by the idle reaper", MetricType.COUNTER, "metrics.connections_reaped"),
    MetricDefinition("connections_rate_limited", "Connections closed for flooding", MetricType.COUNTER, "metrics.connections_rate_limited"),
    MetricDefinition("typing_expired", "Typing entries expired by sweep or reap", MetricType.COUNTER, "metrics.state_typing_expired"),
    MetricDefinition("presence_evicted", "Offline presence records evicted by the reaper", MetricType.COUNTER, "metrics.state_presence_evicted"),
    MetricDefinition("persistence_failures", "Persistence calls that failed", MetricType.COUNTER, "metrics.state_persistence_failures"),
]


def _lookup(stats: dict[str, Any], path: str) -> Any:
    value: Any = stats
    for part in path.split("."):
        if not isinstance(value, dict):
            return 0
        value = value.get(part, 0)
    return value if isinstance(value, (int, float)) else 0


class PrometheusFormatter:
    """
    Formats metrics in Prometheus text exposition format.

    Reference: https://prometheus.io/docs/instrumenting/exposition_formats/
    """

    def __init__(self, prefix: str = "blogcast"):
        self._prefix = prefix

    def format_metric(
        self,
        name: str,
        value: float | int,
        help_text: str,
        metric_type: MetricType,
        labels: dict[str, str] | None = None,
    ) -> str:
        """Format a single metric with HELP and TYPE lines."""
        full_name = f"{self._prefix}_{name}"
        lines = [
            f"# HELP {full_name} {help_text}",
            f"# TYPE {full_name} {metric_type.value}",
        ]
        if labels:
            label_str = ",".join(f'{k}="{v}"' for k, v in labels.items())
            lines.append(f"{full_name}{{{label_str}}} {value}")
        else:
            lines.append(f"{full_name} {value}")
        return "\n".join(lines)

    def format_all_metrics(self, stats: dict[str, Any]) -> str:
        """
        Format every defined metric from a gateway stats dict.

        Missing values render as 0 so a scrape never fails on a partial dict.
        """
        lines = [
            self.format_metric(d.name, _lookup(stats, d.path), d.help_text, d.metric_type)
            for d in METRIC_DEFINITIONS
        ]

        rooms_by_kind = stats.get("rooms", {}).get("rooms_by_kind", {})
        name = f"{self._prefix}_rooms_by_kind"
        lines.append(f"# HELP {name} Tracked rooms by kind")
        lines.append(f"# TYPE {name} gauge")
        for kind, count in sorted(rooms_by_kind.items()):
            lines.append(f'{name}{{kind="{kind}"}} {count}')

        breaker = stats.get("circuit_breaker")
        if breaker:
            lines.append(self.format_metric(
                "circuit_breaker_open",
                1 if breaker.get("state") == "open" else 0,
                "Whether the persistence circuit breaker is open",
                MetricType.GAUGE,
                labels={"name": str(breaker.get("name", ""))},
            ))

        lines.append(self.format_metric(
            "scrape_timestamp",
            int(time.time()),
            "Timestamp of metrics scrape",
            MetricType.GAUGE,
        ))
        return "\n".join(lines) + "\n"


_formatter: PrometheusFormatter | None = None


def get_prometheus_formatter() -> PrometheusFormatter:
    """Get singleton Prometheus formatter."""
    global _formatter
    if _formatter is None:
        _formatter = PrometheusFormatter()
    return _formatter
