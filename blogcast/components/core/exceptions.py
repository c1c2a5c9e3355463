"""
Exceptions raised inside the realtime core.

None of these escape the dispatcher: they are raised by components and caught
at the boundary that owns the failure policy.
"""


class RealtimeError(Exception):
    """Base class for realtime core errors."""


class InvalidEventError(RealtimeError):
    """An inbound frame could not be parsed into a known event."""

    def __init__(self, reason: str, event: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.event = event


class CircuitOpenError(RealtimeError):
    """Raised when circuit breaker is open and rejecting calls."""
