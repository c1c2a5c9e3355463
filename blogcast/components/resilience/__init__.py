"""
Resilience components.
"""

from blogcast.components.resilience.circuit_breaker import CircuitBreaker, CircuitState
from blogcast.components.core.exceptions import CircuitOpenError

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "CircuitOpenError",
]
