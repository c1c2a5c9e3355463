"""
Persistence backend selection.
"""

from __future__ import annotations

from blogcast.components.resilience.circuit_breaker import CircuitBreaker
from blogcast.config.logging import get_logger
from blogcast.config.settings import Settings
from blogcast.persistence.base import PersistenceService
from blogcast.persistence.guarded import GuardedPersistence
from blogcast.persistence.memory import InMemoryPersistence
from blogcast.persistence.redis_store import RedisPersistence

logger = get_logger(__name__)


def create_persistence(settings: Settings) -> GuardedPersistence:
    """Build the configured backend wrapped in a circuit breaker."""
    if settings.persistence_backend == "redis":
        backend: PersistenceService = RedisPersistence.from_settings(settings)
    else:
        backend = InMemoryPersistence()
    breaker = CircuitBreaker(
        "persistence",
        failure_threshold=settings.circuit_failure_threshold,
        recovery_timeout=settings.circuit_recovery_timeout,
    )
    logger.info("Persistence backend selected", backend=settings.persistence_backend)
    return GuardedPersistence(backend, breaker)
