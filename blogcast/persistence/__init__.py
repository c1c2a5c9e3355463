"""
Persistence collaborators used by the realtime core.
"""

from blogcast.persistence.base import PersistenceService
from blogcast.persistence.memory import InMemoryPersistence
from blogcast.persistence.redis_store import RedisPersistence
from blogcast.persistence.guarded import GuardedPersistence
from blogcast.persistence.factory import create_persistence

__all__ = [
    "PersistenceService",
    "InMemoryPersistence",
    "RedisPersistence",
    "GuardedPersistence",
    "create_persistence",
]
