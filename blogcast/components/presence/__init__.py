"""
Identity presence tracking.
"""

from blogcast.components.presence.store import (
    IdentityPresence,
    PresenceStatus,
    PresenceStore,
)

__all__ = [
    "IdentityPresence",
    "PresenceStatus",
    "PresenceStore",
]
