"""
Presence Store.

Online/offline status and last activity per identity. Pure state: deciding
who hears about a status change is the dispatcher's job.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from blogcast.config.logging import get_logger

logger = get_logger(__name__)


class PresenceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    # Returned for identities the store has never seen
    UNKNOWN = "unknown"


@dataclass(slots=True)
class IdentityPresence:
    """Presence record of one identity."""

    identity_id: str
    status: PresenceStatus = PresenceStatus.UNKNOWN
    last_activity: float | None = None
    activity: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    connection_id: str | None = None

    @property
    def is_online(self) -> bool:
        return self.status is PresenceStatus.ONLINE


class PresenceStore:
    """identity_id -> IdentityPresence."""

    def __init__(self) -> None:
        self._records: dict[str, IdentityPresence] = {}

    def set_online(
        self,
        identity_id: str,
        connection_id: str,
        timestamp: float | None = None,
    ) -> IdentityPresence:
        """Mark an identity online through `connection_id` (most recent wins)."""
        record = self._records.get(identity_id)
        if record is None:
            record = IdentityPresence(identity_id=identity_id)
            self._records[identity_id] = record
        record.status = PresenceStatus.ONLINE
        record.connection_id = connection_id
        record.last_activity = timestamp if timestamp is not None else time.time()
        return replace(record, metadata=dict(record.metadata))

    def set_offline(self, identity_id: str, timestamp: float | None = None) -> bool:
        """
        Mark an identity offline.

        Returns:
            True if the identity was online before the call.
        """
        record = self._records.get(identity_id)
        if record is None:
            return False
        was_online = record.is_online
        record.status = PresenceStatus.OFFLINE
        record.connection_id = None
        record.last_activity = timestamp if timestamp is not None else time.time()
        return was_online

    def update_activity(
        self,
        identity_id: str,
        label: str | None = None,
        metadata: dict[str, Any] | None = None,
        timestamp: float | None = None,
    ) -> None:
        """
        Record activity for an identity.

        The label and metadata are replaced only when given; last activity is
        always bumped. Unknown identities are ignored.
        """
        record = self._records.get(identity_id)
        if record is None:
            logger.debug("Activity for untracked identity ignored", identity_id=identity_id)
            return
        if label is not None:
            record.activity = label
        if metadata is not None:
            record.metadata = dict(metadata)
        record.last_activity = timestamp if timestamp is not None else time.time()

    def touch(self, identity_id: str, timestamp: float | None = None) -> None:
        self.update_activity(identity_id, timestamp=timestamp)

    def get(self, identity_id: str) -> IdentityPresence:
        """Snapshot of an identity's presence. Never raises."""
        record = self._records.get(identity_id)
        if record is None:
            return IdentityPresence(identity_id=identity_id)
        return replace(record, metadata=dict(record.metadata))

    def is_online(self, identity_id: str) -> bool:
        record = self._records.get(identity_id)
        return record is not None and record.is_online

    def online_identities(self) -> list[str]:
        return [i for i, r in self._records.items() if r.is_online]

    def set_connection(self, identity_id: str, connection_id: str) -> None:
        """Point an online identity at another of its live connections."""
        record = self._records.get(identity_id)
        if record is not None and record.is_online:
            record.connection_id = connection_id

    def forget(self, identity_id: str) -> None:
        self._records.pop(identity_id, None)

    def prune_offline(self, cutoff: float) -> list[str]:
        """
        Drop offline records whose last activity is older than `cutoff`.

        Online records are never dropped, however old. A pruned identity
        reads as unknown until it connects again.

        Returns:
            The identity ids that were removed.
        """
        stale = [
            identity_id
            for identity_id, record in self._records.items()
            if record.status is PresenceStatus.OFFLINE
            and (record.last_activity is None or record.last_activity < cutoff)
        ]
        for identity_id in stale:
            self.forget(identity_id)
        return stale

    def get_stats(self) -> dict[str, int]:
        online = sum(1 for r in self._records.values() if r.is_online)
        return {
            "tracked_identities": len(self._records),
            "online": online,
            "offline": len(self._records) - online,
        }
