"""
Connection Registry - Session metadata for every live transport connection.

Indices maintained:
- connections: connection_id -> Connection
- by_channel: channel name -> set[connection_id]
- by_identity: identity_id -> set[connection_id]

Unknown connection ids are tolerated everywhere: a late event for a
connection that was already reaped is a no-op, not an error.

All mutations are synchronous, so each one completes atomically with respect
to other handlers on the event loop.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from blogcast.components.rooms.keys import RoomKey
from blogcast.config.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class Connection:
    """
    Server-side session state for one transport connection.

    Attributes:
        connection_id: Opaque id assigned by the transport.
        identity_id: Announced identity, None until `connect-announce`.
        display_name: Announced display name.
        connected_at: Epoch seconds when the connection was registered.
        last_activity: Epoch seconds of the last inbound event.
        channels: Channel names this connection has joined.
        focus: Content id currently viewed or edited.
        typing_target: Room the connection is typing in, if any.
        activity: Free-form activity label ("reading", "writing", ...).
    """

    connection_id: str
    identity_id: str | None = None
    display_name: str | None = None
    connected_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    channels: set[str] = field(default_factory=set)
    focus: str | None = None
    typing_target: RoomKey | None = None
    activity: str | None = None

    @property
    def is_typing(self) -> bool:
        return self.typing_target is not None

    def idle_for(self, now: float | None = None) -> float:
        """Seconds since the last inbound event."""
        return (now if now is not None else time.time()) - self.last_activity


class ConnectionRegistry:
    """
    Owns every `Connection` and the channel and identity indices over them.

    Read-only properties return immutable views; query methods return
    copies so callers can iterate while the registry changes.
    """

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self._by_channel: dict[str, set[str]] = {}
        self._by_identity: dict[str, set[str]] = {}

    # =========================================================================
    # Immutable views
    # =========================================================================

    @property
    def connections(self) -> MappingProxyType[str, Connection]:
        return MappingProxyType(self._connections)

    @property
    def by_channel(self) -> MappingProxyType[str, set[str]]:
        return MappingProxyType(self._by_channel)

    @property
    def by_identity(self) -> MappingProxyType[str, set[str]]:
        return MappingProxyType(self._by_identity)

    # =========================================================================
    # Mutations
    # =========================================================================

    def register(
        self,
        connection_id: str,
        identity_id: str | None = None,
        display_name: str | None = None,
        timestamp: float | None = None,
    ) -> Connection:
        """
        Create a connection entry, or update identity fields of an existing one.

        Repeated announcements are idempotent: joined channels and the
        connect time survive, only identity fields and last activity change.
        """
        now = timestamp if timestamp is not None else time.time()
        conn = self._connections.get(connection_id)
        if conn is None:
            conn = Connection(
                connection_id=connection_id,
                connected_at=now,
                last_activity=now,
            )
            self._connections[connection_id] = conn

        if identity_id is not None and identity_id != conn.identity_id:
            if conn.identity_id is not None:
                self._discard(self._by_identity, conn.identity_id, connection_id)
                logger.info(
                    "Connection re-announced with a different identity",
                    connection_id=connection_id,
                    previous_identity=conn.identity_id,
                    identity_id=identity_id,
                )
            conn.identity_id = identity_id
            self._by_identity.setdefault(identity_id, set()).add(connection_id)

        if display_name is not None:
            conn.display_name = display_name
        conn.last_activity = now
        return conn

    def touch(self, connection_id: str, timestamp: float | None = None) -> None:
        """Update last activity only."""
        conn = self._connections.get(connection_id)
        if conn is not None:
            conn.last_activity = timestamp if timestamp is not None else time.time()

    def add_room(self, connection_id: str, channel: str) -> bool:
        """
        Record that a connection joined a channel.

        Returns:
            True if the connection exists (whether or not it was already in).
        """
        conn = self._connections.get(connection_id)
        if conn is None:
            return False
        conn.channels.add(channel)
        self._by_channel.setdefault(channel, set()).add(connection_id)
        return True

    def remove_room(self, connection_id: str, channel: str) -> None:
        conn = self._connections.get(connection_id)
        if conn is None:
            return
        conn.channels.discard(channel)
        self._discard(self._by_channel, channel, connection_id)

    def set_focus(self, connection_id: str, content_id: str | None) -> None:
        conn = self._connections.get(connection_id)
        if conn is not None:
            conn.focus = content_id

    def set_typing(self, connection_id: str, target: RoomKey | None) -> None:
        conn = self._connections.get(connection_id)
        if conn is not None:
            conn.typing_target = target

    def set_activity(self, connection_id: str, label: str | None) -> None:
        conn = self._connections.get(connection_id)
        if conn is not None:
            conn.activity = label

    def remove(self, connection_id: str) -> Connection | None:
        """
        Delete a connection and drop it from every index.

        Returns:
            The removed Connection, or None if the id was unknown (already
            removed by the reaper or a previous disconnect).
        """
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return None
        for channel in conn.channels:
            self._discard(self._by_channel, channel, connection_id)
        if conn.identity_id is not None:
            self._discard(self._by_identity, conn.identity_id, connection_id)
        return conn

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def connections_in(self, channel: str) -> set[str]:
        """Connection ids joined to a channel (copy)."""
        return set(self._by_channel.get(channel, ()))

    def connections_for(self, identity_id: str) -> set[str]:
        """Connection ids announced as an identity (copy)."""
        return set(self._by_identity.get(identity_id, ()))

    def identity_has_other_connections(self, identity_id: str, excluding: str) -> bool:
        """True if the identity has a live connection other than `excluding`."""
        return any(cid != excluding for cid in self._by_identity.get(identity_id, ()))

    def idle_connections(self, cutoff: float) -> list[Connection]:
        """Connections whose last activity is older than `cutoff` (epoch seconds)."""
        return [c for c in self._connections.values() if c.last_activity < cutoff]

    def count(self) -> int:
        return len(self._connections)

    def get_stats(self) -> dict[str, Any]:
        return {
            "connections": len(self._connections),
            "identities": len(self._by_identity),
            "channels": len(self._by_channel),
            "anonymous_connections": sum(
                1 for c in self._connections.values() if c.identity_id is None
            ),
        }

    @staticmethod
    def _discard(index: dict[str, set[str]], key: str, connection_id: str) -> None:
        members = index.get(key)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del index[key]
