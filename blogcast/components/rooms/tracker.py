"""
Room Membership Tracker.

Keeps the member set of every tracked room independently of the transport,
so counts and member lists can be read synchronously (the joining client
gets the current viewer list in the same handler that registered it).

Indices maintained:
- rooms: RoomKey -> {identity_id: payload} (insertion ordered)
- by_identity: identity_id -> set[RoomKey] (reverse index for disconnects)

Every public method is synchronous and completes without yielding to the
event loop, so each call is atomic with respect to other handlers.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable

from blogcast.components.rooms.keys import RoomKey, RoomKind
from blogcast.config.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class JoinResult:
    """Outcome of a join: the new count and the full member list."""

    count: int
    members: tuple[str, ...]
    is_new_member: bool


@dataclass(frozen=True, slots=True)
class RoomChange:
    """A room whose membership changed, with its count after the change."""

    room: RoomKey
    count: int


@dataclass(frozen=True, slots=True)
class TypingEntry:
    """Payload stored for each member of a `typing` room."""

    display_name: str
    action: str
    timestamp: float

    def is_older_than(self, cutoff: float) -> bool:
        return self.timestamp < cutoff


@dataclass(frozen=True, slots=True)
class PrunedMember:
    """An entry removed by `prune`."""

    room: RoomKey
    identity_id: str
    payload: Any
    count: int


class RoomMembershipTracker:
    """
    Tracks named membership sets for the five room kinds.

    Rooms are created lazily on first join and deleted as soon as they
    become empty, so no empty room is ever retained.
    """

    def __init__(self) -> None:
        self._rooms: dict[RoomKey, dict[str, Any]] = {}
        self._by_identity: dict[str, set[RoomKey]] = {}

    @property
    def rooms(self) -> MappingProxyType[RoomKey, dict[str, Any]]:
        """Read-only view of all rooms."""
        return MappingProxyType(self._rooms)

    def join(
        self,
        kind: RoomKind,
        key: str,
        identity_id: str,
        payload: Any = None,
    ) -> JoinResult:
        """
        Add an identity to a room.

        Joining a room the identity is already in refreshes its payload and
        leaves the count unchanged.

        Returns:
            JoinResult with the new member count and the full member list.
        """
        room = RoomKey(kind, key)
        members = self._rooms.setdefault(room, {})
        is_new_member = identity_id not in members
        members[identity_id] = payload
        self._by_identity.setdefault(identity_id, set()).add(room)
        return JoinResult(
            count=len(members),
            members=tuple(members),
            is_new_member=is_new_member,
        )

    def leave(self, kind: RoomKind, key: str, identity_id: str) -> int:
        """
        Remove an identity from a room.

        Leaving a room the identity is not in is a no-op.

        Returns:
            The member count after removal (0 when the room was deleted).
        """
        room = RoomKey(kind, key)
        members = self._rooms.get(room)
        if members is None:
            return 0
        members.pop(identity_id, None)
        self._unindex(identity_id, room)
        if not members:
            del self._rooms[room]
            return 0
        return len(members)

    def members_of(self, kind: RoomKind, key: str) -> tuple[str, ...]:
        """Snapshot of a room's members. Empty for unknown rooms."""
        return tuple(self._rooms.get(RoomKey(kind, key), ()))

    def count_of(self, kind: RoomKind, key: str) -> int:
        """Current member count. 0 for unknown rooms."""
        return len(self._rooms.get(RoomKey(kind, key), ()))

    def payloads_of(self, kind: RoomKind, key: str) -> dict[str, Any]:
        """Snapshot of identity -> payload for a room."""
        return dict(self._rooms.get(RoomKey(kind, key), {}))

    def is_member(self, kind: RoomKind, key: str, identity_id: str) -> bool:
        return identity_id in self._rooms.get(RoomKey(kind, key), ())

    def rooms_of(self, identity_id: str) -> frozenset[RoomKey]:
        """All rooms an identity currently belongs to."""
        return frozenset(self._by_identity.get(identity_id, ()))

    def remove_identity_from_all(self, identity_id: str) -> list[RoomChange]:
        """
        Remove an identity from every room it belongs to.

        Returns:
            One RoomChange per room the identity was in, with the count left
            behind. Empty when the identity was in no room.
        """
        rooms = self._by_identity.pop(identity_id, set())
        changes: list[RoomChange] = []
        for room in sorted(rooms, key=str):
            members = self._rooms.get(room)
            if members is None or identity_id not in members:
                continue
            del members[identity_id]
            if not members:
                del self._rooms[room]
            changes.append(RoomChange(room=room, count=len(members)))
        return changes

    def remove_identity_from(
        self,
        identity_id: str,
        rooms: set[RoomKey] | frozenset[RoomKey],
    ) -> list[RoomChange]:
        """Remove an identity from the given rooms only."""
        changes: list[RoomChange] = []
        for room in sorted(rooms, key=str):
            if not self.is_member(room.kind, room.key, identity_id):
                continue
            count = self.leave(room.kind, room.key, identity_id)
            changes.append(RoomChange(room=room, count=count))
        return changes

    def prune(
        self,
        kind: RoomKind,
        predicate: Callable[[str, Any], bool],
    ) -> list[PrunedMember]:
        """
        Remove every member of rooms of `kind` whose (identity, payload)
        matches the predicate.

        Used by the typing sweep to expire entries by timestamp.
        """
        pruned: list[PrunedMember] = []
        for room in [r for r in self._rooms if r.kind is kind]:
            members = self._rooms[room]
            expired = [
                (identity_id, payload)
                for identity_id, payload in members.items()
                if predicate(identity_id, payload)
            ]
            for identity_id, payload in expired:
                del members[identity_id]
                self._unindex(identity_id, room)
                pruned.append(PrunedMember(room, identity_id, payload, len(members)))
            if not members:
                del self._rooms[room]
        if pruned:
            logger.debug("Pruned room members", kind=kind.value, count=len(pruned))
        return pruned

    def room_count(self, kind: RoomKind | None = None) -> int:
        if kind is None:
            return len(self._rooms)
        return sum(1 for room in self._rooms if room.kind is kind)

    def get_stats(self) -> dict[str, Any]:
        return {
            "rooms_total": len(self._rooms),
            "tracked_identities": len(self._by_identity),
            "rooms_by_kind": {kind.value: self.room_count(kind) for kind in RoomKind},
        }

    def _unindex(self, identity_id: str, room: RoomKey) -> None:
        rooms = self._by_identity.get(identity_id)
        if rooms is None:
            return
        rooms.discard(room)
        if not rooms:
            del self._by_identity[identity_id]
