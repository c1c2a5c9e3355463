"""
Room keys and membership tracking.
"""

from blogcast.components.rooms.keys import (
    RoomKind,
    RoomKey,
    FEED_CHANNEL,
    DEFAULT_TYPING_SCOPE,
    identity_channel,
)
from blogcast.components.rooms.tracker import (
    RoomMembershipTracker,
    JoinResult,
    RoomChange,
    PrunedMember,
    TypingEntry,
)

__all__ = [
    "RoomKind",
    "RoomKey",
    "FEED_CHANNEL",
    "DEFAULT_TYPING_SCOPE",
    "identity_channel",
    "RoomMembershipTracker",
    "JoinResult",
    "RoomChange",
    "PrunedMember",
    "TypingEntry",
]
