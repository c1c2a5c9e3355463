"""
Typed room keys.

A room is identified by a `RoomKey` (kind + key). Transport channel names
such as ``content-42`` are derived from keys here and nowhere else, so a
channel name can never be assembled by hand with a typo or a collision
between kinds.

Channels:
- content-{id}        content viewers; also where content typing is shown
- collaboration-{id}  collaborative editing session
- chat-{id}           chat room
- analytics-{id}      analytics dashboard viewers
- feed                default shared room (typing without a room key)
- identity-{id}       personal channel of one identity
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final

FEED_CHANNEL: Final[str] = "feed"

# Typing scope used when a client sends typing events without a room key
DEFAULT_TYPING_SCOPE: Final[str] = "__feed__"


class RoomKind(str, Enum):
    """The five kinds of rooms whose membership is tracked."""

    CONTENT_VIEWERS = "content-viewers"
    TYPING = "typing"
    COLLABORATION = "collaboration"
    CHAT = "chat"
    ANALYTICS_VIEWERS = "analytics-viewers"


_CHANNEL_PREFIX: dict[RoomKind, str] = {
    RoomKind.CONTENT_VIEWERS: "content",
    RoomKind.TYPING: "content",
    RoomKind.COLLABORATION: "collaboration",
    RoomKind.CHAT: "chat",
    RoomKind.ANALYTICS_VIEWERS: "analytics",
}


@dataclass(frozen=True, slots=True)
class RoomKey:
    """
    Immutable identifier of a tracked room.

    Attributes:
        kind: The room kind.
        key: Opaque id within the kind (content id, chat id, ...).
    """

    kind: RoomKind
    key: str

    def __post_init__(self) -> None:
        if not isinstance(self.kind, RoomKind):
            raise ValueError(f"kind must be a RoomKind, got {self.kind!r}")
        if not isinstance(self.key, str) or not self.key:
            raise ValueError("key must be a non-empty string")

    @classmethod
    def content(cls, content_id: str) -> RoomKey:
        return cls(RoomKind.CONTENT_VIEWERS, content_id)

    @classmethod
    def typing(cls, room_key: str | None = None) -> RoomKey:
        return cls(RoomKind.TYPING, room_key or DEFAULT_TYPING_SCOPE)

    @classmethod
    def collaboration(cls, content_id: str) -> RoomKey:
        return cls(RoomKind.COLLABORATION, content_id)

    @classmethod
    def chat(cls, chat_id: str) -> RoomKey:
        return cls(RoomKind.CHAT, chat_id)

    @classmethod
    def analytics(cls, content_id: str) -> RoomKey:
        return cls(RoomKind.ANALYTICS_VIEWERS, content_id)

    @property
    def channel(self) -> str:
        """Transport channel where events about this room are delivered."""
        if self.kind is RoomKind.TYPING and self.key == DEFAULT_TYPING_SCOPE:
            return FEED_CHANNEL
        return f"{_CHANNEL_PREFIX[self.kind]}-{self.key}"

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.key}"


def identity_channel(identity_id: str) -> str:
    """Personal channel of an identity."""
    return f"identity-{identity_id}"
