"""
Event catalog for the realtime gateway.

Wire frames are JSON objects ``{"event": "<name>", "data": {...}}`` in both
directions. Payload field names are camelCase on the wire and snake_case in
Python; the models below accept either spelling and always emit camelCase.

Inbound payloads are validated with pydantic at the edge of the dispatcher.
Outbound payloads are built with `envelope()`, which stamps every frame
with a server-assigned ISO-8601 timestamp.
"""

from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, model_validator
from pydantic.alias_generators import to_camel

from blogcast.components.core.constants import RealtimeConstants
from blogcast.components.core.exceptions import InvalidEventError


class InboundEvent(str, Enum):
    """Events clients send to the gateway."""

    # Presence
    CONNECT_ANNOUNCE = "connect-announce"
    ACTIVITY_UPDATE = "activity-update"
    HEARTBEAT = "heartbeat"

    # Shared feed
    JOIN_FEED_ROOM = "join-feed-room"
    LEAVE_FEED_ROOM = "leave-feed-room"

    # Content viewing
    JOIN_CONTENT_ROOM = "join-content-room"
    LEAVE_CONTENT_ROOM = "leave-content-room"
    TYPING_START = "typing-start"
    TYPING_STOP = "typing-stop"
    COMMENT_TYPING = "comment-typing"
    COMMENT_STOPPED_TYPING = "comment-stopped-typing"
    COMMENT_ADDED = "comment-added"

    # Collaboration
    JOIN_COLLABORATION = "join-collaboration"
    LEAVE_COLLABORATION = "leave-collaboration"
    CONTENT_MUTATION = "content-mutation"

    # Chat
    JOIN_CHAT_ROOM = "join-chat-room"
    LEAVE_CHAT_ROOM = "leave-chat-room"
    CHAT_SEND = "chat-send"
    CHAT_TYPING = "chat-typing"
    CHAT_STOPPED_TYPING = "chat-stopped-typing"

    # Analytics and engagement
    JOIN_ANALYTICS_ROOM = "join-analytics-room"
    LEAVE_ANALYTICS_ROOM = "leave-analytics-room"
    TRACK_PAGE_VIEW = "track-page-view"
    CONTENT_LIKED = "content-liked"
    CONTENT_SHARED = "content-shared"
    POLL_VOTE = "poll-vote"

    # Direct delivery
    SEND_NOTIFICATION = "send-notification"
    MEDIA_UPLOAD_PROGRESS = "media-upload-progress"


class OutboundEvent(str, Enum):
    """Events the gateway emits to clients."""

    IDENTITY_ONLINE = "identity-online"
    IDENTITY_OFFLINE = "identity-offline"
    IDENTITY_ACTIVITY_UPDATED = "identity-activity-updated"
    HEARTBEAT_ACK = "heartbeat-ack"

    VIEWER_JOINED = "viewer-joined"
    VIEWER_LEFT = "viewer-left"
    VIEWERS_SNAPSHOT = "viewers-snapshot"
    USER_TYPING = "user-typing"
    USER_STOPPED_TYPING = "user-stopped-typing"
    USER_COMMENTING = "user-commenting"
    USER_STOPPED_COMMENTING = "user-stopped-commenting"
    NEW_COMMENT = "new-comment"

    COLLABORATOR_JOINED = "collaborator-joined"
    COLLABORATOR_LEFT = "collaborator-left"
    COLLABORATORS_SNAPSHOT = "collaborators-snapshot"
    CONTENT_UPDATED = "content-updated"

    CHAT_MEMBER_JOINED = "chat-member-joined"
    CHAT_MEMBER_LEFT = "chat-member-left"
    NEW_CHAT_MESSAGE = "new-chat-message"
    USER_TYPING_CHAT = "user-typing-chat"
    USER_STOPPED_TYPING_CHAT = "user-stopped-typing-chat"

    ANALYTICS_UPDATED = "analytics-updated"
    CONTENT_LIKE_UPDATED = "content-like-updated"
    CONTENT_SHARED = "content-shared"
    POLL_UPDATED = "poll-updated"

    NEW_NOTIFICATION = "new-notification"
    UPLOAD_PROGRESS = "upload-progress"


VALID_INBOUND_EVENTS: frozenset[str] = frozenset(e.value for e in InboundEvent)


# =============================================================================
# Field types
# =============================================================================

Identifier = Annotated[
    str,
    StringConstraints(strip_whitespace=True, min_length=1, max_length=RealtimeConstants.MAX_ID_LENGTH),
]
DisplayName = Annotated[
    str,
    StringConstraints(strip_whitespace=True, min_length=1, max_length=RealtimeConstants.MAX_DISPLAY_NAME_LENGTH),
]
Label = Annotated[
    str,
    StringConstraints(strip_whitespace=True, max_length=RealtimeConstants.MAX_ACTION_LENGTH),
]


class WireModel(BaseModel):
    """Base for inbound payloads: camelCase on the wire, extra keys ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
        # Numeric ids from clients are accepted and treated as strings
        coerce_numbers_to_str=True,
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class EmptyPayload(WireModel):
    pass


class ConnectAnnouncePayload(WireModel):
    identity_id: Identifier
    display_name: DisplayName


class IdentityPayload(WireModel):
    identity_id: Identifier


class ActivityPayload(WireModel):
    identity_id: Identifier
    activity: Label
    metadata: dict[str, Any] | None = None


class ContentRoomPayload(WireModel):
    """Join/leave for content viewer and analytics rooms."""

    content_id: Identifier
    identity_id: Identifier


class TypingStartPayload(WireModel):
    room_key: Identifier | None = None
    identity_id: Identifier
    display_name: DisplayName
    action: Label = "typing"


class TypingStopPayload(WireModel):
    room_key: Identifier | None = None
    identity_id: Identifier


class CommentTypingPayload(WireModel):
    content_id: Identifier
    identity_id: Identifier
    display_name: DisplayName | None = None


class CommentAddedPayload(WireModel):
    content_id: Identifier
    identity_id: Identifier
    content: Annotated[
        str,
        StringConstraints(min_length=1, max_length=RealtimeConstants.MAX_COMMENT_LENGTH),
    ]
    parent_comment_id: Identifier | None = None


class CollaborationPayload(WireModel):
    content_id: Identifier
    identity_id: Identifier
    display_name: DisplayName | None = None


class ContentMutationPayload(WireModel):
    """Collaborative edit, relayed as-is. No ordering is imposed."""

    content_id: Identifier
    identity_id: Identifier
    operation: Label = Field(min_length=1)
    position: Any = None
    payload: Any = None


class ChatRoomPayload(WireModel):
    chat_id: Identifier

    @model_validator(mode="before")
    @classmethod
    def accept_bare_chat_id(cls, data: Any) -> Any:
        # Older clients send the chat id itself as the payload
        if isinstance(data, (str, int)) and not isinstance(data, bool):
            return {"chatId": data}
        return data


class ChatSendPayload(WireModel):
    chat_id: Identifier
    sender_id: Identifier
    content: Annotated[
        str,
        StringConstraints(min_length=1, max_length=RealtimeConstants.MAX_CHAT_MESSAGE_LENGTH),
    ]
    message_type: Label = "text"
    media_url: str | None = None


class ChatTypingPayload(WireModel):
    chat_id: Identifier
    identity_id: Identifier
    display_name: DisplayName | None = None


class PageViewPayload(WireModel):
    content_id: Identifier
    identity_id: Identifier | None = None
    duration: float | None = Field(default=None, ge=0)
    scroll_depth: float | None = Field(default=None, ge=0, le=100)
    referrer: str | None = None


class ContentLikedPayload(WireModel):
    content_id: Identifier
    identity_id: Identifier
    is_liked: bool


class ContentSharedPayload(WireModel):
    content_id: Identifier
    identity_id: Identifier
    platform: Label | None = None


class PollVotePayload(WireModel):
    poll_id: Identifier
    content_id: Identifier
    identity_id: Identifier
    option_texts: list[str] = Field(default_factory=list)


class NotificationPayload(WireModel):
    recipient_id: Identifier
    type: Label = Field(min_length=1)
    message: str = Field(min_length=1)
    title: str | None = None
    sender_id: Identifier | None = None
    content_id: Identifier | None = None


class UploadProgressPayload(WireModel):
    upload_id: Identifier
    progress: float = Field(ge=0, le=100)
    identity_id: Identifier


INBOUND_PAYLOADS: dict[InboundEvent, type[WireModel]] = {
    InboundEvent.CONNECT_ANNOUNCE: ConnectAnnouncePayload,
    InboundEvent.ACTIVITY_UPDATE: ActivityPayload,
    InboundEvent.HEARTBEAT: IdentityPayload,
    InboundEvent.JOIN_FEED_ROOM: EmptyPayload,
    InboundEvent.LEAVE_FEED_ROOM: EmptyPayload,
    InboundEvent.JOIN_CONTENT_ROOM: ContentRoomPayload,
    InboundEvent.LEAVE_CONTENT_ROOM: ContentRoomPayload,
    InboundEvent.TYPING_START: TypingStartPayload,
    InboundEvent.TYPING_STOP: TypingStopPayload,
    InboundEvent.COMMENT_TYPING: CommentTypingPayload,
    InboundEvent.COMMENT_STOPPED_TYPING: CommentTypingPayload,
    InboundEvent.COMMENT_ADDED: CommentAddedPayload,
    InboundEvent.JOIN_COLLABORATION: CollaborationPayload,
    InboundEvent.LEAVE_COLLABORATION: CollaborationPayload,
    InboundEvent.CONTENT_MUTATION: ContentMutationPayload,
    InboundEvent.JOIN_CHAT_ROOM: ChatRoomPayload,
    InboundEvent.LEAVE_CHAT_ROOM: ChatRoomPayload,
    InboundEvent.CHAT_SEND: ChatSendPayload,
    InboundEvent.CHAT_TYPING: ChatTypingPayload,
    InboundEvent.CHAT_STOPPED_TYPING: ChatTypingPayload,
    InboundEvent.JOIN_ANALYTICS_ROOM: ContentRoomPayload,
    InboundEvent.LEAVE_ANALYTICS_ROOM: ContentRoomPayload,
    InboundEvent.TRACK_PAGE_VIEW: PageViewPayload,
    InboundEvent.CONTENT_LIKED: ContentLikedPayload,
    InboundEvent.CONTENT_SHARED: ContentSharedPayload,
    InboundEvent.POLL_VOTE: PollVotePayload,
    InboundEvent.SEND_NOTIFICATION: NotificationPayload,
    InboundEvent.MEDIA_UPLOAD_PROGRESS: UploadProgressPayload,
}


# =============================================================================
# Frames
# =============================================================================


def parse_frame(raw: str | bytes | dict[str, Any]) -> tuple[InboundEvent, Any]:
    """
    Split a raw frame into its event name and unvalidated data.

    Raises:
        InvalidEventError: Not JSON, not an object, or an unknown event name.
    """
    if isinstance(raw, (str, bytes)):
        try:
            frame = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidEventError("frame is not valid JSON") from e
    else:
        frame = raw

    if not isinstance(frame, dict):
        raise InvalidEventError("frame must be a JSON object")

    name = frame.get("event")
    if not isinstance(name, str) or not name:
        raise InvalidEventError("frame has no event name")
    if len(name) > RealtimeConstants.MAX_EVENT_NAME_LENGTH or name not in VALID_INBOUND_EVENTS:
        raise InvalidEventError("unknown event", event=name[: RealtimeConstants.MAX_EVENT_NAME_LENGTH])

    data = frame.get("data")
    return InboundEvent(name), ({} if data is None else data)


def iso_timestamp(now: float | None = None) -> str:
    """ISO-8601 UTC timestamp for an epoch value (default: now)."""
    return datetime.fromtimestamp(
        now if now is not None else time.time(), tz=timezone.utc
    ).isoformat()


def envelope(event: OutboundEvent, now: float | None = None, **fields: Any) -> dict[str, Any]:
    """
    Build an outbound frame.

    Keyword names are converted to camelCase; None values are kept so
    clients see every documented key. A server timestamp is always added.

    >>> envelope(OutboundEvent.VIEWER_LEFT, content_id="c1", viewer_count=0)["data"]["viewerCount"]
    0
    """
    data = {to_camel(name): value for name, value in fields.items()}
    data["timestamp"] = iso_timestamp(now)
    return {"event": event.value, "data": data}
