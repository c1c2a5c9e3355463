"""
Event Dispatcher - the realtime protocol core.

For every inbound event the dispatcher:
1. validates the payload (invalid events are dropped with a warning)
2. mutates registry, tracker and presence state synchronously
3. spawns persistence side effects without awaiting them
4. fans out outbound events with the right exclusion rules

Steps 1 and 2 never await, so the state change of one event is atomic
with respect to every other connection's handlers and the reaper. Sends
in step 4 may interleave with other handlers; recipients are resolved
before the first send.

Identity binding: the first identity id a connection states (announce or
any event carrying one) becomes the connection's identity, and the
connection joins that identity's personal channel. Events that claim a
different identity on the same connection are dropped.
"""

from __future__ import annotations

import time
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from blogcast.components.connection.registry import Connection, ConnectionRegistry
from blogcast.components.core.context import sanitize_log_data
from blogcast.components.core.exceptions import InvalidEventError
from blogcast.components.events.types import (
    INBOUND_PAYLOADS,
    ActivityPayload,
    ChatRoomPayload,
    ChatSendPayload,
    ChatTypingPayload,
    CollaborationPayload,
    CommentAddedPayload,
    CommentTypingPayload,
    ConnectAnnouncePayload,
    ContentLikedPayload,
    ContentMutationPayload,
    ContentRoomPayload,
    ContentSharedPayload,
    IdentityPayload,
    InboundEvent,
    NotificationPayload,
    OutboundEvent,
    PageViewPayload,
    PollVotePayload,
    TypingStartPayload,
    TypingStopPayload,
    UploadProgressPayload,
    WireModel,
    envelope,
    iso_timestamp,
    parse_frame,
)
from blogcast.components.metrics.collector import MetricsCollector
from blogcast.components.presence.store import PresenceStatus, PresenceStore
from blogcast.components.rooms.keys import (
    DEFAULT_TYPING_SCOPE,
    FEED_CHANNEL,
    RoomKey,
    RoomKind,
    identity_channel,
)
from blogcast.components.rooms.tracker import (
    PrunedMember,
    RoomChange,
    RoomMembershipTracker,
    TypingEntry,
)
from blogcast.core.broadcaster import Broadcaster
from blogcast.core.tasks import BackgroundTasks
from blogcast.config.logging import get_logger
from blogcast.persistence.base import PersistenceService

logger = get_logger(__name__)

Handler = Callable[[Connection, Any], Awaitable[None]]


class EventDispatcher:
    """
    Validates inbound events, applies them to the stores and fans out.

    All collaborators are injected so tests can build a dispatcher around
    fresh stores, a fake transport and a fake clock.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        tracker: RoomMembershipTracker,
        presence: PresenceStore,
        broadcaster: Broadcaster,
        persistence: PersistenceService,
        tasks: BackgroundTasks,
        metrics: MetricsCollector,
        offline_on_any_disconnect: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.tracker = tracker
        self.presence = presence
        self.broadcaster = broadcaster
        self.persistence = persistence
        self.tasks = tasks
        self.metrics = metrics
        self._offline_on_any_disconnect = offline_on_any_disconnect
        self._clock = clock

        self._handlers: dict[InboundEvent, Handler] = {
            InboundEvent.CONNECT_ANNOUNCE: self._on_connect_announce,
            InboundEvent.ACTIVITY_UPDATE: self._on_activity_update,
            InboundEvent.HEARTBEAT: self._on_heartbeat,
            InboundEvent.JOIN_FEED_ROOM: self._on_join_feed_room,
            InboundEvent.LEAVE_FEED_ROOM: self._on_leave_feed_room,
            InboundEvent.JOIN_CONTENT_ROOM: self._on_join_content_room,
            InboundEvent.LEAVE_CONTENT_ROOM: self._on_leave_content_room,
            InboundEvent.TYPING_START: self._on_typing_start,
            InboundEvent.TYPING_STOP: self._on_typing_stop,
            InboundEvent.COMMENT_TYPING: self._on_comment_typing,
            InboundEvent.COMMENT_STOPPED_TYPING: self._on_comment_stopped_typing,
            InboundEvent.COMMENT_ADDED: self._on_comment_added,
            InboundEvent.JOIN_COLLABORATION: self._on_join_collaboration,
            InboundEvent.LEAVE_COLLABORATION: self._on_leave_collaboration,
            InboundEvent.CONTENT_MUTATION: self._on_content_mutation,
            InboundEvent.JOIN_CHAT_ROOM: self._on_join_chat_room,
            InboundEvent.LEAVE_CHAT_ROOM: self._on_leave_chat_room,
            InboundEvent.CHAT_SEND: self._on_chat_send,
            InboundEvent.CHAT_TYPING: self._on_chat_typing,
            InboundEvent.CHAT_STOPPED_TYPING: self._on_chat_stopped_typing,
            InboundEvent.JOIN_ANALYTICS_ROOM: self._on_join_analytics_room,
            InboundEvent.LEAVE_ANALYTICS_ROOM: self._on_leave_analytics_room,
            InboundEvent.TRACK_PAGE_VIEW: self._on_track_page_view,
            InboundEvent.CONTENT_LIKED: self._on_content_liked,
            InboundEvent.CONTENT_SHARED: self._on_content_shared,
            InboundEvent.POLL_VOTE: self._on_poll_vote,
            InboundEvent.SEND_NOTIFICATION: self._on_send_notification,
            InboundEvent.MEDIA_UPLOAD_PROGRESS: self._on_media_upload_progress,
        }

    # =========================================================================
    # Transport lifecycle
    # =========================================================================

    def connect(self, connection_id: str) -> Connection:
        """Register a freshly accepted transport connection."""
        return self.registry.register(connection_id, timestamp=self._clock())

    async def handle_frame(self, connection_id: str, raw: str | bytes | dict[str, Any]) -> bool:
        """Parse a raw frame and dispatch it. Never raises for bad input."""
        try:
            event, data = parse_frame(raw)
        except InvalidEventError as e:
            self.metrics.events.unknown += 1
            logger.warning(
                "Dropping unreadable frame",
                connection_id=connection_id,
                reason=e.reason,
                event_name=sanitize_log_data(e.event) if e.event else None,
            )
            return False
        return await self.dispatch(connection_id, event, data)

    async def dispatch(self, connection_id: str, event: InboundEvent | str, data: Any) -> bool:
        """
        Apply one inbound event.

        Returns:
            True if the event was handled, False if it was dropped.
        """
        try:
            event = InboundEvent(event)
        except ValueError:
            self.metrics.events.unknown += 1
            logger.warning("Dropping unknown event", event_name=sanitize_log_data(event))
            return False

        conn = self.registry.get(connection_id)
        if conn is None:
            logger.debug("Event for unknown connection ignored", connection_id=connection_id, event_name=event.value)
            return False

        try:
            payload = INBOUND_PAYLOADS[event].model_validate(data)
        except ValidationError as e:
            self.metrics.events.invalid += 1
            logger.warning(
                "Dropping event with invalid payload",
                connection_id=connection_id,
                event_name=event.value,
                errors=[
                    {"field": ".".join(str(p) for p in err["loc"]), "type": err["type"]}
                    for err in e.errors()
                ],
            )
            return False

        self.registry.touch(connection_id, self._clock())
        try:
            await self._handlers[event](conn, payload)
        except InvalidEventError as e:
            self.metrics.events.invalid += 1
            logger.warning(
                "Dropping event",
                connection_id=connection_id,
                event_name=event.value,
                reason=e.reason,
            )
            return False
        except Exception as e:
            self.metrics.events.handler_errors += 1
            logger.error(
                "Event handler failed",
                connection_id=connection_id,
                event_name=event.value,
                error=str(e),
                exc_info=True,
            )
            return False

        self.metrics.events.processed += 1
        return True

    async def disconnect(self, connection_id: str, reason: str = "disconnect") -> bool:
        """
        Remove a connection and reconcile everything that depended on it.

        Shared by the transport disconnect path and the idle reaper. A
        second call for the same connection is a no-op.

        Returns:
            True if the connection existed.
        """
        conn = self.registry.remove(connection_id)
        if conn is None:
            return False

        identity_id = conn.identity_id
        if identity_id is None:
            logger.debug("Anonymous connection removed", connection_id=connection_id, reason=reason)
            return True

        others = self.registry.connections_for(identity_id)
        if others and not self._offline_on_any_disconnect:
            changes = self.tracker.remove_identity_from(
                identity_id, self._rooms_released_by(conn, others)
            )
            if self.presence.get(identity_id).connection_id == connection_id:
                self.presence.set_connection(identity_id, self._latest_connection(others))
            went_offline = False
        else:
            changes = self.tracker.remove_identity_from_all(identity_id)
            for other in others:
                self.registry.set_typing(other, None)
            went_offline = self.presence.set_offline(identity_id, self._clock())

        logger.info(
            "Connection removed",
            connection_id=connection_id,
            identity_id=identity_id,
            reason=reason,
            rooms_left=len(changes),
            other_connections=len(others),
            went_offline=went_offline,
        )

        for change in changes:
            await self._emit_member_left(change, identity_id, conn.display_name)

        if went_offline:
            self._notify_followers(
                identity_id,
                self._frame(
                    OutboundEvent.IDENTITY_OFFLINE,
                    identity_id=identity_id,
                    display_name=conn.display_name,
                ),
            )
        return True

    def _rooms_released_by(self, conn: Connection, others: set[str]) -> set[RoomKey]:
        """
        Rooms the identity must leave when `conn` goes but `others` stay.

        A room is kept while any remaining connection of the identity is
        still joined to its channel. The typing entry is kept while another
        connection is typing in the same room.
        """
        held: set[str] = set()
        typing_elsewhere: set[RoomKey] = set()
        for other_id in others:
            other = self.registry.get(other_id)
            if other is not None:
                held |= other.channels
                if other.typing_target is not None:
                    typing_elsewhere.add(other.typing_target)

        released = {
            room
            for room in self.tracker.rooms_of(conn.identity_id)
            if room.kind is not RoomKind.TYPING and room.channel not in held
        }
        if conn.typing_target is not None and conn.typing_target not in typing_elsewhere:
            released.add(conn.typing_target)
        return released

    def _latest_connection(self, connection_ids: set[str]) -> str:
        """The most recently active of `connection_ids`."""
        return max(
            connection_ids,
            key=lambda cid: (getattr(self.registry.get(cid), "last_activity", 0.0), cid),
        )

    # =========================================================================
    # Typing expiry
    # =========================================================================

    async def expire_typing(self, cutoff: float) -> int:
        """
        Remove typing entries last refreshed before `cutoff` (epoch seconds).

        Each removed entry produces `user-stopped-typing` on its channel.

        Returns:
            Number of entries removed.
        """
        pruned = self.tracker.prune(
            RoomKind.TYPING,
            lambda _identity, entry: isinstance(entry, TypingEntry) and entry.is_older_than(cutoff),
        )
        for member in pruned:
            self._clear_typing_target(member.identity_id, member.room)
        self.metrics.state.typing_expired += len(pruned)
        for member in pruned:
            await self._emit_stopped_typing(member)
        return len(pruned)

    def _clear_typing_target(self, identity_id: str, room: RoomKey) -> None:
        for cid in self.registry.connections_for(identity_id):
            conn = self.registry.get(cid)
            if conn is not None and conn.typing_target == room:
                self.registry.set_typing(cid, None)

    async def _emit_stopped_typing(self, member: PrunedMember) -> None:
        await self.broadcaster.to_channel(
            member.room.channel,
            self._frame(
                OutboundEvent.USER_STOPPED_TYPING,
                room_key=_public_room_key(member.room),
                identity_id=member.identity_id,
            ),
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _now(self) -> float:
        return self._clock()

    def _frame(self, event: OutboundEvent, **fields: Any) -> dict[str, Any]:
        return envelope(event, now=self._clock(), **fields)

    def _bind_identity(self, conn: Connection, identity_id: str) -> str:
        """
        Bind `identity_id` to an unannounced connection, or check it matches.

        Raises:
            InvalidEventError: The connection already speaks for another identity.
        """
        if conn.identity_id is None:
            self.registry.register(conn.connection_id, identity_id=identity_id, timestamp=self._clock())
            self.registry.add_room(conn.connection_id, identity_channel(identity_id))
            return identity_id
        if conn.identity_id != identity_id:
            raise InvalidEventError("identity does not match the connection's identity")
        return identity_id

    def _identity_still_in(self, identity_id: str, channel: str, leaving: str) -> bool:
        """True if another connection of the identity is still joined to `channel`."""
        for cid in self.registry.connections_for(identity_id):
            if cid == leaving:
                continue
            other = self.registry.get(cid)
            if other is not None and channel in other.channels:
                return True
        return False

    def _spawn(self, coro: Awaitable[Any], name: str) -> None:
        self.tasks.spawn(coro, name=name)

    def _notify_followers(self, identity_id: str, frame: dict[str, Any]) -> None:
        """Deliver `frame` to each follower's personal channel in the background."""
        self._spawn(
            self._fan_out_to_followers(identity_id, frame),
            name=f"followers:{frame['event']}:{identity_id}",
        )

    async def _fan_out_to_followers(self, identity_id: str, frame: dict[str, Any]) -> None:
        follower_ids = await self.persistence.fetch_follower_ids(identity_id)
        if follower_ids:
            await self.broadcaster.to_identities(follower_ids, frame)

    def _analytics_snapshot(self, content_id: str) -> dict[str, Any]:
        return {
            "content_id": content_id,
            "current_viewers": self.tracker.count_of(RoomKind.CONTENT_VIEWERS, content_id),
            "active_collaborators": self.tracker.count_of(RoomKind.COLLABORATION, content_id),
            "active_typers": self.tracker.count_of(RoomKind.TYPING, content_id),
            "dashboard_viewers": self.tracker.count_of(RoomKind.ANALYTICS_VIEWERS, content_id),
        }

    async def _push_analytics(self, content_id: str, exclude: str | None = None) -> None:
        """Refresh open analytics dashboards for a piece of content."""
        channel = RoomKey.analytics(content_id).channel
        if not self.registry.connections_in(channel):
            return
        await self.broadcaster.to_channel(
            channel,
            self._frame(OutboundEvent.ANALYTICS_UPDATED, **self._analytics_snapshot(content_id)),
            exclude=exclude,
        )

    async def _emit_member_left(self, change: RoomChange, identity_id: str, display_name: str | None) -> None:
        """Emit the "member left" event that belongs to the room's kind."""
        room = change.room
        if room.kind is RoomKind.CONTENT_VIEWERS:
            frame = self._frame(
                OutboundEvent.VIEWER_LEFT,
                content_id=room.key,
                identity_id=identity_id,
                viewer_count=change.count,
            )
        elif room.kind is RoomKind.TYPING:
            frame = self._frame(
                OutboundEvent.USER_STOPPED_TYPING,
                room_key=_public_room_key(room),
                identity_id=identity_id,
            )
        elif room.kind is RoomKind.COLLABORATION:
            frame = self._frame(
                OutboundEvent.COLLABORATOR_LEFT,
                content_id=room.key,
                identity_id=identity_id,
                display_name=display_name,
                collaborator_count=change.count,
            )
        elif room.kind is RoomKind.CHAT:
            frame = self._frame(
                OutboundEvent.CHAT_MEMBER_LEFT,
                chat_id=room.key,
                identity_id=identity_id,
                member_count=change.count,
            )
        else:
            frame = self._frame(OutboundEvent.ANALYTICS_UPDATED, **self._analytics_snapshot(room.key))

        await self.broadcaster.to_channel(room.channel, frame)
        if room.kind in (RoomKind.CONTENT_VIEWERS, RoomKind.COLLABORATION):
            await self._push_analytics(room.key)

    # =========================================================================
    # Presence
    # =========================================================================

    async def _on_connect_announce(self, conn: Connection, p: ConnectAnnouncePayload) -> None:
        if conn.identity_id is not None and conn.identity_id != p.identity_id:
            raise InvalidEventError("connection already announced as another identity")

        now = self._now()
        self.registry.register(conn.connection_id, p.identity_id, p.display_name, timestamp=now)
        self.registry.add_room(conn.connection_id, identity_channel(p.identity_id))
        was_online = self.presence.is_online(p.identity_id)
        self.presence.set_online(p.identity_id, conn.connection_id, timestamp=now)

        logger.info(
            "Identity announced",
            connection_id=conn.connection_id,
            identity_id=p.identity_id,
            display_name=sanitize_log_data(p.display_name),
            was_online=was_online,
        )
        if not was_online:
            self._notify_followers(
                p.identity_id,
                self._frame(
                    OutboundEvent.IDENTITY_ONLINE,
                    identity_id=p.identity_id,
                    display_name=p.display_name,
                ),
            )

    async def _on_activity_update(self, conn: Connection, p: ActivityPayload) -> None:
        identity_id = self._bind_identity(conn, p.identity_id)
        self.registry.set_activity(conn.connection_id, p.activity)
        self.presence.update_activity(identity_id, p.activity, p.metadata, timestamp=self._now())
        self._notify_followers(
            identity_id,
            self._frame(
                OutboundEvent.IDENTITY_ACTIVITY_UPDATED,
                identity_id=identity_id,
                activity=p.activity,
                metadata=p.metadata,
            ),
        )

    async def _on_heartbeat(self, conn: Connection, p: IdentityPayload) -> None:
        identity_id = self._bind_identity(conn, p.identity_id)
        self.presence.touch(identity_id, timestamp=self._now())
        await self.broadcaster.to_connection(
            conn.connection_id,
            self._frame(OutboundEvent.HEARTBEAT_ACK),
        )

    # =========================================================================
    # Feed
    # =========================================================================

    async def _on_join_feed_room(self, conn: Connection, p: WireModel) -> None:
        self.registry.add_room(conn.connection_id, FEED_CHANNEL)

    async def _on_leave_feed_room(self, conn: Connection, p: WireModel) -> None:
        self.registry.remove_room(conn.connection_id, FEED_CHANNEL)

    # =========================================================================
    # Content viewing
    # =========================================================================

    async def _on_join_content_room(self, conn: Connection, p: ContentRoomPayload) -> None:
        identity_id = self._bind_identity(conn, p.identity_id)
        room = RoomKey.content(p.content_id)

        self.registry.add_room(conn.connection_id, room.channel)
        self.registry.set_focus(conn.connection_id, p.content_id)
        result = self.tracker.join(
            RoomKind.CONTENT_VIEWERS, p.content_id, identity_id, {"displayName": conn.display_name}
        )
        self._spawn(
            self.persistence.record_viewer_activity(p.content_id, identity_id),
            name=f"viewer-activity:{p.content_id}",
        )

        if result.is_new_member:
            await self.broadcaster.to_channel(
                room.channel,
                self._frame(
                    OutboundEvent.VIEWER_JOINED,
                    content_id=p.content_id,
                    identity_id=identity_id,
                    display_name=conn.display_name,
                    viewer_count=result.count,
                ),
                exclude=conn.connection_id,
            )
        await self.broadcaster.to_connection(
            conn.connection_id,
            self._frame(
                OutboundEvent.VIEWERS_SNAPSHOT,
                content_id=p.content_id,
                viewers=list(result.members),
                viewer_count=result.count,
            ),
        )
        if result.is_new_member:
            await self._push_analytics(p.content_id)

    async def _on_leave_content_room(self, conn: Connection, p: ContentRoomPayload) -> None:
        identity_id = self._bind_identity(conn, p.identity_id)
        room = RoomKey.content(p.content_id)

        self.registry.remove_room(conn.connection_id, room.channel)
        if conn.focus == p.content_id:
            self.registry.set_focus(conn.connection_id, None)
        if self._identity_still_in(identity_id, room.channel, conn.connection_id):
            return
        if not self.tracker.is_member(RoomKind.CONTENT_VIEWERS, p.content_id, identity_id):
            return

        count = self.tracker.leave(RoomKind.CONTENT_VIEWERS, p.content_id, identity_id)
        await self._emit_member_left(RoomChange(room, count), identity_id, conn.display_name)

    async def _on_typing_start(self, conn: Connection, p: TypingStartPayload) -> None:
        identity_id = self._bind_identity(conn, p.identity_id)
        room = RoomKey.typing(p.room_key)

        entry = TypingEntry(display_name=p.display_name, action=p.action, timestamp=self._now())
        self.tracker.join(RoomKind.TYPING, room.key, identity_id, entry)
        self.registry.set_typing(conn.connection_id, room)

        await self.broadcaster.to_channel(
            room.channel,
            self._frame(
                OutboundEvent.USER_TYPING,
                room_key=p.room_key,
                identity_id=identity_id,
                display_name=p.display_name,
                action=p.action,
            ),
            exclude=conn.connection_id,
        )

    async def _on_typing_stop(self, conn: Connection, p: TypingStopPayload) -> None:
        identity_id = self._bind_identity(conn, p.identity_id)
        room = RoomKey.typing(p.room_key)

        if conn.typing_target == room:
            self.registry.set_typing(conn.connection_id, None)
        if not self.tracker.is_member(RoomKind.TYPING, room.key, identity_id):
            return
        self.tracker.leave(RoomKind.TYPING, room.key, identity_id)

        await self.broadcaster.to_channel(
            room.channel,
            self._frame(
                OutboundEvent.USER_STOPPED_TYPING,
                room_key=p.room_key,
                identity_id=identity_id,
            ),
            exclude=conn.connection_id,
        )

    async def _on_comment_typing(self, conn: Connection, p: CommentTypingPayload) -> None:
        identity_id = self._bind_identity(conn, p.identity_id)
        await self.broadcaster.to_channel(
            RoomKey.content(p.content_id).channel,
            self._frame(
                OutboundEvent.USER_COMMENTING,
                content_id=p.content_id,
                identity_id=identity_id,
                display_name=p.display_name or conn.display_name,
            ),
            exclude=conn.connection_id,
        )

    async def _on_comment_stopped_typing(self, conn: Connection, p: CommentTypingPayload) -> None:
        identity_id = self._bind_identity(conn, p.identity_id)
        await self.broadcaster.to_channel(
            RoomKey.content(p.content_id).channel,
            self._frame(
                OutboundEvent.USER_STOPPED_COMMENTING,
                content_id=p.content_id,
                identity_id=identity_id,
            ),
            exclude=conn.connection_id,
        )

    async def _on_comment_added(self, conn: Connection, p: CommentAddedPayload) -> None:
        identity_id = self._bind_identity(conn, p.identity_id)
        self._spawn(
            self.persistence.upsert_engagement_counter(p.content_id, "comments"),
            name=f"engagement:comments:{p.content_id}",
        )
        # Sent to the whole room, author included
        await self.broadcaster.to_channel(
            RoomKey.content(p.content_id).channel,
            self._frame(
                OutboundEvent.NEW_COMMENT,
                content_id=p.content_id,
                comment={
                    "identityId": identity_id,
                    "displayName": conn.display_name,
                    "content": p.content,
                    "parentCommentId": p.parent_comment_id,
                    "createdAt": iso_timestamp(self._now()),
                },
            ),
        )

    # =========================================================================
    # Collaboration
    # =========================================================================

    async def _on_join_collaboration(self, conn: Connection, p: CollaborationPayload) -> None:
        identity_id = self._bind_identity(conn, p.identity_id)
        room = RoomKey.collaboration(p.content_id)
        display_name = p.display_name or conn.display_name

        self.registry.add_room(conn.connection_id, room.channel)
        self.registry.set_focus(conn.connection_id, p.content_id)
        result = self.tracker.join(
            RoomKind.COLLABORATION, p.content_id, identity_id, {"displayName": display_name}
        )

        if result.is_new_member:
            await self.broadcaster.to_channel(
                room.channel,
                self._frame(
                    OutboundEvent.COLLABORATOR_JOINED,
                    content_id=p.content_id,
                    identity_id=identity_id,
                    display_name=display_name,
                    collaborator_count=result.count,
                ),
                exclude=conn.connection_id,
            )
        payloads = self.tracker.payloads_of(RoomKind.COLLABORATION, p.content_id)
        await self.broadcaster.to_connection(
            conn.connection_id,
            self._frame(
                OutboundEvent.COLLABORATORS_SNAPSHOT,
                content_id=p.content_id,
                collaborators=[
                    {"identityId": member, "displayName": (payloads.get(member) or {}).get("displayName")}
                    for member in result.members
                ],
                collaborator_count=result.count,
            ),
        )
        if result.is_new_member:
            await self._push_analytics(p.content_id)

    async def _on_leave_collaboration(self, conn: Connection, p: CollaborationPayload) -> None:
        identity_id = self._bind_identity(conn, p.identity_id)
        room = RoomKey.collaboration(p.content_id)

        self.registry.remove_room(conn.connection_id, room.channel)
        if self._identity_still_in(identity_id, room.channel, conn.connection_id):
            return
        if not self.tracker.is_member(RoomKind.COLLABORATION, p.content_id, identity_id):
            return

        count = self.tracker.leave(RoomKind.COLLABORATION, p.content_id, identity_id)
        await self._emit_member_left(
            RoomChange(room, count), identity_id, p.display_name or conn.display_name
        )

    async def _on_content_mutation(self, conn: Connection, p: ContentMutationPayload) -> None:
        # Relayed as received: no sequencing, last writer wins on the clients
        identity_id = self._bind_identity(conn, p.identity_id)
        await self.broadcaster.to_channel(
            RoomKey.collaboration(p.content_id).channel,
            self._frame(
                OutboundEvent.CONTENT_UPDATED,
                content_id=p.content_id,
                identity_id=identity_id,
                display_name=conn.display_name,
                operation=p.operation,
                position=p.position,
                payload=p.payload,
            ),
            exclude=conn.connection_id,
        )

    # =========================================================================
    # Chat
    # =========================================================================

    async def _on_join_chat_room(self, conn: Connection, p: ChatRoomPayload) -> None:
        room = RoomKey.chat(p.chat_id)
        self.registry.add_room(conn.connection_id, room.channel)
        if conn.identity_id is None:
            # Anonymous sockets may listen but are not counted as members
            return

        result = self.tracker.join(RoomKind.CHAT, p.chat_id, conn.identity_id)
        if result.is_new_member:
            await self.broadcaster.to_channel(
                room.channel,
                self._frame(
                    OutboundEvent.CHAT_MEMBER_JOINED,
                    chat_id=p.chat_id,
                    identity_id=conn.identity_id,
                    display_name=conn.display_name,
                    member_count=result.count,
                ),
                exclude=conn.connection_id,
            )

    async def _on_leave_chat_room(self, conn: Connection, p: ChatRoomPayload) -> None:
        room = RoomKey.chat(p.chat_id)
        self.registry.remove_room(conn.connection_id, room.channel)
        identity_id = conn.identity_id
        if identity_id is None:
            return
        if self._identity_still_in(identity_id, room.channel, conn.connection_id):
            return
        if not self.tracker.is_member(RoomKind.CHAT, p.chat_id, identity_id):
            return

        count = self.tracker.leave(RoomKind.CHAT, p.chat_id, identity_id)
        await self._emit_member_left(RoomChange(room, count), identity_id, conn.display_name)

    async def _on_chat_send(self, conn: Connection, p: ChatSendPayload) -> None:
        sender_id = self._bind_identity(conn, p.sender_id)
        message = {
            "chatId": p.chat_id,
            "senderId": sender_id,
            "senderName": conn.display_name,
            "content": p.content,
            "messageType": p.message_type,
            "mediaUrl": p.media_url,
            "createdAt": iso_timestamp(self._now()),
        }
        self._spawn(
            self.persistence.append_message(p.chat_id, sender_id, message),
            name=f"chat-message:{p.chat_id}",
        )
        await self.broadcaster.to_channel(
            RoomKey.chat(p.chat_id).channel,
            self._frame(OutboundEvent.NEW_CHAT_MESSAGE, chat_id=p.chat_id, message=message),
            exclude=conn.connection_id,
        )

    async def _on_chat_typing(self, conn: Connection, p: ChatTypingPayload) -> None:
        identity_id = self._bind_identity(conn, p.identity_id)
        await self.broadcaster.to_channel(
            RoomKey.chat(p.chat_id).channel,
            self._frame(
                OutboundEvent.USER_TYPING_CHAT,
                chat_id=p.chat_id,
                identity_id=identity_id,
                display_name=p.display_name or conn.display_name,
            ),
            exclude=conn.connection_id,
        )

    async def _on_chat_stopped_typing(self, conn: Connection, p: ChatTypingPayload) -> None:
        identity_id = self._bind_identity(conn, p.identity_id)
        await self.broadcaster.to_channel(
            RoomKey.chat(p.chat_id).channel,
            self._frame(
                OutboundEvent.USER_STOPPED_TYPING_CHAT,
                chat_id=p.chat_id,
                identity_id=identity_id,
            ),
            exclude=conn.connection_id,
        )

    # =========================================================================
    # Analytics and engagement
    # =========================================================================

    async def _on_join_analytics_room(self, conn: Connection, p: ContentRoomPayload) -> None:
        identity_id = self._bind_identity(conn, p.identity_id)
        room = RoomKey.analytics(p.content_id)
        self.registry.add_room(conn.connection_id, room.channel)
        self.tracker.join(RoomKind.ANALYTICS_VIEWERS, p.content_id, identity_id)
        await self.broadcaster.to_connection(
            conn.connection_id,
            self._frame(OutboundEvent.ANALYTICS_UPDATED, **self._analytics_snapshot(p.content_id)),
        )

    async def _on_leave_analytics_room(self, conn: Connection, p: ContentRoomPayload) -> None:
        identity_id = self._bind_identity(conn, p.identity_id)
        room = RoomKey.analytics(p.content_id)
        self.registry.remove_room(conn.connection_id, room.channel)
        if self._identity_still_in(identity_id, room.channel, conn.connection_id):
            return
        if not self.tracker.is_member(RoomKind.ANALYTICS_VIEWERS, p.content_id, identity_id):
            return
        count = self.tracker.leave(RoomKind.ANALYTICS_VIEWERS, p.content_id, identity_id)
        await self._emit_member_left(RoomChange(room, count), identity_id, conn.display_name)

    async def _on_track_page_view(self, conn: Connection, p: PageViewPayload) -> None:
        if p.identity_id is not None:
            self._bind_identity(conn, p.identity_id)
        self._spawn(
            self.persistence.upsert_engagement_counter(p.content_id, "views"),
            name=f"engagement:views:{p.content_id}",
        )
        await self.broadcaster.to_channel(
            RoomKey.analytics(p.content_id).channel,
            self._frame(
                OutboundEvent.ANALYTICS_UPDATED,
                **self._analytics_snapshot(p.content_id),
                page_view={
                    "identityId": p.identity_id,
                    "duration": p.duration,
                    "scrollDepth": p.scroll_depth,
                    "referrer": p.referrer,
                },
            ),
        )

    async def _on_content_liked(self, conn: Connection, p: ContentLikedPayload) -> None:
        identity_id = self._bind_identity(conn, p.identity_id)
        self._spawn(
            self.persistence.upsert_engagement_counter(p.content_id, "likes", 1 if p.is_liked else -1),
            name=f"engagement:likes:{p.content_id}",
        )
        await self.broadcaster.to_channel(
            RoomKey.content(p.content_id).channel,
            self._frame(
                OutboundEvent.CONTENT_LIKE_UPDATED,
                content_id=p.content_id,
                identity_id=identity_id,
                is_liked=p.is_liked,
            ),
        )

    async def _on_content_shared(self, conn: Connection, p: ContentSharedPayload) -> None:
        identity_id = self._bind_identity(conn, p.identity_id)
        self._spawn(
            self.persistence.upsert_engagement_counter(p.content_id, "shares"),
            name=f"engagement:shares:{p.content_id}",
        )
        await self.broadcaster.to_channel(
            RoomKey.content(p.content_id).channel,
            self._frame(
                OutboundEvent.CONTENT_SHARED,
                content_id=p.content_id,
                identity_id=identity_id,
                platform=p.platform,
            ),
        )

    async def _on_poll_vote(self, conn: Connection, p: PollVotePayload) -> None:
        identity_id = self._bind_identity(conn, p.identity_id)
        await self.broadcaster.to_channel(
            RoomKey.content(p.content_id).channel,
            self._frame(
                OutboundEvent.POLL_UPDATED,
                poll_id=p.poll_id,
                content_id=p.content_id,
                identity_id=identity_id,
                option_texts=p.option_texts,
            ),
            exclude=conn.connection_id,
        )

    # =========================================================================
    # Direct delivery
    # =========================================================================

    async def _on_send_notification(self, conn: Connection, p: NotificationPayload) -> None:
        if p.sender_id is not None:
            self._bind_identity(conn, p.sender_id)
        frame = self._frame(
            OutboundEvent.NEW_NOTIFICATION,
            recipient_id=p.recipient_id,
            type=p.type,
            title=p.title,
            message=p.message,
            sender_id=p.sender_id,
            content_id=p.content_id,
        )
        self._spawn(
            self._deliver_notification(p.recipient_id, frame, exclude=conn.connection_id),
            name=f"notification:{p.recipient_id}",
        )

    async def _deliver_notification(self, recipient_id: str, frame: dict[str, Any], exclude: str) -> None:
        """
        Deliver a notification to a recipient the gateway can vouch for.

        An identity seen by the presence store is known. Any other recipient
        is looked up with the persistence service and the notification is
        dropped if it does not exist there. A failed lookup still delivers.
        """
        known = self.presence.get(recipient_id).status is not PresenceStatus.UNKNOWN
        if not known:
            try:
                known = await self.persistence.fetch_identity(recipient_id) is not None
            except Exception as e:
                self.metrics.state.persistence_failures += 1
                logger.warning(
                    "Recipient lookup failed, delivering notification anyway",
                    recipient_id=recipient_id,
                    error=str(e),
                )
                known = True
        if not known:
            self.metrics.increment("notifications_unknown_recipient")
            logger.info("Dropping notification for unknown recipient", recipient_id=recipient_id)
            return
        await self.broadcaster.to_identity(recipient_id, frame, exclude=exclude)

    async def _on_media_upload_progress(self, conn: Connection, p: UploadProgressPayload) -> None:
        identity_id = self._bind_identity(conn, p.identity_id)
        await self.broadcaster.to_identity(
            identity_id,
            self._frame(
                OutboundEvent.UPLOAD_PROGRESS,
                upload_id=p.upload_id,
                progress=p.progress,
            ),
            exclude=conn.connection_id,
        )

    # =========================================================================
    # Stats
    # =========================================================================

    def get_stats(self) -> dict[str, Any]:
        return {
            "handled_events": len(self._handlers),
            "offline_on_any_disconnect": self._offline_on_any_disconnect,
        }


def _public_room_key(room: RoomKey) -> str | None:
    """The room key as clients sent it (None for the default feed scope)."""
    return None if room.key == DEFAULT_TYPING_SCOPE else room.key
