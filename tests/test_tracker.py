"""
Tests for the room membership tracker and typed room keys.
"""

import pytest
from hypothesis import given, settings, strategies as st

from blogcast.components.rooms.keys import FEED_CHANNEL, RoomKey, RoomKind, identity_channel
from blogcast.components.rooms.tracker import RoomMembershipTracker, TypingEntry


class TestRoomKey:

    def test_channels_per_kind(self):
        assert RoomKey.content("42").channel == "content-42"
        assert RoomKey.collaboration("42").channel == "collaboration-42"
        assert RoomKey.chat("7").channel == "chat-7"
        assert RoomKey.analytics("42").channel == "analytics-42"
        assert identity_channel("u1") == "identity-u1"

    def test_typing_shares_content_channel(self):
        assert RoomKey.typing("42").channel == "content-42"

    def test_typing_without_key_uses_feed(self):
        assert RoomKey.typing(None).channel == FEED_CHANNEL

    def test_kinds_with_same_key_are_distinct(self):
        assert RoomKey.content("1") != RoomKey.collaboration("1")
        assert str(RoomKey.chat("1")) == "chat:1"

    def test_rejects_empty_key(self):
        with pytest.raises(ValueError):
            RoomKey(RoomKind.CHAT, "")


class TestJoinLeave:

    def test_join_returns_count_and_members(self):
        tracker = RoomMembershipTracker()
        tracker.join(RoomKind.CONTENT_VIEWERS, "c1", "u1")
        result = tracker.join(RoomKind.CONTENT_VIEWERS, "c1", "u2")

        assert result.count == 2
        assert result.members == ("u1", "u2")
        assert result.is_new_member

    def test_rejoin_refreshes_payload_without_changing_count(self):
        tracker = RoomMembershipTracker()
        tracker.join(RoomKind.COLLABORATION, "c1", "u1", {"displayName": "Old"})
        result = tracker.join(RoomKind.COLLABORATION, "c1", "u1", {"displayName": "New"})

        assert result.count == 1
        assert not result.is_new_member
        assert tracker.payloads_of(RoomKind.COLLABORATION, "c1") == {"u1": {"displayName": "New"}}

    def test_leave_deletes_empty_room(self):
        tracker = RoomMembershipTracker()
        tracker.join(RoomKind.CHAT, "9", "u1")

        assert tracker.leave(RoomKind.CHAT, "9", "u1") == 0
        assert RoomKey.chat("9") not in tracker.rooms
        assert tracker.rooms_of("u1") == frozenset()

    def test_leave_twice_is_harmless(self):
        tracker = RoomMembershipTracker()
        tracker.join(RoomKind.CHAT, "9", "u1")
        tracker.join(RoomKind.CHAT, "9", "u2")

        assert tracker.leave(RoomKind.CHAT, "9", "u1") == 1
        assert tracker.leave(RoomKind.CHAT, "9", "u1") == 1
        assert tracker.leave(RoomKind.CHAT, "missing", "u1") == 0

    def test_unknown_room_reads_are_empty(self):
        tracker = RoomMembershipTracker()
        assert tracker.members_of(RoomKind.ANALYTICS_VIEWERS, "x") == ()
        assert tracker.count_of(RoomKind.ANALYTICS_VIEWERS, "x") == 0
        assert tracker.payloads_of(RoomKind.ANALYTICS_VIEWERS, "x") == {}


class TestRemoveIdentity:

    def test_remove_from_all_reports_exactly_the_rooms_held(self):
        tracker = RoomMembershipTracker()
        tracker.join(RoomKind.CONTENT_VIEWERS, "c1", "u1")
        tracker.join(RoomKind.CONTENT_VIEWERS, "c1", "u2")
        tracker.join(RoomKind.CHAT, "9", "u1")
        tracker.join(RoomKind.TYPING, "c1", "u1", TypingEntry("U1", "typing", 1.0))
        tracker.join(RoomKind.COLLABORATION, "c2", "u2")

        changes = tracker.remove_identity_from_all("u1")

        assert {c.room for c in changes} == {
            RoomKey.content("c1"),
            RoomKey.chat("9"),
            RoomKey.typing("c1"),
        }
        counts = {c.room: c.count for c in changes}
        assert counts[RoomKey.content("c1")] == 1
        assert counts[RoomKey.chat("9")] == 0
        for room in tracker.rooms:
            assert "u1" not in tracker.members_of(room.kind, room.key)

    def test_remove_from_all_for_unknown_identity(self):
        assert RoomMembershipTracker().remove_identity_from_all("ghost") == []

    def test_remove_from_subset(self):
        tracker = RoomMembershipTracker()
        tracker.join(RoomKind.CONTENT_VIEWERS, "c1", "u1")
        tracker.join(RoomKind.CHAT, "9", "u1")

        changes = tracker.remove_identity_from("u1", {RoomKey.chat("9"), RoomKey.chat("10")})

        assert [c.room for c in changes] == [RoomKey.chat("9")]
        assert tracker.rooms_of("u1") == frozenset({RoomKey.content("c1")})


class TestPrune:

    def test_prune_removes_matching_entries_only(self):
        tracker = RoomMembershipTracker()
        tracker.join(RoomKind.TYPING, "c1", "u1", TypingEntry("U1", "typing", 100.0))
        tracker.join(RoomKind.TYPING, "c1", "u2", TypingEntry("U2", "typing", 105.0))
        tracker.join(RoomKind.CONTENT_VIEWERS, "c1", "u1")

        pruned = tracker.prune(RoomKind.TYPING, lambda _i, entry: entry.is_older_than(103.0))

        assert [(p.identity_id, p.count) for p in pruned] == [("u1", 1)]
        assert tracker.members_of(RoomKind.TYPING, "c1") == ("u2",)
        assert tracker.is_member(RoomKind.CONTENT_VIEWERS, "c1", "u1")

    def test_prune_deletes_rooms_left_empty(self):
        tracker = RoomMembershipTracker()
        tracker.join(RoomKind.TYPING, "c1", "u1", TypingEntry("U1", "typing", 1.0))

        tracker.prune(RoomKind.TYPING, lambda _i, _p: True)

        assert tracker.room_count(RoomKind.TYPING) == 0
        assert tracker.rooms_of("u1") == frozenset()


class TestStats:

    def test_get_stats_counts_rooms_by_kind(self):
        tracker = RoomMembershipTracker()
        tracker.join(RoomKind.CHAT, "1", "u1")
        tracker.join(RoomKind.CHAT, "2", "u1")
        tracker.join(RoomKind.CONTENT_VIEWERS, "c1", "u2")

        stats = tracker.get_stats()
        assert stats["rooms_total"] == 3
        assert stats["tracked_identities"] == 2
        assert stats["rooms_by_kind"]["chat"] == 2
        assert stats["rooms_by_kind"]["typing"] == 0


# =============================================================================
# Properties
# =============================================================================

operations = st.lists(
    st.tuples(st.booleans(), st.sampled_from(["u1", "u2", "u3", "u4"])),
    max_size=60,
)


class TestMembershipProperties:

    @given(ops=operations)
    @settings(max_examples=100)
    def test_count_matches_identities_with_net_join(self, ops):
        """Property: the count equals the identities whose last operation was a join."""
        tracker = RoomMembershipTracker()
        joined: set[str] = set()
        for is_join, identity in ops:
            if is_join:
                tracker.join(RoomKind.CONTENT_VIEWERS, "c1", identity)
                joined.add(identity)
            else:
                tracker.leave(RoomKind.CONTENT_VIEWERS, "c1", identity)
                joined.discard(identity)

        assert tracker.count_of(RoomKind.CONTENT_VIEWERS, "c1") == len(joined)
        assert set(tracker.members_of(RoomKind.CONTENT_VIEWERS, "c1")) == joined
        assert tracker.count_of(RoomKind.CONTENT_VIEWERS, "c1") >= 0

    @given(
        memberships=st.lists(
            st.tuples(
                st.sampled_from(list(RoomKind)),
                st.sampled_from(["a", "b", "c"]),
                st.sampled_from(["u1", "u2"]),
            ),
            max_size=30,
        )
    )
    @settings(max_examples=100)
    def test_remove_from_all_matches_prior_rooms(self, memberships):
        """Property: removal reports exactly the rooms held beforehand and leaves none behind."""
        tracker = RoomMembershipTracker()
        for kind, key, identity in memberships:
            tracker.join(kind, key, identity)

        before = tracker.rooms_of("u1")
        changes = tracker.remove_identity_from_all("u1")

        assert {c.room for c in changes} == before
        assert tracker.rooms_of("u1") == frozenset()
        for room in tracker.rooms:
            assert not tracker.is_member(room.kind, room.key, "u1")
