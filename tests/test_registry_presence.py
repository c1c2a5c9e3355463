"""
Tests for the connection registry, presence store and message rate limiter.
"""

from blogcast.components.connection.rate_limiter import MessageRateLimiter
from blogcast.components.connection.registry import ConnectionRegistry
from blogcast.components.presence.store import PresenceStatus, PresenceStore
from blogcast.components.rooms.keys import RoomKey


class TestConnectionRegistry:

    def test_register_is_idempotent_and_keeps_channels(self):
        registry = ConnectionRegistry()
        registry.register("c1", timestamp=10.0)
        registry.add_room("c1", "content-1")

        conn = registry.register("c1", "u1", "Ana", timestamp=20.0)

        assert conn.connected_at == 10.0
        assert conn.last_activity == 20.0
        assert conn.channels == {"content-1"}
        assert registry.connections_for("u1") == {"c1"}

    def test_reannounce_with_new_identity_moves_index(self):
        registry = ConnectionRegistry()
        registry.register("c1", "u1")
        registry.register("c1", "u2")

        assert registry.connections_for("u1") == set()
        assert registry.connections_for("u2") == {"c1"}

    def test_unknown_ids_are_tolerated(self):
        registry = ConnectionRegistry()
        registry.touch("ghost")
        registry.remove_room("ghost", "feed")
        registry.set_typing("ghost", RoomKey.typing("c1"))

        assert registry.add_room("ghost", "feed") is False
        assert registry.remove("ghost") is None
        assert registry.connections_in("feed") == set()

    def test_remove_drops_every_index(self):
        registry = ConnectionRegistry()
        registry.register("c1", "u1")
        registry.add_room("c1", "chat-1")
        registry.add_room("c1", "identity-u1")

        conn = registry.remove("c1")

        assert conn is not None and conn.identity_id == "u1"
        assert registry.by_channel == {}
        assert registry.by_identity == {}
        assert registry.count() == 0

    def test_connections_in_returns_a_copy(self):
        registry = ConnectionRegistry()
        registry.register("c1")
        registry.add_room("c1", "feed")

        recipients = registry.connections_in("feed")
        recipients.add("c2")

        assert registry.connections_in("feed") == {"c1"}

    def test_idle_connections_and_other_connections(self):
        registry = ConnectionRegistry()
        registry.register("c1", "u1", timestamp=100.0)
        registry.register("c2", "u1", timestamp=500.0)

        assert [c.connection_id for c in registry.idle_connections(200.0)] == ["c1"]
        assert registry.identity_has_other_connections("u1", excluding="c1")
        registry.remove("c2")
        assert not registry.identity_has_other_connections("u1", excluding="c1")

    def test_stats(self):
        registry = ConnectionRegistry()
        registry.register("c1")
        registry.register("c2", "u1")
        registry.add_room("c2", "feed")

        assert registry.get_stats() == {
            "connections": 2,
            "identities": 1,
            "channels": 1,
            "anonymous_connections": 1,
        }


class TestPresenceStore:

    def test_unknown_identity_lookup_does_not_raise(self):
        snapshot = PresenceStore().get("ghost")
        assert snapshot.status is PresenceStatus.UNKNOWN
        assert not snapshot.is_online

    def test_online_offline_cycle(self):
        store = PresenceStore()
        store.set_online("u1", "c1", timestamp=1.0)

        assert store.is_online("u1")
        assert store.online_identities() == ["u1"]
        assert store.set_offline("u1", timestamp=2.0) is True
        assert store.set_offline("u1", timestamp=3.0) is False
        assert store.get("u1").status is PresenceStatus.OFFLINE
        assert store.get("u1").connection_id is None

    def test_update_activity_keeps_unset_fields(self):
        store = PresenceStore()
        store.set_online("u1", "c1", timestamp=1.0)
        store.update_activity("u1", "writing", {"contentId": "c9"}, timestamp=5.0)
        store.touch("u1", timestamp=9.0)

        snapshot = store.get("u1")
        assert snapshot.activity == "writing"
        assert snapshot.metadata == {"contentId": "c9"}
        assert snapshot.last_activity == 9.0

    def test_activity_for_untracked_identity_is_ignored(self):
        store = PresenceStore()
        store.update_activity("ghost", "reading")
        assert store.get_stats()["tracked_identities"] == 0

    def test_snapshots_are_detached(self):
        store = PresenceStore()
        store.set_online("u1", "c1")
        store.update_activity("u1", metadata={"a": 1})

        store.get("u1").metadata["a"] = 2

        assert store.get("u1").metadata == {"a": 1}

    def test_forget(self):
        store = PresenceStore()
        store.set_online("u1", "c1")
        store.forget("u1")
        assert store.get("u1").status is PresenceStatus.UNKNOWN

    def test_prune_offline_keeps_online_and_recent_records(self):
        store = PresenceStore()
        store.set_online("old", "c1", timestamp=1.0)
        store.set_offline("old", timestamp=10.0)
        store.set_online("recent", "c2", timestamp=1.0)
        store.set_offline("recent", timestamp=100.0)
        store.set_online("live", "c3", timestamp=1.0)

        assert store.prune_offline(cutoff=50.0) == ["old"]
        assert store.get("old").status is PresenceStatus.UNKNOWN
        assert store.get("recent").status is PresenceStatus.OFFLINE
        assert store.is_online("live")
        assert store.get_stats()["tracked_identities"] == 2

    def test_set_connection_only_moves_online_records(self):
        store = PresenceStore()
        store.set_online("u1", "c1")
        store.set_connection("u1", "c2")
        assert store.get("u1").connection_id == "c2"

        store.set_offline("u1")
        store.set_connection("u1", "c3")
        assert store.get("u1").connection_id is None


class TestMessageRateLimiter:

    def test_rejects_over_limit_within_window(self):
        limiter = MessageRateLimiter(max_messages=3, window_seconds=1)

        assert all(limiter.is_allowed("c1", now=10.0 + i * 0.1) for i in range(3))
        assert not limiter.is_allowed("c1", now=10.35)
        assert limiter.is_allowed("c2", now=10.35)

    def test_recovers_when_window_slides(self):
        limiter = MessageRateLimiter(max_messages=2, window_seconds=1)
        limiter.is_allowed("c1", now=10.0)
        limiter.is_allowed("c1", now=10.1)

        assert not limiter.is_allowed("c1", now=10.5)
        assert limiter.is_allowed("c1", now=11.2)

    def test_evicts_when_full(self):
        limiter = MessageRateLimiter(max_messages=5, window_seconds=1, max_tracked=10)
        for i in range(10):
            limiter.is_allowed(f"c{i}", now=float(i))

        limiter.is_allowed("new", now=20.0)

        stats = limiter.get_stats()
        assert stats["evictions"] == 1
        assert stats["tracked_connections"] == 10

    def test_cleanup_stale_and_remove(self):
        limiter = MessageRateLimiter(max_messages=5, window_seconds=1)
        limiter.is_allowed("c1", now=1.0)
        limiter.is_allowed("c2", now=5.0)

        assert limiter.cleanup_stale(now=5.5) == 1
        limiter.remove_connection("c2")
        assert limiter.tracked_count == 0
