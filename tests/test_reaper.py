"""
Tests for the idle reaper and the gateway that schedules it.
"""

import asyncio

import pytest

from blogcast.components.core.constants import WSCloseCode
from blogcast.components.presence.store import PresenceStatus
from blogcast.components.rooms.keys import RoomKind
from blogcast.config.settings import Settings
from blogcast.core.gateway import RealtimeGateway
from blogcast.persistence.memory import InMemoryPersistence
from tests.conftest import FakeClock, FakeTransport, announce


class TestIdleReaper:

    @pytest.mark.asyncio
    async def test_reaps_idle_connections_like_a_disconnect(
        self, dispatcher, reaper, registry, tracker, presence, transport, clock, metrics
    ):
        await announce(dispatcher, "c1", "u1")
        await announce(dispatcher, "c2", "u2")
        await dispatcher.dispatch("c1", "join-content-room", {"contentId": "p1", "identityId": "u1"})
        clock.advance(200)
        await dispatcher.dispatch("c2", "join-content-room", {"contentId": "p1", "identityId": "u2"})

        clock.advance(150)
        reaped = await reaper.reap()

        assert reaped == 1
        assert registry.get("c1") is None
        assert transport.closed == {"c1": WSCloseCode.GOING_AWAY}
        assert tracker.members_of(RoomKind.CONTENT_VIEWERS, "p1") == ("u2",)
        assert presence.get("u1").status is PresenceStatus.OFFLINE
        assert transport.frames("c2", "viewer-left")[0]["data"]["identityId"] == "u1"
        assert metrics.connections.reaped == 1

    @pytest.mark.asyncio
    async def test_idempotent_against_explicit_disconnect(self, dispatcher, reaper, transport, clock, metrics):
        await announce(dispatcher, "c1", "u1")
        clock.advance(301)

        await dispatcher.disconnect("c1")
        assert await reaper.reap() == 0
        assert await reaper.reap() == 0
        assert transport.closed == {}
        assert metrics.connections.reaped == 0

    @pytest.mark.asyncio
    async def test_active_connections_survive(self, dispatcher, reaper, registry, clock):
        await announce(dispatcher, "c1", "u1")
        clock.advance(299)

        assert await reaper.reap() == 0
        assert registry.get("c1") is not None

    @pytest.mark.asyncio
    async def test_evicts_offline_presence_past_retention(self, dispatcher, reaper, presence, clock, metrics):
        for i in range(50):
            await announce(dispatcher, f"c{i}", f"u{i}")
        clock.advance(301)
        await reaper.reap()
        assert presence.get_stats() == {"tracked_identities": 50, "online": 0, "offline": 50}

        await announce(dispatcher, "c0-again", "u0")
        clock.advance(30 * 24 * 60 * 60)
        await reaper.reap()

        # u0 went offline in this sweep, so its record is still fresh
        assert presence.get_stats() == {"tracked_identities": 1, "online": 0, "offline": 1}
        assert presence.get("u1").status is PresenceStatus.UNKNOWN
        assert presence.get("u0").status is PresenceStatus.OFFLINE
        assert metrics.state.presence_evicted == 49

    @pytest.mark.asyncio
    async def test_online_presence_is_never_evicted(self, dispatcher, reaper, registry, presence, clock):
        await announce(dispatcher, "c1", "u1")
        clock.advance(2 * 24 * 60 * 60)
        registry.touch("c1", clock.now)

        await reaper.reap()

        assert presence.is_online("u1")
        assert presence.get("u1").last_activity < clock.now - 24 * 60 * 60

    @pytest.mark.asyncio
    async def test_run_loop_stops_on_cancel(self, registry, dispatcher, transport, metrics, clock):
        from blogcast.core.reaper import IdleReaper

        fast = Settings(_env_file=None, reaper_interval=0.01, typing_sweep_interval=0.01)
        reaper = IdleReaper(registry, dispatcher, transport, metrics, fast, clock=clock)

        task = asyncio.create_task(reaper.run())
        sweep = asyncio.create_task(reaper.run_typing_sweep())
        await asyncio.sleep(0.05)
        task.cancel()
        sweep.cancel()
        await asyncio.gather(task, sweep, return_exceptions=True)

        assert task.done() and sweep.done()
        assert reaper.get_stats()["cycles"] >= 1

    @pytest.mark.asyncio
    async def test_loop_survives_errors(self, registry, dispatcher, transport, metrics, clock, monkeypatch):
        from blogcast.core.reaper import IdleReaper

        fast = Settings(_env_file=None, reaper_interval=0.01)
        reaper = IdleReaper(registry, dispatcher, transport, metrics, fast, clock=clock)
        calls = []

        async def flaky_reap(now=None):
            calls.append(now)
            raise RuntimeError("boom")

        monkeypatch.setattr(reaper, "reap", flaky_reap)
        task = asyncio.create_task(reaper.run())
        await asyncio.sleep(0.05)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        assert len(calls) >= 2


class TestRealtimeGateway:

    @pytest.mark.asyncio
    async def test_start_stop(self):
        persistence = InMemoryPersistence()
        gateway = RealtimeGateway(
            Settings(_env_file=None),
            persistence=persistence,
            transport=FakeTransport(),
            clock=FakeClock(),
        )

        await gateway.start()
        assert gateway.is_running
        await gateway.stop()
        assert not gateway.is_running

    @pytest.mark.asyncio
    async def test_persistence_failures_are_counted(self):
        persistence = InMemoryPersistence()

        async def broken(*args, **kwargs):
            raise ConnectionError("down")

        persistence.record_viewer_activity = broken
        gateway = RealtimeGateway(Settings(_env_file=None), persistence=persistence, transport=FakeTransport())

        await announce(gateway.dispatcher, "c1", "u1")
        await gateway.dispatcher.dispatch("c1", "join-content-room", {"contentId": "p1", "identityId": "u1"})
        await gateway.tasks.drain()

        stats = gateway.get_stats()
        assert stats["metrics"]["state_persistence_failures"] == 1
        assert stats["rooms"]["rooms_total"] == 1
        assert "circuit_breaker" not in stats

    def test_default_persistence_is_guarded(self):
        gateway = RealtimeGateway(Settings(_env_file=None))
        assert gateway.get_stats()["circuit_breaker"]["name"] == "persistence"
