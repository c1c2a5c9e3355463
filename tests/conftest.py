"""
Pytest configuration and fixtures for the realtime core tests.

Everything is built from fresh, explicitly owned instances: no test shares
a registry, tracker or presence store with another.
"""

from __future__ import annotations

from typing import Any

import pytest

from blogcast.components.connection.registry import ConnectionRegistry
from blogcast.components.core.constants import WSCloseCode
from blogcast.components.metrics.collector import MetricsCollector
from blogcast.components.presence.store import PresenceStore
from blogcast.components.rooms.tracker import RoomMembershipTracker
from blogcast.config.settings import Settings
from blogcast.core.broadcaster import Broadcaster
from blogcast.core.dispatcher import EventDispatcher
from blogcast.core.reaper import IdleReaper
from blogcast.core.tasks import BackgroundTasks
from blogcast.persistence.memory import InMemoryPersistence

T0 = 1_700_000_000.0


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeTransport:
    """Records every frame sent per connection id."""

    def __init__(self):
        self.sent: dict[str, list[dict[str, Any]]] = {}
        self.closed: dict[str, int] = {}
        self.dead: set[str] = set()

    async def send(self, connection_id: str, frame: dict[str, Any]) -> bool:
        if connection_id in self.dead:
            return False
        self.sent.setdefault(connection_id, []).append(frame)
        return True

    async def close(self, connection_id: str, code: int = WSCloseCode.GOING_AWAY, reason: str = "") -> None:
        self.closed[connection_id] = code

    def frames(self, connection_id: str, event: str | None = None) -> list[dict[str, Any]]:
        frames = self.sent.get(connection_id, [])
        if event is None:
            return list(frames)
        return [f for f in frames if f["event"] == event]

    def events(self, connection_id: str) -> list[str]:
        return [f["event"] for f in self.sent.get(connection_id, [])]

    def clear(self) -> None:
        self.sent.clear()


class FailingPersistence(InMemoryPersistence):
    """In-memory persistence whose writes and lookups can be made to raise."""

    def __init__(self):
        super().__init__()
        self.fail_append = False
        self.fail_counters = False
        self.fail_lookups = False

    async def append_message(self, chat_id, sender_id, message):
        if self.fail_append:
            raise ConnectionError("storage unavailable")
        await super().append_message(chat_id, sender_id, message)

    async def upsert_engagement_counter(self, content_id, counter, delta=1):
        if self.fail_counters:
            raise ConnectionError("storage unavailable")
        return await super().upsert_engagement_counter(content_id, counter, delta)

    async def fetch_identity(self, identity_id):
        if self.fail_lookups:
            raise ConnectionError("storage unavailable")
        return await super().fetch_identity(identity_id)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        reaper_interval=30,
        idle_timeout=300,
        typing_auto_clear=3,
        typing_reap_timeout=10,
        typing_sweep_interval=1,
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def tracker():
    return RoomMembershipTracker()


@pytest.fixture
def presence():
    return PresenceStore()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def persistence():
    return FailingPersistence()


@pytest.fixture
def tasks(metrics):
    def on_failure(exc: BaseException) -> None:
        metrics.state.persistence_failures += 1

    return BackgroundTasks(on_failure=on_failure)


@pytest.fixture
def broadcaster(registry, transport, metrics):
    return Broadcaster(registry, transport, metrics)


@pytest.fixture
def dispatcher(registry, tracker, presence, broadcaster, persistence, tasks, metrics, clock):
    return EventDispatcher(
        registry=registry,
        tracker=tracker,
        presence=presence,
        broadcaster=broadcaster,
        persistence=persistence,
        tasks=tasks,
        metrics=metrics,
        clock=clock,
    )


@pytest.fixture
def reaper(registry, dispatcher, transport, metrics, settings, clock):
    return IdleReaper(
        registry=registry,
        dispatcher=dispatcher,
        transport=transport,
        metrics=metrics,
        settings=settings,
        clock=clock,
    )


async def announce(dispatcher: EventDispatcher, cid: str, identity_id: str, name: str | None = None) -> None:
    """Connect `cid` and announce it as `identity_id`."""
    dispatcher.connect(cid)
    await dispatcher.dispatch(
        cid,
        "connect-announce",
        {"identityId": identity_id, "displayName": name or identity_id.upper()},
    )
