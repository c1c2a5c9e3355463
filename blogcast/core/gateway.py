"""
Realtime gateway composition.

Builds the registry, tracker, presence store, broadcaster, dispatcher and
reaper around one transport and one persistence collaborator, and owns
the background loops. The FastAPI app holds a single instance.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable

from blogcast.components.connection.rate_limiter import MessageRateLimiter
from blogcast.components.connection.registry import ConnectionRegistry
from blogcast.components.endpoints.transport import Transport, WebSocketTransport
from blogcast.components.metrics.collector import MetricsCollector
from blogcast.components.presence.store import PresenceStore
from blogcast.components.rooms.tracker import RoomMembershipTracker
from blogcast.config.logging import get_logger
from blogcast.config.settings import Settings
from blogcast.core.broadcaster import Broadcaster
from blogcast.core.dispatcher import EventDispatcher
from blogcast.core.reaper import IdleReaper
from blogcast.core.tasks import BackgroundTasks
from blogcast.persistence.base import PersistenceService
from blogcast.persistence.factory import create_persistence
from blogcast.persistence.guarded import GuardedPersistence

logger = get_logger(__name__)


class RealtimeGateway:
    """
    Owns every realtime component and the periodic sweeps.

    Usage:
        gateway = RealtimeGateway(settings)
        await gateway.start()
        ...
        await gateway.stop()
    """

    def __init__(
        self,
        settings: Settings,
        persistence: PersistenceService | None = None,
        transport: Transport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.metrics = MetricsCollector()
        self.registry = ConnectionRegistry()
        self.tracker = RoomMembershipTracker()
        self.presence = PresenceStore()
        self.transport = transport if transport is not None else WebSocketTransport()
        self.persistence = persistence if persistence is not None else create_persistence(settings)
        self.tasks = BackgroundTasks(on_failure=self._on_persistence_failure)
        self.rate_limiter = MessageRateLimiter(
            max_messages=settings.ws_message_rate_limit,
            window_seconds=settings.ws_message_rate_window,
        )
        self.broadcaster = Broadcaster(self.registry, self.transport, self.metrics)
        self.dispatcher = EventDispatcher(
            registry=self.registry,
            tracker=self.tracker,
            presence=self.presence,
            broadcaster=self.broadcaster,
            persistence=self.persistence,
            tasks=self.tasks,
            metrics=self.metrics,
            offline_on_any_disconnect=settings.presence_offline_on_any_disconnect,
            clock=clock,
        )
        self.reaper = IdleReaper(
            registry=self.registry,
            dispatcher=self.dispatcher,
            transport=self.transport,
            metrics=self.metrics,
            settings=settings,
            rate_limiter=self.rate_limiter,
            clock=clock,
        )
        self._loops: list[asyncio.Task[None]] = []

    def _on_persistence_failure(self, exc: BaseException) -> None:
        self.metrics.state.persistence_failures += 1

    @property
    def is_running(self) -> bool:
        return bool(self._loops)

    async def start(self) -> None:
        if self._loops:
            return
        self._loops = [
            asyncio.create_task(self.reaper.run(), name="idle_reaper"),
            asyncio.create_task(self.reaper.run_typing_sweep(), name="typing_sweep"),
        ]
        logger.info(
            "Realtime gateway started",
            reaper_interval=self.settings.reaper_interval,
            idle_timeout=self.settings.idle_timeout,
            typing_auto_clear=self.settings.typing_auto_clear,
        )

    async def stop(self) -> None:
        for task in self._loops:
            task.cancel()
        for task in self._loops:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._loops = []

        await self.tasks.drain()
        try:
            await self.persistence.close()
        except Exception as e:
            logger.warning("Error closing persistence", error=str(e))
        logger.info("Realtime gateway stopped")

    def get_stats(self) -> dict[str, Any]:
        """Stats of every component, keyed the way the metrics exporter expects."""
        stats: dict[str, Any] = {
            "connections": self.registry.get_stats(),
            "presence": self.presence.get_stats(),
            "rooms": self.tracker.get_stats(),
            "background_tasks": self.tasks.get_stats(),
            "rate_limiter": self.rate_limiter.get_stats(),
            "reaper": self.reaper.get_stats(),
            "metrics": self.metrics.get_snapshot(),
        }
        if isinstance(self.persistence, GuardedPersistence):
            stats["circuit_breaker"] = self.persistence.breaker.get_stats()
        return stats
