"""
Idle Reaper.

Two periodic sweeps keep server state from outliving its clients:

- reap: evicts connections silent for longer than `idle_timeout` through
  the same disconnect path the transport uses, then expires typing entries
  older than `typing_reap_timeout` as a backstop, and drops offline
  presence records older than `presence_retention`.
- typing sweep: expires typing entries not refreshed within
  `typing_auto_clear`, so an indicator disappears a few seconds after the
  client stops sending even if it never sends `typing-stop`.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable

from blogcast.components.core.constants import WSCloseCode
from blogcast.components.connection.registry import ConnectionRegistry
from blogcast.components.connection.rate_limiter import MessageRateLimiter
from blogcast.components.endpoints.transport import Transport
from blogcast.components.metrics.collector import MetricsCollector
from blogcast.config.logging import get_logger
from blogcast.config.settings import Settings
from blogcast.core.dispatcher import EventDispatcher

logger = get_logger(__name__)


class IdleReaper:
    """Periodic eviction of idle connections, stale typing entries and old presence records."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        dispatcher: EventDispatcher,
        transport: Transport,
        metrics: MetricsCollector,
        settings: Settings,
        rate_limiter: MessageRateLimiter | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._dispatcher = dispatcher
        self._transport = transport
        self._metrics = metrics
        self._settings = settings
        self._rate_limiter = rate_limiter
        self._clock = clock
        self._cycles = 0

    async def reap(self, now: float | None = None) -> int:
        """
        Run one idle sweep.

        Returns:
            Number of connections evicted.
        """
        now = now if now is not None else self._clock()
        self._cycles += 1

        idle = self._registry.idle_connections(now - self._settings.idle_timeout)
        reaped = 0
        for conn in idle:
            # The connection may have disconnected while an earlier eviction awaited
            if not await self._dispatcher.disconnect(conn.connection_id, reason="idle"):
                continue
            reaped += 1
            await self._transport.close(
                conn.connection_id,
                code=WSCloseCode.GOING_AWAY,
                reason="Idle timeout",
            )
        self._metrics.connections.reaped += reaped

        expired = await self._dispatcher.expire_typing(now - self._settings.typing_reap_timeout)
        evicted = self._dispatcher.presence.prune_offline(now - self._settings.presence_retention)
        self._metrics.state.presence_evicted += len(evicted)

        if self._rate_limiter is not None:
            self._rate_limiter.cleanup_stale(now)

        if reaped or expired or evicted:
            logger.info(
                "Idle sweep completed",
                reaped=reaped,
                typing_expired=expired,
                presence_evicted=len(evicted),
                remaining=self._registry.count(),
            )
        return reaped

    async def sweep_typing(self, now: float | None = None) -> int:
        """Expire typing entries not refreshed within the auto-clear window."""
        now = now if now is not None else self._clock()
        return await self._dispatcher.expire_typing(now - self._settings.typing_auto_clear)

    async def run(self) -> None:
        """Reap every `reaper_interval` seconds until cancelled."""
        while True:
            try:
                await asyncio.sleep(self._settings.reaper_interval)
                await self.reap()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in idle sweep", error=str(e), exc_info=True)

    async def run_typing_sweep(self) -> None:
        """Expire typing entries every `typing_sweep_interval` seconds until cancelled."""
        while True:
            try:
                await asyncio.sleep(self._settings.typing_sweep_interval)
                await self.sweep_typing()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in typing sweep", error=str(e), exc_info=True)

    def get_stats(self) -> dict[str, float | int]:
        return {
            "cycles": self._cycles,
            "idle_timeout": self._settings.idle_timeout,
            "interval": self._settings.reaper_interval,
        }
