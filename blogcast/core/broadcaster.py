"""
Broadcaster.

Resolves channels and identities to connection ids through the registry
and sends frames through the transport. Recipients are snapshotted
synchronously before the first send, so a fan-out reflects the state the
handler just produced even if other handlers run while sends are pending.
"""

from __future__ import annotations

import asyncio
from typing import Any, Iterable

from blogcast.components.connection.registry import ConnectionRegistry
from blogcast.components.endpoints.transport import Transport
from blogcast.components.metrics.collector import MetricsCollector
from blogcast.components.rooms.keys import identity_channel
from blogcast.config.logging import get_logger

logger = get_logger(__name__)

# Sends issued concurrently per batch
DEFAULT_BATCH_SIZE = 50


class Broadcaster:
    """
    Fan-out of frames to connections.

    Delivery is best effort: a failed send is counted and logged at debug
    level, never raised. Dead connections are left to the disconnect path
    or the idle reaper.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        transport: Transport,
        metrics: MetricsCollector,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self._registry = registry
        self._transport = transport
        self._metrics = metrics
        self._batch_size = batch_size

    @property
    def transport(self) -> Transport:
        return self._transport

    async def to_connection(self, connection_id: str, frame: dict[str, Any]) -> bool:
        """Send to a single connection."""
        return await self._deliver([connection_id], frame, context="direct") == 1

    async def to_channel(
        self,
        channel: str,
        frame: dict[str, Any],
        exclude: str | None = None,
    ) -> int:
        """
        Send to every connection joined to `channel`.

        Args:
            exclude: Connection id to skip (the sender).

        Returns:
            Number of connections that received the frame.
        """
        recipients = self._registry.connections_in(channel)
        recipients.discard(exclude)
        return await self._deliver(recipients, frame, context=channel)

    async def to_identity(
        self,
        identity_id: str,
        frame: dict[str, Any],
        exclude: str | None = None,
    ) -> int:
        """Send to an identity's personal channel."""
        return await self.to_channel(identity_channel(identity_id), frame, exclude=exclude)

    async def to_identities(self, identity_ids: Iterable[str], frame: dict[str, Any]) -> int:
        """Send to the personal channels of many identities, each connection once."""
        recipients: set[str] = set()
        for identity_id in identity_ids:
            recipients |= self._registry.connections_in(identity_channel(identity_id))
        return await self._deliver(recipients, frame, context="identities")

    async def _deliver(
        self,
        connection_ids: Iterable[str],
        frame: dict[str, Any],
        context: str,
    ) -> int:
        targets = sorted(connection_ids)
        if not targets:
            return 0

        sent = 0
        failed = 0
        for i in range(0, len(targets), self._batch_size):
            batch = targets[i : i + self._batch_size]
            results = await asyncio.gather(
                *[self._transport.send(cid, frame) for cid in batch],
                return_exceptions=True,
            )
            for cid, result in zip(batch, results):
                if result is True:
                    sent += 1
                    continue
                failed += 1
                if isinstance(result, Exception):
                    logger.debug(
                        "Send raised",
                        context=context,
                        connection_id=cid,
                        error=str(result),
                    )

        self._metrics.record_broadcast(recipients=sent, failed=failed)
        if failed:
            logger.debug(
                "Broadcast completed with failures",
                context=context,
                event=frame.get("event"),
                sent=sent,
                failed=failed,
            )
        return sent
