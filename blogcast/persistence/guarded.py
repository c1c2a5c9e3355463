"""
Circuit-breaker wrapper around any persistence backend.
"""

from __future__ import annotations

from typing import Any

from blogcast.components.resilience.circuit_breaker import CircuitBreaker
from blogcast.persistence.base import PersistenceService


class GuardedPersistence:
    """
    Routes every call through a `CircuitBreaker`.

    While the breaker is open, calls raise `CircuitOpenError` without
    touching the backend. Callers run these from background tasks, which
    log and swallow the error.
    """

    def __init__(self, inner: PersistenceService, breaker: CircuitBreaker) -> None:
        self._inner = inner
        self._breaker = breaker

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def inner(self) -> PersistenceService:
        return self._inner

    async def record_viewer_activity(self, content_id: str, identity_id: str) -> None:
        async with self._breaker:
            await self._inner.record_viewer_activity(content_id, identity_id)

    async def append_message(self, chat_id: str, sender_id: str, message: dict[str, Any]) -> None:
        async with self._breaker:
            await self._inner.append_message(chat_id, sender_id, message)

    async def upsert_engagement_counter(self, content_id: str, counter: str, delta: int = 1) -> int:
        async with self._breaker:
            return await self._inner.upsert_engagement_counter(content_id, counter, delta)

    async def fetch_follower_ids(self, identity_id: str) -> list[str]:
        async with self._breaker:
            return await self._inner.fetch_follower_ids(identity_id)

    async def fetch_identity(self, identity_id: str) -> dict[str, Any] | None:
        async with self._breaker:
            return await self._inner.fetch_identity(identity_id)

    async def close(self) -> None:
        await self._inner.close()
