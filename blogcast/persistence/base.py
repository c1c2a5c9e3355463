"""
Persistence collaborator contract.

The realtime core never owns storage. It calls these methods from
background tasks and treats every failure as non-fatal.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class PersistenceService(Protocol):
    """Storage operations the realtime core depends on."""

    async def record_viewer_activity(self, content_id: str, identity_id: str) -> None:
        """Note that an identity is viewing a piece of content."""
        ...

    async def append_message(self, chat_id: str, sender_id: str, message: dict[str, Any]) -> None:
        """Append a chat message to a chat's history."""
        ...

    async def upsert_engagement_counter(self, content_id: str, counter: str, delta: int = 1) -> int:
        """Add `delta` to a named counter (views, likes, shares) and return the new total."""
        ...

    async def fetch_follower_ids(self, identity_id: str) -> list[str]:
        """Identities that follow `identity_id`."""
        ...

    async def fetch_identity(self, identity_id: str) -> dict[str, Any] | None:
        """Public profile fields of an identity, or None if unknown."""
        ...

    async def close(self) -> None:
        ...
