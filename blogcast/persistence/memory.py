"""
In-process persistence backend for development and tests.
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Any

from blogcast.config.logging import get_logger

logger = get_logger(__name__)


class InMemoryPersistence:
    """
    Dict-backed implementation of `PersistenceService`.

    Follower graphs and profiles are seeded with `set_followers` and
    `set_identity`; nothing else writes them.
    """

    def __init__(self) -> None:
        self.viewer_activity: dict[str, dict[str, float]] = defaultdict(dict)
        self.messages: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self.counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._followers: dict[str, set[str]] = {}
        self._identities: dict[str, dict[str, Any]] = {}

    def set_followers(self, identity_id: str, follower_ids: list[str] | set[str]) -> None:
        self._followers[identity_id] = set(follower_ids)

    def set_identity(self, identity_id: str, profile: dict[str, Any]) -> None:
        self._identities[identity_id] = dict(profile)

    async def record_viewer_activity(self, content_id: str, identity_id: str) -> None:
        self.viewer_activity[content_id][identity_id] = time.time()

    async def append_message(self, chat_id: str, sender_id: str, message: dict[str, Any]) -> None:
        self.messages[chat_id].append({**message, "senderId": sender_id})

    async def upsert_engagement_counter(self, content_id: str, counter: str, delta: int = 1) -> int:
        counters = self.counters[content_id]
        counters[counter] = max(0, counters[counter] + delta)
        return counters[counter]

    async def fetch_follower_ids(self, identity_id: str) -> list[str]:
        return sorted(self._followers.get(identity_id, ()))

    async def fetch_identity(self, identity_id: str) -> dict[str, Any] | None:
        profile = self._identities.get(identity_id)
        return dict(profile) if profile is not None else None

    async def close(self) -> None:
        logger.debug("In-memory persistence closed")
