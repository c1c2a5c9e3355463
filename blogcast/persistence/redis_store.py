"""
Redis-backed persistence collaborator.

Key layout (prefix from settings, default ``blogcast``):
- {prefix}:viewers:{content_id}         sorted set, identity -> last view epoch
- {prefix}:chat:{chat_id}:messages      list of JSON messages (capped)
- {prefix}:engagement:{content_id}      hash, counter name -> total
- {prefix}:followers:{identity_id}      set of follower identity ids
- {prefix}:identity:{identity_id}       hash of public profile fields
"""

from __future__ import annotations

import json
import time
from typing import Any

import redis.asyncio as redis

from blogcast.config.logging import get_logger
from blogcast.config.settings import Settings

logger = get_logger(__name__)

# Messages kept per chat list; older entries are trimmed on append
MAX_CHAT_HISTORY = 1000


class RedisPersistence:
    """`PersistenceService` on top of a `redis.asyncio` client."""

    def __init__(self, client: redis.Redis, key_prefix: str = "blogcast") -> None:
        self._client = client
        self._prefix = key_prefix

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisPersistence":
        client = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=settings.redis_socket_timeout,
            socket_timeout=settings.redis_socket_timeout,
            health_check_interval=30,
        )
        logger.info(
            "Redis persistence initialized",
            key_prefix=settings.redis_key_prefix,
            timeout=settings.redis_socket_timeout,
        )
        return cls(client, key_prefix=settings.redis_key_prefix)

    def _key(self, *parts: str) -> str:
        return ":".join((self._prefix, *parts))

    async def record_viewer_activity(self, content_id: str, identity_id: str) -> None:
        await self._client.zadd(self._key("viewers", content_id), {identity_id: time.time()})

    async def append_message(self, chat_id: str, sender_id: str, message: dict[str, Any]) -> None:
        key = self._key("chat", chat_id, "messages")
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.rpush(key, json.dumps({**message, "senderId": sender_id}))
            pipe.ltrim(key, -MAX_CHAT_HISTORY, -1)
            await pipe.execute()

    async def upsert_engagement_counter(self, content_id: str, counter: str, delta: int = 1) -> int:
        return int(await self._client.hincrby(self._key("engagement", content_id), counter, delta))

    async def fetch_follower_ids(self, identity_id: str) -> list[str]:
        members = await self._client.smembers(self._key("followers", identity_id))
        return sorted(members)

    async def fetch_identity(self, identity_id: str) -> dict[str, Any] | None:
        profile = await self._client.hgetall(self._key("identity", identity_id))
        return profile or None

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Redis persistence closed")
