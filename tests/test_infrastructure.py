"""
Tests for the supporting infrastructure: circuit breaker, background task
runner, metrics export and persistence backends.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from blogcast.components.core.exceptions import CircuitOpenError
from blogcast.components.metrics.collector import MetricsCollector
from blogcast.components.metrics.prometheus import PrometheusFormatter
from blogcast.components.resilience.circuit_breaker import CircuitBreaker, CircuitState
from blogcast.core.tasks import BackgroundTasks
from blogcast.persistence.guarded import GuardedPersistence
from blogcast.persistence.memory import InMemoryPersistence
from blogcast.persistence.redis_store import MAX_CHAT_HISTORY, RedisPersistence


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_opens_after_threshold_and_fails_fast(self):
        now = [0.0]
        breaker = CircuitBreaker("test", failure_threshold=2, recovery_timeout=10, clock=lambda: now[0])

        for _ in range(2):
            with pytest.raises(ConnectionError):
                async with breaker:
                    raise ConnectionError("down")

        assert breaker.state is CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            async with breaker:
                pass
        assert breaker.get_stats()["rejected_calls"] == 1

    @pytest.mark.asyncio
    async def test_half_open_trial_closes_on_success(self):
        now = [0.0]
        breaker = CircuitBreaker("test", failure_threshold=1, recovery_timeout=10, clock=lambda: now[0])
        with pytest.raises(ConnectionError):
            async with breaker:
                raise ConnectionError("down")

        now[0] = 11.0
        async with breaker:
            pass

        assert breaker.is_closed
        assert breaker.get_stats()["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        now = [0.0]
        breaker = CircuitBreaker("test", failure_threshold=1, recovery_timeout=10, clock=lambda: now[0])
        breaker.record_failure()
        now[0] = 11.0

        with pytest.raises(ConnectionError):
            async with breaker:
                raise ConnectionError("still down")

        assert breaker.is_open

    @pytest.mark.asyncio
    async def test_protect_decorator(self):
        breaker = CircuitBreaker("test")

        @breaker.protect
        async def double(x):
            return x * 2

        assert await double(4) == 8
        assert breaker.get_stats()["successful_calls"] == 1

    def test_reset(self):
        breaker = CircuitBreaker("test", failure_threshold=1)
        breaker.record_failure()
        breaker.reset()
        assert breaker.is_closed


class TestBackgroundTasks:

    @pytest.mark.asyncio
    async def test_failures_are_counted_not_raised(self):
        failures = []
        tasks = BackgroundTasks(on_failure=failures.append)

        async def boom():
            raise RuntimeError("storage down")

        async def fine():
            return 1

        tasks.spawn(boom(), name="boom")
        tasks.spawn(fine(), name="fine")
        await tasks.drain()

        assert tasks.pending == 0
        assert [type(e) for e in failures] == [RuntimeError]
        assert tasks.get_stats() == {"pending": 0, "spawned": 2, "failed": 1}

    @pytest.mark.asyncio
    async def test_circuit_open_is_a_failure_too(self):
        failures = []
        tasks = BackgroundTasks(on_failure=failures.append)

        async def rejected():
            raise CircuitOpenError("open")

        tasks.spawn(rejected(), name="rejected")
        await tasks.drain()

        assert len(failures) == 1

    @pytest.mark.asyncio
    async def test_drain_cancels_leftovers(self):
        tasks = BackgroundTasks()
        task = tasks.spawn(asyncio.sleep(10), name="slow")

        await tasks.drain(timeout=0.05)

        assert task.cancelled()
        assert tasks.pending == 0


class TestMetrics:

    def test_snapshot_and_reset(self):
        metrics = MetricsCollector()
        metrics.events.processed += 3
        metrics.record_broadcast(recipients=4, failed=1)
        metrics.increment("custom")

        snapshot = metrics.get_snapshot()
        assert snapshot["events_processed"] == 3
        assert snapshot["broadcasts_total"] == 1
        assert snapshot["broadcasts_failed_sends"] == 1
        assert snapshot["custom"] == 1

        assert metrics.reset()["broadcasts_recipients"] == 4
        assert metrics.get_snapshot()["broadcasts_recipients"] == 0

    def test_prometheus_output(self):
        metrics = MetricsCollector()
        metrics.events.processed = 7
        stats = {
            "connections": {"connections": 2, "identities": 1, "channels": 3},
            "rooms": {"rooms_total": 1, "rooms_by_kind": {"chat": 1, "typing": 0}},
            "metrics": metrics.get_snapshot(),
            "circuit_breaker": {"name": "persistence", "state": "open"},
        }

        output = PrometheusFormatter(prefix="test").format_all_metrics(stats)

        assert "# TYPE test_events_processed counter" in output
        assert "test_events_processed 7" in output
        assert "test_connections_active 2" in output
        assert 'test_rooms_by_kind{kind="chat"} 1' in output
        assert 'test_circuit_breaker_open{name="persistence"} 1' in output
        # Missing sections render as zero
        assert "test_identities_online 0" in output
        assert output.endswith("\n")


class TestInMemoryPersistence:

    @pytest.mark.asyncio
    async def test_counters_never_go_negative(self):
        store = InMemoryPersistence()
        assert await store.upsert_engagement_counter("c1", "likes") == 1
        assert await store.upsert_engagement_counter("c1", "likes", -1) == 0
        assert await store.upsert_engagement_counter("c1", "likes", -1) == 0

    @pytest.mark.asyncio
    async def test_followers_and_identities(self):
        store = InMemoryPersistence()
        store.set_followers("u1", {"u3", "u2"})
        store.set_identity("u1", {"displayName": "Ana"})

        assert await store.fetch_follower_ids("u1") == ["u2", "u3"]
        assert await store.fetch_follower_ids("nobody") == []
        assert await store.fetch_identity("u1") == {"displayName": "Ana"}
        assert await store.fetch_identity("nobody") is None


class TestGuardedPersistence:

    @pytest.mark.asyncio
    async def test_breaker_opens_on_backend_errors(self):
        inner = InMemoryPersistence()
        inner.append_message = AsyncMock(side_effect=ConnectionError("down"))
        guarded = GuardedPersistence(inner, CircuitBreaker("persistence", failure_threshold=2))

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await guarded.append_message("9", "u1", {"content": "hi"})

        with pytest.raises(CircuitOpenError):
            await guarded.append_message("9", "u1", {"content": "hi"})
        assert inner.append_message.await_count == 2

    @pytest.mark.asyncio
    async def test_passes_results_through(self):
        inner = InMemoryPersistence()
        inner.set_followers("u1", ["u2"])
        guarded = GuardedPersistence(inner, CircuitBreaker("persistence"))

        assert await guarded.fetch_follower_ids("u1") == ["u2"]
        assert await guarded.upsert_engagement_counter("c1", "views") == 1


class TestRedisPersistence:

    def _client(self):
        client = MagicMock()
        client.zadd = AsyncMock()
        client.hincrby = AsyncMock(return_value=5)
        client.smembers = AsyncMock(return_value={"u3", "u2"})
        client.hgetall = AsyncMock(return_value={})
        client.aclose = AsyncMock()

        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[1, True])
        pipeline_cm = MagicMock()
        pipeline_cm.__aenter__ = AsyncMock(return_value=pipe)
        pipeline_cm.__aexit__ = AsyncMock(return_value=False)
        client.pipeline = MagicMock(return_value=pipeline_cm)
        return client, pipe

    @pytest.mark.asyncio
    async def test_key_layout(self):
        client, pipe = self._client()
        store = RedisPersistence(client, key_prefix="bc")

        await store.record_viewer_activity("c1", "u1")
        assert client.zadd.await_args.args[0] == "bc:viewers:c1"

        assert await store.upsert_engagement_counter("c1", "likes", -1) == 5
        client.hincrby.assert_awaited_with("bc:engagement:c1", "likes", -1)

        assert await store.fetch_follower_ids("u1") == ["u2", "u3"]
        client.smembers.assert_awaited_with("bc:followers:u1")

        assert await store.fetch_identity("u1") is None

    @pytest.mark.asyncio
    async def test_append_message_is_capped(self):
        client, pipe = self._client()
        store = RedisPersistence(client, key_prefix="bc")

        await store.append_message("9", "u1", {"content": "hi"})

        key, raw = pipe.rpush.call_args.args
        assert key == "bc:chat:9:messages"
        assert json.loads(raw) == {"content": "hi", "senderId": "u1"}
        pipe.ltrim.assert_called_once_with(key, -MAX_CHAT_HISTORY, -1)
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close(self):
        client, _ = self._client()
        await RedisPersistence(client).close()
        client.aclose.assert_awaited_once()
