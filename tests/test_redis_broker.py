"""JobQueue on RedisBroker against a live Redis.

Skipped unless a server answers at REDIS_TEST_URL (default: local db 15).
"""

from __future__ import annotations

import os
import uuid
from contextlib import asynccontextmanager

import pytest
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from beeylo_sync.queue.broker import RedisBroker
from beeylo_sync.queue.jobs import JobState, RetryPolicy, TrackingJob, WebhookJob
from beeylo_sync.queue.queue import JobQueue
from tests.factories import FakeClock

REDIS_TEST_URL = os.environ.get("REDIS_TEST_URL", "redis://localhost:6379/15")


@asynccontextmanager
async def _queue(name: str, policy: RetryPolicy, clock: FakeClock, **kwargs):
    client = aioredis.from_url(REDIS_TEST_URL, decode_responses=True)
    try:
        await client.ping()
    except (RedisError, OSError):
        await client.aclose()
        pytest.skip("Redis not available")
    namespace = f"test-{uuid.uuid4().hex[:8]}"
    try:
        yield JobQueue(name, RedisBroker(client, namespace), policy, clock=clock, **kwargs)
    finally:
        keys = [k async for k in client.scan_iter(f"{namespace}:*")]
        if keys:
            await client.delete(*keys)
        await client.aclose()


def _webhook(n: int) -> WebhookJob:
    return WebhookJob("orders/updated", "t1", "s.myshopify.com", f'{{"id": {n}}}', 0.0)


class TestRedisQueue:
    @pytest.mark.asyncio
    async def test_priority_then_fifo(self, clock):
        async with _queue("webhooks", RetryPolicy(3, 2.0, 60.0), clock) as queue:
            await queue.enqueue(_webhook(1), priority=5)
            await queue.enqueue(_webhook(2), priority=1)
            await queue.enqueue(_webhook(3), priority=5)
            await queue.enqueue(_webhook(4), priority=1)

            order = []
            while (record := await queue.try_dequeue()) is not None:
                order.append(record.job.payload()["id"])
            assert order == [2, 4, 1, 3]

    @pytest.mark.asyncio
    async def test_backoff_then_dead_letter(self, clock):
        async with _queue("webhooks", RetryPolicy(3, 2.0, 60.0), clock) as queue:
            job_id = await queue.enqueue(_webhook(1))
            for expected in (JobState.DELAYED, JobState.DELAYED, JobState.DEAD):
                record = await queue.try_dequeue()
                assert record.id == job_id
                assert await queue.nack(job_id, error="boom") is expected
                clock.advance(60)

            (dead,) = await queue.dead_letters()
            assert dead.delays == [2.0, 4.0]
            assert dead.attempts_made == 3
            assert (await queue.stats()) == {"ready": 0, "delayed": 0, "active": 0, "dead": 1}

            clock.advance(86400)
            assert await queue.purge_dead_letters() == 1
            assert await queue.get(job_id) is None

    @pytest.mark.asyncio
    async def test_grace_delay_and_ack(self, clock):
        policy = RetryPolicy(5, 5.0, 600.0, initial_delay=300.0)
        async with _queue("tracking", policy, clock) as queue:
            job_id = await queue.enqueue(TrackingJob("f1", "TN1", "PostNL", "t1"))
            assert await queue.try_dequeue() is None
            assert await queue.stats() == {"ready": 0, "delayed": 1, "active": 0, "dead": 0}

            clock.advance(300)
            record = await queue.try_dequeue()
            assert record.job.fulfillment_id == "f1"
            await queue.ack(job_id)
            assert await queue.get(job_id) is None

    @pytest.mark.asyncio
    async def test_expired_lease_recovered(self, clock):
        async with _queue("webhooks", RetryPolicy(3, 2.0, 60.0), clock, lease_seconds=30.0) as queue:
            job_id = await queue.enqueue(_webhook(1))
            await queue.try_dequeue()
            assert await queue.recover_stale() == 0

            clock.advance(31)
            assert await queue.recover_stale() == 1
            again = await queue.try_dequeue()
            assert again.id == job_id
            assert again.attempts_made == 2
