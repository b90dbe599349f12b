"""Broker backends for JobQueue.

RedisBroker is the durable backend. Per queue it keeps:
- ``{ns}:{queue}:jobs``    hash of job id -> JobRecord JSON
- ``{ns}:{queue}:scores``  hash of job id -> ready-set score
- ``{ns}:{queue}:ready``   sorted set scored by priority, then enqueue order
- ``{ns}:{queue}:delayed`` sorted set scored by due time
- ``{ns}:{queue}:active``  sorted set scored by lease expiry
- ``{ns}:{queue}:dead``    sorted set scored by dead-letter time

MemoryBroker mirrors the same semantics with heaps for tests and local runs.
"""

from __future__ import annotations

import heapq
import logging
from typing import Protocol, runtime_checkable

from beeylo_sync.queue.jobs import JobRecord, JobState

logger = logging.getLogger(__name__)

# Ready-set score = priority * _PRIORITY_STRIDE + seq. Exact in a double
# while seq stays below the stride.
_PRIORITY_STRIDE = 10**12


def ready_score(priority: int, seq: int) -> int:
    return priority * _PRIORITY_STRIDE + seq


@runtime_checkable
class Broker(Protocol):
    async def next_seq(self, queue: str) -> int: ...

    async def add(self, record: JobRecord, now: float) -> None: ...

    async def pop(self, queue: str, now: float, lease_until: float) -> JobRecord | None: ...

    async def get(self, queue: str, job_id: str) -> JobRecord | None: ...

    async def save(self, record: JobRecord) -> None: ...

    async def complete(self, queue: str, job_id: str) -> None: ...

    async def reschedule(self, record: JobRecord) -> None: ...

    async def bury(self, record: JobRecord) -> None: ...

    async def dead(self, queue: str, limit: int) -> list[JobRecord]: ...

    async def purge_dead(self, queue: str, older_than: float) -> int: ...

    async def recover_expired(self, queue: str, now: float) -> int: ...

    async def next_due(self, queue: str) -> float | None: ...

    async def counts(self, queue: str) -> dict[str, int]: ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class _MemoryQueue:
    __slots__ = ("records", "ready", "delayed", "active", "dead", "seq")

    def __init__(self) -> None:
        self.records: dict[str, JobRecord] = {}
        self.ready: list[tuple[int, int, str]] = []
        self.delayed: list[tuple[float, int, str]] = []
        self.active: dict[str, float] = {}
        self.dead: dict[str, float] = {}
        self.seq = 0


class MemoryBroker:
    """Process-local broker. Not durable."""

    def __init__(self) -> None:
        self._queues: dict[str, _MemoryQueue] = {}

    def _q(self, queue: str) -> _MemoryQueue:
        q = self._queues.get(queue)
        if q is None:
            q = self._queues[queue] = _MemoryQueue()
        return q

    def _place(self, q: _MemoryQueue, record: JobRecord, now: float) -> None:
        if record.available_at > now:
            heapq.heappush(q.delayed, (record.available_at, record.seq, record.id))
        else:
            heapq.heappush(q.ready, (record.priority, record.seq, record.id))

    async def next_seq(self, queue: str) -> int:
        q = self._q(queue)
        q.seq += 1
        return q.seq

    async def add(self, record: JobRecord, now: float) -> None:
        q = self._q(record.queue)
        q.records[record.id] = record
        self._place(q, record, now)

    async def pop(self, queue: str, now: float, lease_until: float) -> JobRecord | None:
        q = self._q(queue)
        while q.delayed and q.delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(q.delayed)
            record = q.records.get(job_id)
            if record is not None:
                heapq.heappush(q.ready, (record.priority, record.seq, job_id))
        while q.ready:
            _, _, job_id = heapq.heappop(q.ready)
            record = q.records.get(job_id)
            if record is None or job_id in q.dead:
                continue
            q.active[job_id] = lease_until
            return record
        return None

    async def get(self, queue: str, job_id: str) -> JobRecord | None:
        return self._q(queue).records.get(job_id)

    async def save(self, record: JobRecord) -> None:
        self._q(record.queue).records[record.id] = record

    async def complete(self, queue: str, job_id: str) -> None:
        q = self._q(queue)
        q.active.pop(job_id, None)
        q.records.pop(job_id, None)

    async def reschedule(self, record: JobRecord) -> None:
        q = self._q(record.queue)
        q.active.pop(record.id, None)
        q.records[record.id] = record
        heapq.heappush(q.delayed, (record.available_at, record.seq, record.id))

    async def bury(self, record: JobRecord) -> None:
        q = self._q(record.queue)
        q.active.pop(record.id, None)
        q.records[record.id] = record
        q.dead[record.id] = record.dead_at or 0.0

    async def dead(self, queue: str, limit: int) -> list[JobRecord]:
        q = self._q(queue)
        ids = sorted(q.dead, key=q.dead.__getitem__, reverse=True)[:limit]
        return [q.records[i] for i in ids if i in q.records]

    async def purge_dead(self, queue: str, older_than: float) -> int:
        q = self._q(queue)
        expired = [i for i, ts in q.dead.items() if ts <= older_than]
        for job_id in expired:
            del q.dead[job_id]
            q.records.pop(job_id, None)
        return len(expired)

    async def recover_expired(self, queue: str, now: float) -> int:
        q = self._q(queue)
        expired = [i for i, lease in q.active.items() if lease <= now]
        for job_id in expired:
            del q.active[job_id]
            record = q.records.get(job_id)
            if record is not None:
                heapq.heappush(q.ready, (record.priority, record.seq, job_id))
        return len(expired)

    async def next_due(self, queue: str) -> float | None:
        q = self._q(queue)
        return q.delayed[0][0] if q.delayed else None

    async def counts(self, queue: str) -> dict[str, int]:
        q = self._q(queue)
        return {
            "ready": len(q.ready),
            "delayed": len(q.delayed),
            "active": len(q.active),
            "dead": len(q.dead),
        }


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------

# KEYS: ready, delayed, active, scores  ARGV: now, lease_until
_POP_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for _, id in ipairs(due) do
  local score = redis.call('HGET', KEYS[4], id)
  if score then redis.call('ZADD', KEYS[1], score, id) end
  redis.call('ZREM', KEYS[2], id)
end
local popped = redis.call('ZPOPMIN', KEYS[1])
if #popped == 0 then return false end
redis.call('ZADD', KEYS[3], ARGV[2], popped[1])
return popped[1]
"""

# KEYS: active, ready, scores  ARGV: now
_RECOVER_SCRIPT = """
local expired = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
for _, id in ipairs(expired) do
  redis.call('ZREM', KEYS[1], id)
  local score = redis.call('HGET', KEYS[3], id)
  if score then redis.call('ZADD', KEYS[2], score, id) end
end
return #expired
"""


class RedisBroker:
    """Durable broker on Redis sorted sets.

    Pop and lease recovery run as Lua scripts so a job is never handed to
    two workers and never lost between the ready set and its lease.
    """

    def __init__(self, redis, namespace: str = "beeylo"):
        self._redis = redis
        self._ns = namespace
        self._pop = redis.register_script(_POP_SCRIPT)
        self._recover = redis.register_script(_RECOVER_SCRIPT)

    @classmethod
    def from_url(cls, url: str, namespace: str = "beeylo") -> RedisBroker:
        import redis.asyncio as aioredis

        return cls(aioredis.from_url(url, decode_responses=True), namespace)

    async def close(self) -> None:
        await self._redis.aclose()

    def _key(self, queue: str, part: str) -> str:
        return f"{self._ns}:{queue}:{part}"

    async def next_seq(self, queue: str) -> int:
        return int(await self._redis.incr(self._key(queue, "seq")))

    async def add(self, record: JobRecord, now: float) -> None:
        q = record.queue
        score = ready_score(record.priority, record.seq)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._key(q, "jobs"), record.id, record.to_json())
            pipe.hset(self._key(q, "scores"), record.id, score)
            if record.available_at > now:
                pipe.zadd(self._key(q, "delayed"), {record.id: record.available_at})
            else:
                pipe.zadd(self._key(q, "ready"), {record.id: score})
            await pipe.execute()

    async def pop(self, queue: str, now: float, lease_until: float) -> JobRecord | None:
        job_id = await self._pop(
            keys=[
                self._key(queue, "ready"),
                self._key(queue, "delayed"),
                self._key(queue, "active"),
                self._key(queue, "scores"),
            ],
            args=[now, lease_until],
        )
        if not job_id:
            return None
        record = await self.get(queue, job_id)
        if record is None:
            logger.warning("Job %s leased from %s but its record is missing", job_id, queue)
            await self._redis.zrem(self._key(queue, "active"), job_id)
        return record

    async def get(self, queue: str, job_id: str) -> JobRecord | None:
        raw = await self._redis.hget(self._key(queue, "jobs"), job_id)
        return JobRecord.from_json(raw) if raw else None

    async def save(self, record: JobRecord) -> None:
        await self._redis.hset(self._key(record.queue, "jobs"), record.id, record.to_json())

    async def complete(self, queue: str, job_id: str) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self._key(queue, "active"), job_id)
            pipe.hdel(self._key(queue, "jobs"), job_id)
            pipe.hdel(self._key(queue, "scores"), job_id)
            await pipe.execute()

    async def reschedule(self, record: JobRecord) -> None:
        q = record.queue
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._key(q, "jobs"), record.id, record.to_json())
            pipe.zrem(self._key(q, "active"), record.id)
            pipe.zadd(self._key(q, "delayed"), {record.id: record.available_at})
            await pipe.execute()

    async def bury(self, record: JobRecord) -> None:
        q = record.queue
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._key(q, "jobs"), record.id, record.to_json())
            pipe.hdel(self._key(q, "scores"), record.id)
            pipe.zrem(self._key(q, "active"), record.id)
            pipe.zadd(self._key(q, "dead"), {record.id: record.dead_at or 0.0})
            await pipe.execute()

    async def dead(self, queue: str, limit: int) -> list[JobRecord]:
        ids = await self._redis.zrevrange(self._key(queue, "dead"), 0, limit - 1)
        if not ids:
            return []
        raws = await self._redis.hmget(self._key(queue, "jobs"), ids)
        return [JobRecord.from_json(raw) for raw in raws if raw]

    async def purge_dead(self, queue: str, older_than: float) -> int:
        dead_key = self._key(queue, "dead")
        ids = await self._redis.zrangebyscore(dead_key, "-inf", older_than)
        if not ids:
            return 0
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(dead_key, *ids)
            pipe.hdel(self._key(queue, "jobs"), *ids)
            await pipe.execute()
        return len(ids)

    async def recover_expired(self, queue: str, now: float) -> int:
        recovered = await self._recover(
            keys=[
                self._key(queue, "active"),
                self._key(queue, "ready"),
                self._key(queue, "scores"),
            ],
            args=[now],
        )
        return int(recovered or 0)

    async def next_due(self, queue: str) -> float | None:
        head = await self._redis.zrange(self._key(queue, "delayed"), 0, 0, withscores=True)
        return float(head[0][1]) if head else None

    async def counts(self, queue: str) -> dict[str, int]:
        async with self._redis.pipeline(transaction=False) as pipe:
            for part in ("ready", "delayed", "active", "dead"):
                pipe.zcard(self._key(queue, part))
            ready, delayed, active, dead = await pipe.execute()
        return {"ready": ready, "delayed": delayed, "active": active, "dead": dead}
