"""JobQueue: priority ordering, retry backoff and dead letters over a Broker.

Lifecycle of a job:
    enqueue -> (delayed) -> ready -> active -> ack (removed)
                                           -> nack -> delayed (backoff)
                                           -> nack with attempts exhausted -> dead
                                           -> bury -> dead

Lower priority values are served first; equal priorities are FIFO by
enqueue order. Dead letters are kept for ``retention_seconds`` and are
never retried.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Callable

from beeylo_sync.queue.broker import Broker
from beeylo_sync.queue.jobs import JobOptions, JobRecord, JobState, RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 5


class JobQueue:
    def __init__(
        self,
        name: str,
        broker: Broker,
        policy: RetryPolicy,
        *,
        retention_seconds: float = 86400.0,
        lease_seconds: float = 300.0,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.policy = policy
        self._broker = broker
        self._retention = retention_seconds
        self._lease = lease_seconds
        self._poll_interval = poll_interval
        self._clock = clock
        self._wakeup = asyncio.Event()

    # -----------------------------------------------------------------
    # Producer side
    # -----------------------------------------------------------------

    async def enqueue(
        self,
        job: Any,
        priority: int = DEFAULT_PRIORITY,
        options: JobOptions | None = None,
    ) -> str:
        """Persist ``job`` and return its id.

        Args:
            job: A WebhookJob or TrackingJob.
            priority: Lower is served first.
            options: Overrides for delay, attempts and backoff.

        Returns:
            The job id.
        """
        opts = options or JobOptions()
        now = self._clock()
        delay = self.policy.initial_delay if opts.delay is None else opts.delay
        record = JobRecord(
            id=uuid.uuid4().hex,
            queue=self.name,
            kind=job.kind,
            data=job.to_dict(),
            priority=priority,
            seq=await self._broker.next_seq(self.name),
            max_attempts=opts.attempts or self.policy.max_attempts,
            backoff_base=self.policy.base_delay if opts.backoff is None else opts.backoff,
            backoff_cap=self.policy.max_delay if opts.backoff_cap is None else opts.backoff_cap,
            enqueued_at=now,
            available_at=now + max(delay, 0.0),
            state=JobState.DELAYED if delay > 0 else JobState.READY,
        )
        await self._broker.add(record, now)
        self._wakeup.set()
        logger.debug(
            "Enqueued %s job %s on %s (priority=%d, delay=%.1fs)",
            record.kind,
            record.id,
            self.name,
            priority,
            delay,
        )
        return record.id

    # -----------------------------------------------------------------
    # Consumer side
    # -----------------------------------------------------------------

    async def try_dequeue(self) -> JobRecord | None:
        """Lease the next ready job without waiting, or return None."""
        now = self._clock()
        record = await self._broker.pop(self.name, now, now + self._lease)
        if record is None:
            return None
        record.state = JobState.ACTIVE
        record.attempts_made += 1
        await self._broker.save(record)
        return record

    async def dequeue(self, timeout: float | None = None) -> JobRecord | None:
        """Wait for the next ready job. Returns None if ``timeout`` elapses."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            self._wakeup.clear()
            record = await self.try_dequeue()
            if record is not None:
                return record

            wait = self._poll_interval
            due = await self._broker.next_due(self.name)
            if due is not None:
                wait = min(wait, max(due - self._clock(), 0.0))
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                wait = min(wait, remaining)
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass

    async def ack(self, job_id: str) -> None:
        await self._broker.complete(self.name, job_id)

    async def nack(self, job_id: str, retry_after: float | None = None, error: str = "") -> JobState:
        """Return a failed job to the queue, or dead-letter it when exhausted.

        Args:
            job_id: Job that failed.
            retry_after: Explicit delay; defaults to the job's backoff.
            error: Failure description kept on the record.

        Returns:
            The job's new state (DELAYED or DEAD).
        """
        record = await self._require(job_id)
        record.last_error = error
        if record.exhausted:
            await self._bury(record)
            return JobState.DEAD

        delay = record.next_delay() if retry_after is None else retry_after
        record.delays.append(delay)
        record.available_at = self._clock() + delay
        record.state = JobState.DELAYED
        await self._broker.reschedule(record)
        logger.info(
            "Job %s on %s failed (attempt %d/%d), retrying in %.1fs: %s",
            job_id,
            self.name,
            record.attempts_made,
            record.max_attempts,
            delay,
            error,
        )
        return JobState.DELAYED

    async def bury(self, job_id: str, error: str = "") -> None:
        """Dead-letter a job immediately, skipping any remaining attempts."""
        record = await self._require(job_id)
        record.last_error = error
        await self._bury(record)

    async def _bury(self, record: JobRecord) -> None:
        record.state = JobState.DEAD
        record.dead_at = self._clock()
        await self._broker.bury(record)
        logger.error(
            "Job %s on %s moved to dead letters after %d attempt(s): %s",
            record.id,
            self.name,
            record.attempts_made,
            record.last_error,
        )

    async def _require(self, job_id: str) -> JobRecord:
        record = await self._broker.get(self.name, job_id)
        if record is None:
            raise KeyError(f"unknown job {job_id} on {self.name}")
        return record

    # -----------------------------------------------------------------
    # Operator / maintenance
    # -----------------------------------------------------------------

    async def get(self, job_id: str) -> JobRecord | None:
        return await self._broker.get(self.name, job_id)

    async def dead_letters(self, limit: int = 50) -> list[JobRecord]:
        return await self._broker.dead(self.name, limit)

    async def purge_dead_letters(self) -> int:
        purged = await self._broker.purge_dead(self.name, self._clock() - self._retention)
        if purged:
            logger.info("Purged %d expired dead letters from %s", purged, self.name)
        return purged

    async def recover_stale(self) -> int:
        """Re-queue jobs whose worker lease expired (crashed mid-job)."""
        recovered = await self._broker.recover_expired(self.name, self._clock())
        if recovered:
            logger.warning("Recovered %d stale job lease(s) on %s", recovered, self.name)
            self._wakeup.set()
        return recovered

    async def stats(self) -> dict[str, int]:
        return await self._broker.counts(self.name)
