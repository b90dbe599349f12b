"""Worker pools that drain a JobQueue.

Each pool runs ``concurrency`` consumer coroutines. A pool-wide token bucket
caps job starts per second, and an optional limiter key per job serializes
work against the same upstream (one storefront, one courier).

Failure routing:
    NotFoundError                          -> ack, dropped with a warning
    ValidationError / VerificationError    -> dead letter, no retry
    AuthError                              -> dead letter, no retry
    anything else (TransientUpstreamError) -> nack, retried with backoff
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from beeylo_sync.errors import (
    AuthError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
    VerificationError,
)
from beeylo_sync.queue.jobs import JobRecord, WebhookJob
from beeylo_sync.queue.queue import JobQueue
from beeylo_sync.ratelimit import (
    GLOBAL_KEY,
    KeyedRateLimiter,
    LimitSpec,
    TokenBucket,
    store_key,
    wait_for_token,
)

logger = logging.getLogger(__name__)

JobHandler = Callable[[Any], Awaitable[Any]]

_PERMANENT_ERRORS = (ValidationError, VerificationError, AuthError)


def webhook_limiter_key(job: WebhookJob) -> str:
    """Webhook jobs are limited per storefront, or globally when untenanted."""
    if job.tenant_id:
        return store_key(job.tenant_id)
    return GLOBAL_KEY


class WorkerPool:
    def __init__(
        self,
        name: str,
        queue: JobQueue,
        handler: JobHandler,
        *,
        concurrency: int = 1,
        jobs_per_second: float = 0.0,
        limiter: KeyedRateLimiter | None = None,
        key_for: Callable[[Any], str] | None = None,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.name = name
        self._queue = queue
        self._handler = handler
        self._concurrency = max(1, concurrency)
        self._limiter = limiter
        self._key_for = key_for
        self._poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep
        self._throttle = TokenBucket(LimitSpec.per_second(jobs_per_second), clock()) if jobs_per_second > 0 else None
        self._throttle_lock = asyncio.Lock()
        self._workers: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return any(not w.done() for w in self._workers)

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._workers = [
            asyncio.create_task(self._run(i), name=f"{self.name}-worker-{i}") for i in range(self._concurrency)
        ]
        logger.info("Started %d %s worker(s)", self._concurrency, self.name)

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop taking new jobs and let in-flight jobs finish.

        Workers still busy after ``timeout`` are cancelled; their leases
        expire and the jobs are recovered on the next maintenance pass.
        """
        if not self._workers:
            return
        self._stopping.set()
        _, pending = await asyncio.wait(self._workers, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Cancelled %d busy %s worker(s) at shutdown", len(pending), self.name)
        self._workers = []
        logger.info("Stopped %s workers", self.name)

    async def _run(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                await self._throttled()
                record = await self._queue.dequeue(timeout=self._poll_interval)
                if record is None:
                    continue
                await self._execute(record)
            except Exception:
                # A lease left behind by a failed ack/nack is recovered by maintenance.
                logger.exception("%s worker %d failed, backing off", self.name, index)
                await self._sleep(self._poll_interval)
        logger.debug("%s worker %d exiting", self.name, index)

    async def _throttled(self) -> None:
        if self._throttle is None:
            return
        async with self._throttle_lock:
            await wait_for_token(self._throttle, self._clock, self._sleep)

    async def run_once(self) -> bool:
        """Process one ready job if there is one. Returns True if a job ran."""
        record = await self._queue.try_dequeue()
        if record is None:
            return False
        await self._execute(record)
        return True

    async def drain(self, max_jobs: int = 1000) -> int:
        """Process ready jobs until none are left (or ``max_jobs`` ran)."""
        ran = 0
        while ran < max_jobs and await self.run_once():
            ran += 1
        return ran

    async def _call(self, job: Any) -> None:
        if self._limiter is None or self._key_for is None:
            await self._handler(job)
            return
        async with self._limiter.slot(self._key_for(job)):
            await self._handler(job)

    async def _execute(self, record: JobRecord) -> None:
        job = record.job
        try:
            await self._call(job)
        except NotFoundError as exc:
            logger.warning("Job %s on %s dropped, %s not found: %s", record.id, self.name, exc.resource or "record", exc)
            await self._queue.ack(record.id)
        except _PERMANENT_ERRORS as exc:
            self.failed += 1
            await self._queue.bury(record.id, error=f"{type(exc).__name__}: {exc}")
        except RateLimitedError as exc:
            self.failed += 1
            await self._queue.nack(record.id, retry_after=exc.retry_after, error=f"{type(exc).__name__}: {exc}")
        except Exception as exc:
            self.failed += 1
            logger.debug("Job %s on %s raised", record.id, self.name, exc_info=True)
            await self._queue.nack(record.id, error=f"{type(exc).__name__}: {exc}")
        else:
            self.processed += 1
            await self._queue.ack(record.id)
