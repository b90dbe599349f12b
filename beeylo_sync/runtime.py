"""Process wiring: builds every component from Settings and owns their lifecycle.

One Runtime per process. The FastAPI lifespan and the CLI both create one,
start it, and stop it on the way out.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from beeylo_sync.backfill import ManualSync
from beeylo_sync.config import Settings
from beeylo_sync.couriers import build_adapters
from beeylo_sync.linking import CustomerLinker
from beeylo_sync.notifications.channels import Channel, EmailRelayChannel, InboxChannel, LogChannel
from beeylo_sync.notifications.dispatcher import NotificationDispatcher
from beeylo_sync.queue.broker import Broker, MemoryBroker, RedisBroker
from beeylo_sync.queue.jobs import RetryPolicy
from beeylo_sync.queue.queue import JobQueue
from beeylo_sync.ratelimit import build_limiter
from beeylo_sync.shopify import ShopifyClient
from beeylo_sync.store import build_store
from beeylo_sync.store.base import StateStore
from beeylo_sync.store.models import NotificationChannel, Tenant
from beeylo_sync.sync import SyncEngine
from beeylo_sync.tasks import BestEffortTasks
from beeylo_sync.tracking import TrackingNormalizer, TrackingService
from beeylo_sync.webhooks.idempotency import WebhookDeduplicator
from beeylo_sync.webhooks.processor import WebhookProcessor
from beeylo_sync.worker import WorkerPool, webhook_limiter_key

logger = logging.getLogger(__name__)

WEBHOOK_QUEUE = "webhooks"
TRACKING_QUEUE = "tracking"


class Runtime:
    def __init__(
        self,
        settings: Settings,
        *,
        store: StateStore | None = None,
        broker: Broker | None = None,
        redis=None,
        http_client: httpx.AsyncClient | None = None,
        channels: dict[NotificationChannel, Channel] | None = None,
    ):
        self.settings = settings
        self.store = store if store is not None else build_store(settings.database_url)

        if redis is None and settings.redis_url:
            import redis.asyncio as aioredis

            redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        self.redis = redis
        if broker is None:
            broker = RedisBroker(redis, settings.queue_namespace) if redis is not None else MemoryBroker()
        self.broker = broker

        self.http = http_client or httpx.AsyncClient(timeout=settings.courier_timeout_seconds)
        self._owns_http = http_client is None

        self.webhook_queue = JobQueue(
            WEBHOOK_QUEUE,
            broker,
            RetryPolicy(
                max_attempts=settings.webhook_max_attempts,
                base_delay=settings.webhook_backoff_seconds,
                max_delay=settings.webhook_backoff_cap_seconds,
            ),
            retention_seconds=settings.dead_letter_retention_seconds,
            lease_seconds=settings.job_lease_seconds,
        )
        self.tracking_queue = JobQueue(
            TRACKING_QUEUE,
            broker,
            RetryPolicy(
                max_attempts=settings.tracking_max_attempts,
                base_delay=settings.tracking_backoff_seconds,
                max_delay=settings.tracking_backoff_cap_seconds,
                initial_delay=settings.tracking_initial_delay_seconds,
            ),
            retention_seconds=settings.dead_letter_retention_seconds,
            lease_seconds=settings.job_lease_seconds,
        )
        self.queues = {q.name: q for q in (self.webhook_queue, self.tracking_queue)}

        self.limiter = build_limiter(settings)
        self.tasks = BestEffortTasks()
        self.dedup = WebhookDeduplicator(redis)

        if channels is None:
            email: Channel = (
                EmailRelayChannel(settings.email_relay_url, self.http) if settings.email_relay_url else LogChannel()
            )
            channels = {NotificationChannel.IN_APP: InboxChannel(self.store), NotificationChannel.EMAIL: email}
        self.notifications = NotificationDispatcher(
            self.store, channels, max_attempts=settings.notification_max_attempts
        )

        self.adapters = build_adapters(settings, self.http)
        self.normalizer = TrackingNormalizer(self.adapters, self.limiter)
        self.tracking = TrackingService(
            self.store,
            self.normalizer,
            self.notifications,
            self.tracking_queue,
            recheck_after_seconds=settings.tracking_recheck_after_seconds,
        )
        self.linker = CustomerLinker(self.store)
        self.sync = SyncEngine(self.store, self.linker, on_fulfillment=self.tracking.schedule)
        self.processor = WebhookProcessor(
            self.store, self.sync, self.notifications, self.tasks, shopify_factory=self.shopify_client
        )
        self.manual_sync = ManualSync(self.store, self.webhook_queue, self.shopify_client)

        self.webhook_workers = WorkerPool(
            WEBHOOK_QUEUE,
            self.webhook_queue,
            self.processor.process,
            concurrency=settings.webhook_concurrency,
            jobs_per_second=settings.webhook_jobs_per_second,
            limiter=self.limiter,
            key_for=webhook_limiter_key,
        )
        self.tracking_workers = WorkerPool(
            TRACKING_QUEUE,
            self.tracking_queue,
            self.tracking.refresh,
            concurrency=settings.tracking_concurrency,
            jobs_per_second=settings.tracking_jobs_per_second,
        )
        self._periodic: list[asyncio.Task] = []

    def shopify_client(self, tenant: Tenant) -> ShopifyClient:
        return ShopifyClient(
            tenant, self.limiter, api_version=self.settings.shopify_api_version, client=self.http
        )

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def start(self, workers: bool = True) -> None:
        ensure_schema = getattr(self.store, "ensure_schema", None)
        if ensure_schema is not None:
            await ensure_schema()
        await self.recover()
        if not workers:
            return
        self.webhook_workers.start()
        self.tracking_workers.start()
        s = self.settings
        self._periodic = [
            self._every("notification-sweep", s.notification_sweep_interval_seconds, self._sweep_notifications),
            self._every("tracking-recheck", s.tracking_recheck_interval_seconds, self.tracking.recheck_active),
            self._every("queue-maintenance", s.maintenance_interval_seconds, self.maintain_queues),
            self._every("limiter-eviction", s.maintenance_interval_seconds, self._evict_limiter),
        ]
        logger.info("Runtime started (store=%s, broker=%s)", type(self.store).__name__, type(self.broker).__name__)

    async def stop(self) -> None:
        for task in self._periodic:
            task.cancel()
        await asyncio.gather(*self._periodic, return_exceptions=True)
        self._periodic = []
        await self.webhook_workers.stop()
        await self.tracking_workers.stop()
        await self.tasks.drain(timeout=10.0)
        if self._owns_http:
            await self.http.aclose()
        await self.store.close()
        if self.redis is not None:
            await self.redis.aclose()
        logger.info("Runtime stopped")

    # ── Periodic work ───────────────────────────────────────────────────

    def _every(self, name: str, interval: float, fn: Callable[[], Awaitable[object]]) -> asyncio.Task:
        async def loop() -> None:
            while True:
                await asyncio.sleep(interval)
                try:
                    await fn()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Periodic job %s failed", name)

        return asyncio.create_task(loop(), name=name)

    async def _sweep_notifications(self) -> int:
        return await self.notifications.sweep_pending(self.settings.notification_sweep_batch)

    async def _evict_limiter(self) -> int:
        return self.limiter.evict_idle()

    async def recover(self) -> int:
        recovered = 0
        for queue in self.queues.values():
            recovered += await queue.recover_stale()
        return recovered

    async def maintain_queues(self) -> None:
        for queue in self.queues.values():
            await queue.purge_dead_letters()
            await queue.recover_stale()

    async def queue_stats(self) -> dict[str, dict[str, int]]:
        return {name: await queue.stats() for name, queue in self.queues.items()}
