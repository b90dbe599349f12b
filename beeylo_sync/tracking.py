"""Tracking normalizer and the tracking refresh service.

The normalizer resolves a free-text carrier name to a Courier once, picks
that courier's adapter and runs the lookup on the courier's rate-limiter
key. Unsupported or unconfigured carriers return None: the storefront's own
tracking status stays authoritative and nothing is retried.

TrackingService turns a lookup into stored state: it appends events,
updates the fulfillment's delivery fields and emits the delivery
notification once.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Mapping

from beeylo_sync.couriers import Courier, CourierAdapter, resolve_courier
from beeylo_sync.couriers.models import TrackingResponse, TrackingStatus
from beeylo_sync.errors import NotFoundError
from beeylo_sync.notifications.dispatcher import NotificationDispatcher
from beeylo_sync.queue.jobs import JobOptions, TrackingJob
from beeylo_sync.queue.queue import JobQueue
from beeylo_sync.ratelimit import KeyedRateLimiter, courier_key
from beeylo_sync.store.base import StateStore
from beeylo_sync.store.models import CanonicalFulfillment, TrackingEvent

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TrackingNormalizer:
    def __init__(self, adapters: Mapping[Courier, CourierAdapter], limiter: KeyedRateLimiter):
        self._adapters = dict(adapters)
        self._limiter = limiter

    def adapter_for(self, courier_name: str | None) -> CourierAdapter | None:
        """The configured adapter for ``courier_name``, or None when unsupported."""
        courier = resolve_courier(courier_name)
        if courier is None:
            logger.info("Courier %r not supported, using storefront tracking", courier_name)
            return None
        adapter = self._adapters.get(courier)
        if adapter is None or not adapter.is_configured:
            logger.info("%s API not configured, using storefront tracking", courier.value)
            return None
        return adapter

    async def fetch(self, courier_name: str | None, tracking_number: str) -> TrackingResponse | None:
        adapter = self.adapter_for(courier_name)
        if adapter is None:
            return None
        return await self._limiter.schedule(courier_key(adapter.name), adapter.fetch_tracking, tracking_number)


class TrackingService:
    def __init__(
        self,
        store: StateStore,
        normalizer: TrackingNormalizer,
        notifications: NotificationDispatcher,
        queue: JobQueue | None = None,
        *,
        recheck_after_seconds: float = 7200.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._normalizer = normalizer
        self._notifications = notifications
        self._queue = queue
        self._recheck_after = recheck_after_seconds
        self._clock = clock

    async def schedule(self, fulfillment: CanonicalFulfillment, delay: float | None = None) -> str | None:
        """Queue a tracking refresh for ``fulfillment``.

        ``delay`` None applies the queue's initial grace period.
        """
        if self._queue is None or not fulfillment.tracking_number:
            return None
        if resolve_courier(fulfillment.tracking_company) is None:
            logger.info(
                "Not tracking fulfillment %s: courier %r unsupported",
                fulfillment.id,
                fulfillment.tracking_company,
            )
            return None
        order = await self._store.get_order(fulfillment.order_ref)
        if order is None:
            raise NotFoundError(f"order {fulfillment.order_ref} not found", resource="order", key=fulfillment.order_ref)
        job = TrackingJob(
            fulfillment_id=fulfillment.id,
            tracking_number=fulfillment.tracking_number,
            courier_name=fulfillment.tracking_company or "",
            tenant_id=order.tenant_id,
        )
        return await self._queue.enqueue(job, options=JobOptions(delay=delay))

    async def refresh(self, job: TrackingJob) -> TrackingResponse | None:
        fulfillment = await self._store.get_fulfillment(job.fulfillment_id)
        if fulfillment is None:
            raise NotFoundError(
                f"fulfillment {job.fulfillment_id} not found", resource="fulfillment", key=job.fulfillment_id
            )

        response = await self._normalizer.fetch(job.courier_name, job.tracking_number)
        if response is None:
            return None

        appended = 0
        for event in response.events:
            stored = await self._store.create_tracking_event(
                TrackingEvent(
                    fulfillment_ref=fulfillment.id,
                    tracking_number=job.tracking_number,
                    courier=response.courier,
                    status=event.status,
                    description=event.description,
                    location=event.location,
                    timestamp=event.timestamp,
                )
            )
            if stored is not None:
                appended += 1

        actual_delivery = response.actual_delivery
        if actual_delivery is None and response.status is TrackingStatus.DELIVERED:
            delivered = [e.timestamp for e in response.events if e.status is TrackingStatus.DELIVERED]
            actual_delivery = delivered[-1] if delivered else self._clock()

        updated = await self._store.update_fulfillment_tracking(
            fulfillment.id,
            shipment_status=response.status.value,
            estimated_delivery=response.estimated_delivery,
            actual_delivery=actual_delivery,
        )
        logger.info(
            "Tracking %s via %s: status=%s, %d new event(s)",
            job.tracking_number,
            response.courier,
            response.status.value,
            appended,
        )

        if actual_delivery is not None:
            await self._notify_delivered(updated)
        return response

    async def _notify_delivered(self, fulfillment: CanonicalFulfillment) -> None:
        order = await self._store.get_order(fulfillment.order_ref)
        tenant = await self._store.get_tenant(order.tenant_id) if order else None
        if order is None or tenant is None:
            logger.warning("Delivered fulfillment %s has no order or tenant", fulfillment.id)
            return
        await self._notifications.on_delivered(order, fulfillment, tenant)

    async def recheck_active(self) -> int:
        """Queue refreshes for undelivered shipments not updated recently."""
        now = self._clock()
        scheduled = 0
        for fulfillment in await self._store.list_active_fulfillments():
            latest = await self._store.latest_tracking_event(fulfillment.id)
            if latest is not None and latest.recorded_at is not None:
                if (now - latest.recorded_at).total_seconds() < self._recheck_after:
                    continue
            if await self.schedule(fulfillment, delay=0):
                scheduled += 1
        if scheduled:
            logger.info("Scheduled %d tracking recheck(s)", scheduled)
        return scheduled
