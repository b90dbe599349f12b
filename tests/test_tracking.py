"""Tests for the tracking normalizer and tracking refresh service."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from beeylo_sync.config import Settings
from beeylo_sync.couriers import build_adapters
from beeylo_sync.couriers.models import TrackingStatus
from beeylo_sync.errors import NotFoundError
from beeylo_sync.notifications.channels import InboxChannel, LogChannel
from beeylo_sync.notifications.dispatcher import NotificationDispatcher
from beeylo_sync.queue.jobs import TrackingJob
from beeylo_sync.ratelimit import KeyedRateLimiter, LimitSpec
from beeylo_sync.store.models import NotificationChannel, NotificationType
from beeylo_sync.sync import SyncEngine
from beeylo_sync.tracking import TrackingNormalizer, TrackingService
from tests.factories import TENANT_ID, fulfillment_payload, order_payload

IN_TRANSIT = {
    "currentStatus": {"StatusCode": "3", "StatusDescription": "Sorted"},
    "statusHistory": [
        {"TimeStamp": "2024-01-16T08:00:00Z", "StatusCode": "2", "StatusDescription": "Received", "LocationCode": "Nieuwegein"},
        {"TimeStamp": "2024-01-16T20:00:00Z", "StatusCode": "3", "StatusDescription": "Sorted", "LocationCode": "Utrecht"},
    ],
    "expectedDeliveryDate": "2024-01-17T12:00:00Z",
}

DELIVERED = {
    "currentStatus": {"StatusCode": "6", "StatusDescription": "Delivered"},
    "statusHistory": IN_TRANSIT["statusHistory"]
    + [{"TimeStamp": "2024-01-17T11:00:00Z", "StatusCode": "6", "StatusDescription": "Delivered", "LocationCode": "Utrecht"}],
}


class FakePostNL:
    """MockTransport handler serving a swappable PostNL body."""

    def __init__(self, body: dict):
        self.body = body
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        return httpx.Response(200, json=self.body)


def _normalizer(settings: Settings, handler, clock) -> TrackingNormalizer:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    limiter = KeyedRateLimiter(lambda key: LimitSpec.per_second(10), clock=clock, sleep=clock.sleep)
    return TrackingNormalizer(build_adapters(settings, client), limiter)


def _dispatcher(store) -> NotificationDispatcher:
    return NotificationDispatcher(
        store, {NotificationChannel.IN_APP: InboxChannel(store), NotificationChannel.EMAIL: LogChannel()}
    )


async def _seed_fulfillment(store, **overrides):
    engine = SyncEngine(store)
    order = await engine.sync_order(TENANT_ID, order_payload())
    fulfillment = await engine.sync_fulfillment(order.id, fulfillment_payload(**overrides))
    return order, fulfillment


def _job(fulfillment) -> TrackingJob:
    return TrackingJob(
        fulfillment_id=fulfillment.id,
        tracking_number=fulfillment.tracking_number,
        courier_name=fulfillment.tracking_company,
        tenant_id=TENANT_ID,
    )


# ── Normalizer ────────────────────────────────────────────────────────────


class TestNormalizer:
    @pytest.mark.asyncio
    async def test_unsupported_courier_returns_none(self, settings, clock):
        handler = FakePostNL(IN_TRANSIT)
        normalizer = _normalizer(settings, handler, clock)
        assert await normalizer.fetch("Bpost", "X1") is None
        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_unconfigured_courier_returns_none(self, clock):
        handler = FakePostNL(IN_TRANSIT)
        normalizer = _normalizer(Settings(_env_file=None, postnl_api_key=""), handler, clock)
        assert await normalizer.fetch("PostNL", "X1") is None
        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_fetch_uses_resolved_adapter(self, settings, clock):
        handler = FakePostNL(IN_TRANSIT)
        response = await _normalizer(settings, handler, clock).fetch("Post NL Pakketten", "3S1")
        assert response.courier == "postnl"
        assert response.status is TrackingStatus.IN_TRANSIT
        assert handler.calls == 1


# ── Service ───────────────────────────────────────────────────────────────


class TestTrackingService:
    @pytest.mark.asyncio
    async def test_refresh_appends_events_and_updates_fulfillment(self, settings, store, clock):
        _, fulfillment = await _seed_fulfillment(store)
        service = TrackingService(store, _normalizer(settings, FakePostNL(IN_TRANSIT), clock), _dispatcher(store))

        response = await service.refresh(_job(fulfillment))

        assert response.status is TrackingStatus.IN_TRANSIT
        events = await store.list_tracking_events(fulfillment.id)
        assert [e.description for e in events] == ["Received", "Sorted"]
        updated = await store.get_fulfillment(fulfillment.id)
        assert updated.shipment_status == "in_transit"
        assert updated.estimated_delivery == datetime(2024, 1, 17, 12, tzinfo=timezone.utc)
        assert updated.actual_delivery is None

    @pytest.mark.asyncio
    async def test_repeated_refresh_is_idempotent(self, settings, store, clock):
        _, fulfillment = await _seed_fulfillment(store)
        service = TrackingService(store, _normalizer(settings, FakePostNL(IN_TRANSIT), clock), _dispatcher(store))

        await service.refresh(_job(fulfillment))
        await service.refresh(_job(fulfillment))

        assert len(await store.list_tracking_events(fulfillment.id)) == 2

    @pytest.mark.asyncio
    async def test_delivery_notifies_once(self, settings, store, clock):
        _, fulfillment = await _seed_fulfillment(store)
        handler = FakePostNL(IN_TRANSIT)
        service = TrackingService(store, _normalizer(settings, handler, clock), _dispatcher(store))

        await service.refresh(_job(fulfillment))
        handler.body = DELIVERED
        await service.refresh(_job(fulfillment))
        await service.refresh(_job(fulfillment))

        updated = await store.get_fulfillment(fulfillment.id)
        assert updated.actual_delivery == datetime(2024, 1, 17, 11, tzinfo=timezone.utc)
        delivered = [n for n in store.notifications.values() if n.type is NotificationType.ORDER_DELIVERED]
        assert len(delivered) == 1
        assert delivered[0].channel is NotificationChannel.IN_APP
        assert len(await store.list_tracking_events(fulfillment.id)) == 3

    @pytest.mark.asyncio
    async def test_missing_fulfillment_raises_not_found(self, settings, store, clock):
        service = TrackingService(store, _normalizer(settings, FakePostNL(IN_TRANSIT), clock), _dispatcher(store))
        job = TrackingJob(fulfillment_id="nope", tracking_number="X", courier_name="PostNL", tenant_id=TENANT_ID)
        with pytest.raises(NotFoundError):
            await service.refresh(job)

    @pytest.mark.asyncio
    async def test_unsupported_courier_leaves_state_untouched(self, settings, store, clock):
        _, fulfillment = await _seed_fulfillment(store, tracking_company="Bpost")
        service = TrackingService(store, _normalizer(settings, FakePostNL(IN_TRANSIT), clock), _dispatcher(store))

        assert await service.refresh(_job(fulfillment)) is None
        assert await store.list_tracking_events(fulfillment.id) == []


class TestScheduling:
    @pytest.mark.asyncio
    async def test_schedule_applies_grace_period(self, settings, store, clock, tracking_queue):
        _, fulfillment = await _seed_fulfillment(store)
        service = TrackingService(
            store, _normalizer(settings, FakePostNL(IN_TRANSIT), clock), _dispatcher(store), tracking_queue
        )

        job_id = await service.schedule(fulfillment)
        record = await tracking_queue.get(job_id)
        assert record.available_at - record.enqueued_at == 300.0
        assert record.job.tenant_id == TENANT_ID
        assert record.job.courier_name == "PostNL"

    @pytest.mark.asyncio
    async def test_schedule_skips_unsupported_courier(self, settings, store, clock, tracking_queue):
        _, fulfillment = await _seed_fulfillment(store, tracking_company="Royal Mail")
        service = TrackingService(
            store, _normalizer(settings, FakePostNL(IN_TRANSIT), clock), _dispatcher(store), tracking_queue
        )
        assert await service.schedule(fulfillment) is None
        assert (await tracking_queue.stats())["delayed"] == 0

    @pytest.mark.asyncio
    async def test_sync_hook_schedules_tracking(self, settings, store, clock, tracking_queue):
        service = TrackingService(
            store, _normalizer(settings, FakePostNL(IN_TRANSIT), clock), _dispatcher(store), tracking_queue
        )
        engine = SyncEngine(store, on_fulfillment=service.schedule)
        order = await engine.sync_order(TENANT_ID, order_payload())
        await engine.sync_fulfillment(order.id, fulfillment_payload())
        assert (await tracking_queue.stats())["delayed"] == 1

    @pytest.mark.asyncio
    async def test_recheck_targets_stale_active_shipments(self, settings, store, clock, tracking_queue):
        now = datetime(2024, 1, 20, 12, tzinfo=timezone.utc)
        service = TrackingService(
            store,
            _normalizer(settings, FakePostNL(IN_TRANSIT), clock),
            _dispatcher(store),
            tracking_queue,
            recheck_after_seconds=7200,
            clock=lambda: now,
        )
        _, never_checked = await _seed_fulfillment(store)
        _, fresh = await _seed_fulfillment(store, id=9002, tracking_number="3SFRESH")
        await service.refresh(_job(fresh))
        for event in store.tracking_events:
            event.recorded_at = now - timedelta(minutes=30)

        assert await service.recheck_active() == 1
        record = await tracking_queue.try_dequeue()
        assert record.job.fulfillment_id == never_checked.id

        for event in store.tracking_events:
            event.recorded_at = now - timedelta(hours=3)
        assert await service.recheck_active() == 2
