"""Webhook job processing: one coroutine per Shopify topic.

Runs inside the webhook worker pool. State sync is the primary path;
storefront tagging is spawned as a best-effort task and customer linking
failures are logged by the sync engine, so neither can fail a job.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from beeylo_sync.errors import NotFoundError, ValidationError
from beeylo_sync.notifications.dispatcher import NotificationDispatcher
from beeylo_sync.queue.jobs import WebhookJob
from beeylo_sync.shopify import APP_DELIVERY_TAG, ShopifyClient
from beeylo_sync.store.base import StateStore
from beeylo_sync.store.models import Tenant
from beeylo_sync.sync import SyncEngine, to_id
from beeylo_sync.tasks import BestEffortTasks
from beeylo_sync.webhooks.dispatcher import Topic

logger = logging.getLogger(__name__)

Handler = Callable[[Tenant, dict[str, Any]], Awaitable[None]]


class WebhookProcessor:
    def __init__(
        self,
        store: StateStore,
        sync: SyncEngine,
        notifications: NotificationDispatcher,
        tasks: BestEffortTasks,
        shopify_factory: Callable[[Tenant], ShopifyClient] | None = None,
    ):
        self._store = store
        self._sync = sync
        self._notifications = notifications
        self._tasks = tasks
        self._shopify_factory = shopify_factory
        self._handlers: dict[str, Handler] = {
            Topic.ORDERS_CREATE.value: self._order_created,
            Topic.ORDERS_UPDATED.value: self._order_updated,
            Topic.ORDERS_PAID.value: self._order_updated,
            Topic.ORDERS_FULFILLED.value: self._order_updated,
            Topic.ORDERS_CANCELLED.value: self._order_cancelled,
            Topic.FULFILLMENTS_CREATE.value: self._fulfillment_created,
            Topic.FULFILLMENTS_UPDATE.value: self._fulfillment_updated,
            Topic.CUSTOMERS_CREATE.value: self._customer_changed,
            Topic.CUSTOMERS_UPDATE.value: self._customer_changed,
        }

    async def process(self, job: WebhookJob) -> None:
        handler = self._handlers.get(job.topic)
        if handler is None:
            logger.info("Ignoring unhandled webhook topic %s from %s", job.topic, job.shop_domain)
            return

        tenant = await self._store.get_tenant(job.tenant_id)
        if tenant is None:
            raise NotFoundError(f"tenant {job.tenant_id} not found", resource="tenant", key=job.tenant_id)

        try:
            payload = job.payload()
        except ValueError as exc:
            raise ValidationError(f"webhook body for {job.topic} is not JSON") from exc
        if not isinstance(payload, dict):
            raise ValidationError(f"webhook body for {job.topic} is not an object")

        await handler(tenant, payload)

    # ── Orders ──────────────────────────────────────────────────────────

    async def _order_created(self, tenant: Tenant, payload: dict[str, Any]) -> None:
        order = await self._sync.sync_order(tenant.id, payload)
        if order.receive_in_app and self._shopify_factory is not None:
            self._tasks.spawn(
                self._tag_order(tenant, order.external_order_id),
                name=f"tag-order-{order.external_order_id}",
            )
        await self._notifications.on_order_created(order, tenant)

    async def _order_updated(self, tenant: Tenant, payload: dict[str, Any]) -> None:
        await self._sync.sync_order(tenant.id, payload)

    async def _order_cancelled(self, tenant: Tenant, payload: dict[str, Any]) -> None:
        order = await self._sync.sync_order(tenant.id, payload)
        await self._notifications.on_order_cancelled(order, tenant)

    async def _tag_order(self, tenant: Tenant, external_order_id: str) -> None:
        client = self._shopify_factory(tenant)
        await client.add_order_tag(external_order_id, APP_DELIVERY_TAG)

    # ── Fulfillments ────────────────────────────────────────────────────

    async def _fulfillment_order(self, tenant: Tenant, payload: dict[str, Any]):
        order_id = to_id(payload.get("order_id"))
        if order_id is None:
            raise ValidationError("fulfillment payload has no order_id", field="order_id")
        order = await self._store.get_order_by_external(tenant.id, order_id)
        if order is None:
            raise NotFoundError(f"order {order_id} not synced for tenant {tenant.id}", resource="order", key=order_id)
        return order

    async def _fulfillment_created(self, tenant: Tenant, payload: dict[str, Any]) -> None:
        order = await self._fulfillment_order(tenant, payload)
        fulfillment = await self._sync.sync_fulfillment(order.id, payload)
        await self._notifications.on_fulfillment_created(order, fulfillment, tenant)

    async def _fulfillment_updated(self, tenant: Tenant, payload: dict[str, Any]) -> None:
        order = await self._fulfillment_order(tenant, payload)
        await self._sync.sync_fulfillment(order.id, payload)

    # ── Customers ───────────────────────────────────────────────────────

    async def _customer_changed(self, tenant: Tenant, payload: dict[str, Any]) -> None:
        await self._sync.sync_customer(tenant.id, payload)
