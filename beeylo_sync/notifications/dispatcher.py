"""Notification policy per order lifecycle event.

| Event              | Emits                                                         |
|--------------------|---------------------------------------------------------------|
| order created      | in-app confirmation if opted in to app delivery, otherwise an |
|                    | email confirmation when send_order_confirmations is on         |
| fulfillment created| in-app shipping notice always; email shipping notice unless   |
|                    | suppression is on and the order opted in to app delivery       |
| delivered          | one in-app delivery notice when send_delivery_updates is on    |
| order cancelled    | in-app cancellation notice, unconditionally                    |

Notifications are deduplicated on (order, type, channel, fulfillment), so
replayed events never create a second record. Each new record is dispatched
right away; a failed dispatch leaves it pending for ``sweep_pending``, which
retries the least recently attempted first and gives up on a record after
``max_attempts`` failed dispatches.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

from beeylo_sync.notifications.channels import Channel, Recipient
from beeylo_sync.store.base import StateStore
from beeylo_sync.store.models import (
    CanonicalFulfillment,
    CanonicalOrder,
    Notification,
    NotificationChannel,
    NotificationType,
    Tenant,
)

logger = logging.getLogger(__name__)

ESTIMATED_DELIVERY_DAYS = 4
MAX_DISPATCH_ATTEMPTS = 288


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class NotificationDispatcher:
    def __init__(
        self,
        store: StateStore,
        channels: Mapping[NotificationChannel, Channel],
        *,
        clock: Callable[[], datetime] = _utcnow,
        max_attempts: int = MAX_DISPATCH_ATTEMPTS,
    ):
        self._store = store
        self._channels = dict(channels)
        self._clock = clock
        self._max_attempts = max(1, max_attempts)

    # ── Lifecycle events ────────────────────────────────────────────────

    async def on_order_created(self, order: CanonicalOrder, tenant: Tenant) -> list[Notification]:
        payload = {
            "order_number": order.order_number,
            "total_price": str(order.total_price),
            "currency": order.currency,
            "line_items": [
                {"title": li.title, "quantity": li.quantity, "price": str(li.price), "image_url": li.image_url}
                for li in order.line_items
            ],
            "estimated_delivery": _iso(self._clock() + timedelta(days=ESTIMATED_DELIVERY_DAYS)),
        }
        if order.receive_in_app:
            channel = NotificationChannel.IN_APP
        elif tenant.settings.send_order_confirmations:
            channel = NotificationChannel.EMAIL
        else:
            return []
        created = await self._emit(
            self._build(
                order,
                tenant,
                NotificationType.ORDER_CONFIRMATION,
                channel,
                title=f"Order Confirmed - {order.order_number}",
                message="Your order has been confirmed and is being prepared for shipment.",
                payload=payload,
            )
        )
        return [created] if created else []

    async def on_fulfillment_created(
        self, order: CanonicalOrder, fulfillment: CanonicalFulfillment, tenant: Tenant
    ) -> list[Notification]:
        payload = {
            "order_number": order.order_number,
            "tracking_number": fulfillment.tracking_number,
            "tracking_url": fulfillment.tracking_url,
            "tracking_company": fulfillment.tracking_company,
            "estimated_delivery": _iso(fulfillment.estimated_delivery),
        }
        channels = [NotificationChannel.IN_APP]
        suppressed = tenant.settings.suppress_shopify_notifications_for_beeylo_orders and order.receive_in_app
        if not suppressed and tenant.settings.send_shipping_updates:
            channels.append(NotificationChannel.EMAIL)

        emitted = []
        for channel in channels:
            created = await self._emit(
                self._build(
                    order,
                    tenant,
                    NotificationType.ORDER_SHIPPED,
                    channel,
                    title=f"Order Shipped - {order.order_number}",
                    message="Your order is on its way! Track your package using the tracking number below.",
                    payload=payload,
                    fulfillment=fulfillment,
                )
            )
            if created:
                emitted.append(created)
        return emitted

    async def on_delivered(
        self, order: CanonicalOrder, fulfillment: CanonicalFulfillment, tenant: Tenant
    ) -> list[Notification]:
        if not tenant.settings.send_delivery_updates:
            return []
        created = await self._emit(
            self._build(
                order,
                tenant,
                NotificationType.ORDER_DELIVERED,
                NotificationChannel.IN_APP,
                title=f"Order Delivered - {order.order_number}",
                message="Your order has been delivered! We hope you enjoy your purchase.",
                payload={
                    "order_number": order.order_number,
                    "delivery_timestamp": _iso(fulfillment.actual_delivery),
                },
                fulfillment=fulfillment,
            )
        )
        return [created] if created else []

    async def on_order_cancelled(self, order: CanonicalOrder, tenant: Tenant) -> list[Notification]:
        created = await self._emit(
            self._build(
                order,
                tenant,
                NotificationType.ORDER_CANCELLED,
                NotificationChannel.IN_APP,
                title=f"Order Cancelled - {order.order_number}",
                message="Your order has been cancelled. If you have any questions, please contact support.",
                payload={"order_number": order.order_number, "cancelled_at": _iso(order.cancelled_at)},
            )
        )
        return [created] if created else []

    # ── Dispatch ────────────────────────────────────────────────────────

    async def dispatch(self, notification: Notification) -> bool:
        """Try to deliver a stored notification. Returns True once sent."""
        channel = self._channels.get(notification.channel)
        if channel is None:
            logger.warning("No channel registered for %s notifications", notification.channel.value)
            await self._record_failure(notification)
            return False
        try:
            recipient = await self._recipient(notification)
            result = await channel.send(notification, recipient)
        except Exception:
            logger.warning("Dispatch of notification %s failed", notification.id, exc_info=True)
            await self._record_failure(notification)
            return False
        if not result.success:
            logger.info(
                "Notification %s left pending on %s: %s",
                notification.id,
                result.channel_id,
                result.error,
            )
            await self._record_failure(notification)
            return False
        await self._store.mark_notification_sent(notification.id, self._clock())
        return True

    async def sweep_pending(self, limit: int = 100) -> int:
        """Retry dispatch for pending notifications. Returns how many were sent.

        Works through the backlog in batches of ``limit``, least recently
        attempted first, so a block of undeliverable records never hides
        newer ones. Each record is tried at most once per sweep.
        """
        started = self._clock()
        seen: set[str | None] = set()
        sent = 0
        while True:
            batch = await self._store.list_pending_notifications(
                limit, max_attempts=self._max_attempts, attempted_until=started
            )
            fresh = [n for n in batch if n.id not in seen]
            if not fresh:
                break
            for notification in fresh:
                seen.add(notification.id)
                if await self.dispatch(notification):
                    sent += 1
            if len(batch) < limit:
                break
        if sent:
            logger.info("Notification sweep sent %d pending notification(s)", sent)
        return sent

    # ── Internals ───────────────────────────────────────────────────────

    def _build(
        self,
        order: CanonicalOrder,
        tenant: Tenant,
        type_: NotificationType,
        channel: NotificationChannel,
        *,
        title: str,
        message: str,
        payload: dict[str, Any],
        fulfillment: CanonicalFulfillment | None = None,
    ) -> Notification:
        return Notification(
            tenant_id=tenant.id,
            order_ref=order.id,
            customer_ref=order.customer_ref,
            fulfillment_ref=fulfillment.id if fulfillment else None,
            type=type_,
            channel=channel,
            title=title,
            message=message,
            payload=payload,
            template_id=tenant.settings.notification_template_id,
        )

    async def _emit(self, notification: Notification) -> Notification | None:
        stored, created = await self._store.create_notification(notification)
        if not created:
            logger.debug("Notification %s already exists, skipping", stored.dedup_key)
            return None
        if await self.dispatch(stored):
            stored.sent = True
        return stored

    async def _record_failure(self, notification: Notification) -> None:
        try:
            attempts = await self._store.record_notification_attempt(notification.id, self._clock())
        except Exception:
            logger.warning("Could not record dispatch attempt for notification %s", notification.id, exc_info=True)
            return
        if attempts >= self._max_attempts:
            logger.warning(
                "Giving up on notification %s after %d failed dispatch attempts", notification.id, attempts
            )

    async def _recipient(self, notification: Notification) -> Recipient:
        order = await self._store.get_order(notification.order_ref)
        email = order.email if order else None
        user_id = None
        if notification.customer_ref:
            customer = await self._store.get_customer(notification.customer_ref)
            if customer:
                user_id = customer.user_ref
                email = email or customer.email
        if user_id is None and email:
            user = await self._store.find_user_by_email(email)
            user_id = user.id if user else None
        return Recipient(user_id=user_id, email=email)
