"""In-memory StateStore for development and tests.

Every method runs without awaiting, so each call is atomic with respect to
other coroutines on the same loop. Records are copied on the way in and out.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Iterable

from beeylo_sync.errors import NotFoundError
from beeylo_sync.store.base import ACTIVE_FULFILLMENT_STATUSES, ELIGIBLE_USER_TYPES
from beeylo_sync.store.models import (
    CanonicalCustomer,
    CanonicalFulfillment,
    CanonicalOrder,
    Notification,
    Tenant,
    TrackingEvent,
    UserAccount,
)


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    def __init__(self) -> None:
        self.tenants: dict[str, Tenant] = {}
        self.users: dict[str, UserAccount] = {}
        self.customers: dict[str, CanonicalCustomer] = {}
        self.orders: dict[str, CanonicalOrder] = {}
        self.fulfillments: dict[str, CanonicalFulfillment] = {}
        self.tracking_events: list[TrackingEvent] = []
        self.notifications: dict[str, Notification] = {}
        self.inbox: list[dict[str, Any]] = []

        self._customer_keys: dict[tuple[str, str], str] = {}
        self._order_keys: dict[tuple[str, str], str] = {}
        self._fulfillment_keys: dict[tuple[str, str], str] = {}
        self._event_keys: set[tuple] = set()
        self._notification_keys: dict[str, str] = {}

    # ── Seeding (tests, local runs) ─────────────────────────────────────

    def add_tenant(self, tenant: Tenant) -> Tenant:
        self.tenants[tenant.id] = copy.deepcopy(tenant)
        return tenant

    def add_user(self, user: UserAccount) -> UserAccount:
        self.users[user.id] = copy.deepcopy(user)
        return user

    # ── Tenants ─────────────────────────────────────────────────────────

    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        tenant = self.tenants.get(tenant_id)
        return copy.deepcopy(tenant) if tenant else None

    async def get_tenant_by_domain(self, shop_domain: str) -> Tenant | None:
        for tenant in self.tenants.values():
            if tenant.shop_domain == shop_domain and tenant.is_active:
                return copy.deepcopy(tenant)
        return None

    # ── Customers ───────────────────────────────────────────────────────

    async def upsert_customer(self, customer: CanonicalCustomer) -> CanonicalCustomer:
        key = (customer.tenant_id, customer.external_customer_id)
        existing_id = self._customer_keys.get(key)
        if existing_id is None:
            stored = replace(copy.deepcopy(customer), id=_new_id())
            self._customer_keys[key] = stored.id
        else:
            previous = self.customers[existing_id]
            stored = replace(
                copy.deepcopy(customer),
                id=existing_id,
                user_ref=previous.user_ref or customer.user_ref,
            )
        self.customers[stored.id] = stored
        return copy.deepcopy(stored)

    async def get_customer(self, customer_id: str) -> CanonicalCustomer | None:
        customer = self.customers.get(customer_id)
        return copy.deepcopy(customer) if customer else None

    async def link_customer_user(self, customer_id: str, user_id: str) -> bool:
        customer = self.customers.get(customer_id)
        if customer is None:
            raise NotFoundError(f"customer {customer_id} not found", resource="customer", key=customer_id)
        if customer.user_ref:
            return False
        customer.user_ref = user_id
        return True

    async def list_unlinked_customers(self, limit: int) -> list[CanonicalCustomer]:
        unlinked = [c for c in self.customers.values() if not c.user_ref and c.email]
        return [copy.deepcopy(c) for c in unlinked[:limit]]

    async def find_user_by_email(
        self, email: str, user_types: Iterable[str] = ELIGIBLE_USER_TYPES
    ) -> UserAccount | None:
        allowed = set(user_types)
        for user in self.users.values():
            if user.email == email and user.user_type in allowed:
                return copy.deepcopy(user)
        return None

    # ── Orders ──────────────────────────────────────────────────────────

    async def upsert_order(self, order: CanonicalOrder) -> CanonicalOrder:
        key = (order.tenant_id, order.external_order_id)
        order_id = self._order_keys.get(key) or _new_id()
        self._order_keys[key] = order_id
        stored = replace(copy.deepcopy(order), id=order_id)
        self.orders[order_id] = stored
        return copy.deepcopy(stored)

    async def get_order(self, order_id: str) -> CanonicalOrder | None:
        order = self.orders.get(order_id)
        return copy.deepcopy(order) if order else None

    async def get_order_by_external(self, tenant_id: str, external_order_id: str) -> CanonicalOrder | None:
        order_id = self._order_keys.get((tenant_id, external_order_id))
        return await self.get_order(order_id) if order_id else None

    # ── Fulfillments ────────────────────────────────────────────────────

    async def upsert_fulfillment(self, fulfillment: CanonicalFulfillment) -> CanonicalFulfillment:
        key = (fulfillment.order_ref, fulfillment.external_fulfillment_id)
        existing_id = self._fulfillment_keys.get(key)
        stored = copy.deepcopy(fulfillment)
        if existing_id is None:
            stored.id = _new_id()
            self._fulfillment_keys[key] = stored.id
        else:
            previous = self.fulfillments[existing_id]
            stored.id = existing_id
            stored.shipment_status = stored.shipment_status or previous.shipment_status
            stored.estimated_delivery = stored.estimated_delivery or previous.estimated_delivery
            stored.actual_delivery = stored.actual_delivery or previous.actual_delivery
        self.fulfillments[stored.id] = stored
        return copy.deepcopy(stored)

    async def get_fulfillment(self, fulfillment_id: str) -> CanonicalFulfillment | None:
        fulfillment = self.fulfillments.get(fulfillment_id)
        return copy.deepcopy(fulfillment) if fulfillment else None

    async def update_fulfillment_tracking(
        self,
        fulfillment_id: str,
        *,
        shipment_status: str | None,
        estimated_delivery: datetime | None,
        actual_delivery: datetime | None,
    ) -> CanonicalFulfillment:
        fulfillment = self.fulfillments.get(fulfillment_id)
        if fulfillment is None:
            raise NotFoundError(
                f"fulfillment {fulfillment_id} not found", resource="fulfillment", key=fulfillment_id
            )
        if shipment_status:
            fulfillment.shipment_status = shipment_status
        if estimated_delivery:
            fulfillment.estimated_delivery = estimated_delivery
        if actual_delivery:
            fulfillment.actual_delivery = actual_delivery
        return copy.deepcopy(fulfillment)

    async def list_active_fulfillments(
        self, statuses: Iterable[str] = ACTIVE_FULFILLMENT_STATUSES
    ) -> list[CanonicalFulfillment]:
        wanted = set(statuses)
        return [
            copy.deepcopy(f)
            for f in self.fulfillments.values()
            if f.status in wanted and f.tracking_number and f.actual_delivery is None
        ]

    # ── Tracking events ─────────────────────────────────────────────────

    async def create_tracking_event(self, event: TrackingEvent) -> TrackingEvent | None:
        fingerprint = event.fingerprint()
        if fingerprint in self._event_keys:
            return None
        self._event_keys.add(fingerprint)
        stored = replace(copy.deepcopy(event), id=_new_id(), recorded_at=event.recorded_at or _now())
        self.tracking_events.append(stored)
        return copy.deepcopy(stored)

    async def latest_tracking_event(self, fulfillment_id: str) -> TrackingEvent | None:
        events = [e for e in self.tracking_events if e.fulfillment_ref == fulfillment_id]
        if not events:
            return None
        return copy.deepcopy(max(events, key=lambda e: e.recorded_at))

    async def list_tracking_events(self, fulfillment_id: str) -> list[TrackingEvent]:
        events = [e for e in self.tracking_events if e.fulfillment_ref == fulfillment_id]
        return [copy.deepcopy(e) for e in sorted(events, key=lambda e: e.timestamp)]

    # ── Notifications ───────────────────────────────────────────────────

    async def create_notification(self, notification: Notification) -> tuple[Notification, bool]:
        existing_id = self._notification_keys.get(notification.dedup_key)
        if existing_id is not None:
            return copy.deepcopy(self.notifications[existing_id]), False
        stored = replace(copy.deepcopy(notification), id=_new_id(), created_at=_now())
        self.notifications[stored.id] = stored
        self._notification_keys[stored.dedup_key] = stored.id
        return copy.deepcopy(stored), True

    async def mark_notification_sent(self, notification_id: str, sent_at: datetime) -> None:
        notification = self.notifications.get(notification_id)
        if notification is None:
            raise NotFoundError(
                f"notification {notification_id} not found", resource="notification", key=notification_id
            )
        notification.sent = True
        notification.sent_at = sent_at

    async def record_notification_attempt(self, notification_id: str, attempted_at: datetime) -> int:
        notification = self.notifications.get(notification_id)
        if notification is None:
            raise NotFoundError(
                f"notification {notification_id} not found", resource="notification", key=notification_id
            )
        notification.attempts += 1
        notification.last_attempt_at = attempted_at
        return notification.attempts

    async def list_pending_notifications(
        self, limit: int, *, max_attempts: int | None = None, attempted_until: datetime | None = None
    ) -> list[Notification]:
        pending = [
            n
            for n in self.notifications.values()
            if not n.sent
            and (max_attempts is None or n.attempts < max_attempts)
            and (attempted_until is None or n.last_attempt_at is None or n.last_attempt_at <= attempted_until)
        ]
        # Never-attempted first, then least recently attempted.
        pending.sort(key=lambda n: (n.last_attempt_at is not None, n.last_attempt_at or n.created_at, n.created_at))
        return [copy.deepcopy(n) for n in pending[:limit]]

    async def create_inbox_ticket(self, user_id: str, notification: Notification) -> str:
        ticket_id = _new_id()
        self.inbox.append(
            {
                "id": ticket_id,
                "user_id": user_id,
                "title": notification.title,
                "content_summary": notification.message,
                "section": "Orders",
                "metadata": notification.payload,
            }
        )
        return ticket_id

    async def close(self) -> None:
        return None
