"""StateStore protocol: idempotent upserts and reads over canonical records.

Upserts are keyed on natural keys and follow last-write-wins on non-key
fields, except for fields only the service itself writes (a customer's
linked user, tracking-derived delivery dates), which an upsert never
clears.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Protocol, runtime_checkable

from beeylo_sync.store.models import (
    CanonicalCustomer,
    CanonicalFulfillment,
    CanonicalOrder,
    Notification,
    Tenant,
    TrackingEvent,
    UserAccount,
)

ELIGIBLE_USER_TYPES = ("flutter_consumer", "both")
ACTIVE_FULFILLMENT_STATUSES = ("pending", "open", "success")


@runtime_checkable
class StateStore(Protocol):
    # Tenants
    async def get_tenant(self, tenant_id: str) -> Tenant | None: ...

    async def get_tenant_by_domain(self, shop_domain: str) -> Tenant | None: ...

    # Customers
    async def upsert_customer(self, customer: CanonicalCustomer) -> CanonicalCustomer: ...

    async def get_customer(self, customer_id: str) -> CanonicalCustomer | None: ...

    async def link_customer_user(self, customer_id: str, user_id: str) -> bool: ...

    async def list_unlinked_customers(self, limit: int) -> list[CanonicalCustomer]: ...

    async def find_user_by_email(
        self, email: str, user_types: Iterable[str] = ELIGIBLE_USER_TYPES
    ) -> UserAccount | None: ...

    # Orders
    async def upsert_order(self, order: CanonicalOrder) -> CanonicalOrder: ...

    async def get_order(self, order_id: str) -> CanonicalOrder | None: ...

    async def get_order_by_external(self, tenant_id: str, external_order_id: str) -> CanonicalOrder | None: ...

    # Fulfillments
    async def upsert_fulfillment(self, fulfillment: CanonicalFulfillment) -> CanonicalFulfillment: ...

    async def get_fulfillment(self, fulfillment_id: str) -> CanonicalFulfillment | None: ...

    async def update_fulfillment_tracking(
        self,
        fulfillment_id: str,
        *,
        shipment_status: str | None,
        estimated_delivery: datetime | None,
        actual_delivery: datetime | None,
    ) -> CanonicalFulfillment: ...

    async def list_active_fulfillments(
        self, statuses: Iterable[str] = ACTIVE_FULFILLMENT_STATUSES
    ) -> list[CanonicalFulfillment]: ...

    # Tracking
    async def create_tracking_event(self, event: TrackingEvent) -> TrackingEvent | None: ...

    async def latest_tracking_event(self, fulfillment_id: str) -> TrackingEvent | None: ...

    async def list_tracking_events(self, fulfillment_id: str) -> list[TrackingEvent]: ...

    # Notifications
    async def create_notification(self, notification: Notification) -> tuple[Notification, bool]: ...

    async def mark_notification_sent(self, notification_id: str, sent_at: datetime) -> None: ...

    async def record_notification_attempt(self, notification_id: str, attempted_at: datetime) -> int: ...

    async def list_pending_notifications(
        self, limit: int, *, max_attempts: int | None = None, attempted_until: datetime | None = None
    ) -> list[Notification]: ...

    async def create_inbox_ticket(self, user_id: str, notification: Notification) -> str: ...

    async def close(self) -> None: ...
