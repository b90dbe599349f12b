"""Canonical records persisted by the state store."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from beeylo_sync.couriers.models import TrackingStatus


@dataclass
class TenantSettings:
    auto_sync: bool = True
    sync_interval_minutes: int = 15
    send_order_confirmations: bool = True
    send_shipping_updates: bool = True
    send_delivery_updates: bool = True
    suppress_shopify_notifications_for_beeylo_orders: bool = True
    notification_template_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TenantSettings:
        """Build from a stored JSON blob; unknown keys are ignored, missing keys default."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


@dataclass
class Tenant:
    """One connected storefront."""

    id: str
    shop_domain: str
    access_token: str = ""
    webhook_secret: str = ""
    is_active: bool = True
    settings: TenantSettings = field(default_factory=TenantSettings)


@dataclass
class UserAccount:
    id: str
    email: str
    user_type: str


@dataclass
class LineItem:
    id: str | None
    product_id: str | None
    variant_id: str | None
    title: str
    quantity: int
    price: Decimal
    sku: str | None = None
    vendor: str | None = None
    product_exists: bool = True
    fulfillment_service: str | None = None
    fulfillment_status: str | None = None
    image_url: str | None = None

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


@dataclass
class CanonicalCustomer:
    tenant_id: str
    external_customer_id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    accepts_marketing: bool = False
    orders_count: int = 0
    total_spent: Decimal = Decimal("0")
    tags: list[str] = field(default_factory=list)
    default_address: dict[str, Any] | None = None
    user_ref: str | None = None
    id: str | None = None


@dataclass
class CanonicalOrder:
    tenant_id: str
    external_order_id: str
    order_number: str | None = None
    email: str | None = None
    phone: str | None = None
    customer_ref: str | None = None
    financial_status: str | None = None
    fulfillment_status: str | None = None
    total_price: Decimal = Decimal("0")
    subtotal_price: Decimal = Decimal("0")
    total_tax: Decimal = Decimal("0")
    currency: str = "EUR"
    line_items: list[LineItem] = field(default_factory=list)
    shipping_address: dict[str, Any] | None = None
    billing_address: dict[str, Any] | None = None
    receive_in_app: bool = False
    cancelled: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    cancelled_at: datetime | None = None
    id: str | None = None


@dataclass
class CanonicalFulfillment:
    order_ref: str
    external_fulfillment_id: str
    status: str | None = None
    tracking_number: str | None = None
    tracking_company: str | None = None
    tracking_url: str | None = None
    shipment_status: str | None = None
    line_items: list[dict[str, Any]] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    estimated_delivery: datetime | None = None
    actual_delivery: datetime | None = None
    id: str | None = None

    @property
    def has_tracking(self) -> bool:
        return bool(self.tracking_number and self.tracking_company)


@dataclass
class TrackingEvent:
    fulfillment_ref: str
    tracking_number: str
    courier: str
    status: TrackingStatus
    description: str
    location: str | None
    timestamp: datetime
    recorded_at: datetime | None = None
    id: str | None = None

    def fingerprint(self) -> tuple:
        """Identity used to keep appends idempotent across rechecks."""
        return (
            self.fulfillment_ref,
            self.status.value,
            self.description,
            self.location or "",
            self.timestamp.isoformat(),
        )


class NotificationType(str, Enum):
    ORDER_CONFIRMATION = "order_confirmation"
    ORDER_SHIPPED = "order_shipped"
    ORDER_DELIVERED = "order_delivered"
    ORDER_CANCELLED = "order_cancelled"


class NotificationChannel(str, Enum):
    IN_APP = "in_app"
    EMAIL = "email"


@dataclass
class Notification:
    tenant_id: str
    order_ref: str
    type: NotificationType
    channel: NotificationChannel
    title: str
    message: str
    payload: dict[str, Any] = field(default_factory=dict)
    customer_ref: str | None = None
    fulfillment_ref: str | None = None
    template_id: str | None = None
    sent: bool = False
    sent_at: datetime | None = None
    attempts: int = 0
    last_attempt_at: datetime | None = None
    created_at: datetime | None = None
    id: str | None = None

    @property
    def dedup_key(self) -> str:
        return ":".join(
            (self.order_ref, self.type.value, self.channel.value, self.fulfillment_ref or "-")
        )
