"""PostgreSQL StateStore on psycopg 3.

Natural keys are enforced by unique constraints and every write is a single
statement, so each call is transactional on its own. Conflicts resolve with
``ON CONFLICT ... DO UPDATE`` (last write wins) or ``DO NOTHING`` for
append-only tables.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from beeylo_sync.couriers.models import TrackingStatus
from beeylo_sync.errors import NotFoundError
from beeylo_sync.store.base import ACTIVE_FULFILLMENT_STATUSES, ELIGIBLE_USER_TYPES
from beeylo_sync.store.models import (
    CanonicalCustomer,
    CanonicalFulfillment,
    CanonicalOrder,
    LineItem,
    Notification,
    NotificationChannel,
    NotificationType,
    Tenant,
    TenantSettings,
    TrackingEvent,
    UserAccount,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS shopify_stores (
    id TEXT PRIMARY KEY,
    shop_domain TEXT UNIQUE NOT NULL,
    access_token TEXT NOT NULL DEFAULT '',
    webhook_secret TEXT NOT NULL DEFAULT '',
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    settings JSONB NOT NULL DEFAULT '{}'::jsonb
);

CREATE TABLE IF NOT EXISTS user_profiles (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    user_type TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS shopify_customers (
    id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
    store_id TEXT NOT NULL REFERENCES shopify_stores(id),
    shopify_customer_id TEXT NOT NULL,
    email TEXT,
    first_name TEXT,
    last_name TEXT,
    phone TEXT,
    accepts_marketing BOOLEAN NOT NULL DEFAULT FALSE,
    orders_count INTEGER NOT NULL DEFAULT 0,
    total_spent NUMERIC NOT NULL DEFAULT 0,
    tags JSONB NOT NULL DEFAULT '[]'::jsonb,
    default_address JSONB,
    beeylo_user_id TEXT,
    UNIQUE (store_id, shopify_customer_id)
);

CREATE TABLE IF NOT EXISTS shopify_orders (
    id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
    store_id TEXT NOT NULL REFERENCES shopify_stores(id),
    shopify_order_id TEXT NOT NULL,
    order_number TEXT,
    email TEXT,
    phone TEXT,
    customer_id TEXT REFERENCES shopify_customers(id),
    financial_status TEXT,
    fulfillment_status TEXT,
    total_price NUMERIC NOT NULL DEFAULT 0,
    subtotal_price NUMERIC NOT NULL DEFAULT 0,
    total_tax NUMERIC NOT NULL DEFAULT 0,
    currency TEXT NOT NULL DEFAULT 'EUR',
    line_items JSONB NOT NULL DEFAULT '[]'::jsonb,
    shipping_address JSONB,
    billing_address JSONB,
    receive_in_beeylo_app BOOLEAN NOT NULL DEFAULT FALSE,
    cancelled BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ,
    cancelled_at TIMESTAMPTZ,
    UNIQUE (store_id, shopify_order_id)
);

CREATE TABLE IF NOT EXISTS order_fulfillments (
    id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
    order_id TEXT NOT NULL REFERENCES shopify_orders(id),
    shopify_fulfillment_id TEXT NOT NULL,
    status TEXT,
    tracking_number TEXT,
    tracking_company TEXT,
    tracking_url TEXT,
    shipment_status TEXT,
    line_items JSONB NOT NULL DEFAULT '[]'::jsonb,
    created_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ,
    estimated_delivery TIMESTAMPTZ,
    actual_delivery TIMESTAMPTZ,
    UNIQUE (order_id, shopify_fulfillment_id)
);

CREATE TABLE IF NOT EXISTS tracking_updates (
    id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
    fulfillment_id TEXT NOT NULL REFERENCES order_fulfillments(id),
    tracking_number TEXT NOT NULL,
    courier TEXT NOT NULL,
    status TEXT NOT NULL,
    status_description TEXT NOT NULL DEFAULT '',
    location TEXT NOT NULL DEFAULT '',
    timestamp TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (fulfillment_id, status, status_description, location, timestamp)
);

CREATE TABLE IF NOT EXISTS order_notifications (
    id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
    store_id TEXT NOT NULL,
    order_id TEXT NOT NULL REFERENCES shopify_orders(id),
    customer_id TEXT,
    fulfillment_id TEXT,
    type TEXT NOT NULL,
    channel TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    data JSONB NOT NULL DEFAULT '{}'::jsonb,
    template_id TEXT,
    dedup_key TEXT UNIQUE NOT NULL,
    sent BOOLEAN NOT NULL DEFAULT FALSE,
    sent_at TIMESTAMPTZ,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_attempt_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

ALTER TABLE order_notifications ADD COLUMN IF NOT EXISTS attempts INTEGER NOT NULL DEFAULT 0;
ALTER TABLE order_notifications ADD COLUMN IF NOT EXISTS last_attempt_at TIMESTAMPTZ;

CREATE TABLE IF NOT EXISTS tickets (
    id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
    user_id TEXT NOT NULL,
    sender TEXT NOT NULL,
    title TEXT NOT NULL,
    content_summary TEXT NOT NULL,
    section TEXT NOT NULL DEFAULT 'Orders',
    is_read BOOLEAN NOT NULL DEFAULT FALSE,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""


# ---------------------------------------------------------------------------
# Row <-> record mapping
# ---------------------------------------------------------------------------


def _json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_json_safe(v) for v in value]
    return value


def line_items_to_json(items: list[LineItem]) -> list[dict[str, Any]]:
    return [_json_safe(asdict(item)) for item in items]


def line_items_from_json(raw: list[dict[str, Any]] | None) -> list[LineItem]:
    items = []
    for data in raw or []:
        data = dict(data)
        data["price"] = Decimal(str(data.get("price") or "0"))
        items.append(LineItem(**data))
    return items


def tenant_from_row(row: dict[str, Any]) -> Tenant:
    return Tenant(
        id=row["id"],
        shop_domain=row["shop_domain"],
        access_token=row["access_token"],
        webhook_secret=row["webhook_secret"],
        is_active=row["is_active"],
        settings=TenantSettings.from_dict(row["settings"]),
    )


def customer_from_row(row: dict[str, Any]) -> CanonicalCustomer:
    return CanonicalCustomer(
        id=row["id"],
        tenant_id=row["store_id"],
        external_customer_id=row["shopify_customer_id"],
        email=row["email"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        phone=row["phone"],
        accepts_marketing=row["accepts_marketing"],
        orders_count=row["orders_count"],
        total_spent=Decimal(row["total_spent"]),
        tags=list(row["tags"] or []),
        default_address=row["default_address"],
        user_ref=row["beeylo_user_id"],
    )


def order_from_row(row: dict[str, Any]) -> CanonicalOrder:
    return CanonicalOrder(
        id=row["id"],
        tenant_id=row["store_id"],
        external_order_id=row["shopify_order_id"],
        order_number=row["order_number"],
        email=row["email"],
        phone=row["phone"],
        customer_ref=row["customer_id"],
        financial_status=row["financial_status"],
        fulfillment_status=row["fulfillment_status"],
        total_price=Decimal(row["total_price"]),
        subtotal_price=Decimal(row["subtotal_price"]),
        total_tax=Decimal(row["total_tax"]),
        currency=row["currency"],
        line_items=line_items_from_json(row["line_items"]),
        shipping_address=row["shipping_address"],
        billing_address=row["billing_address"],
        receive_in_app=row["receive_in_beeylo_app"],
        cancelled=row["cancelled"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        cancelled_at=row["cancelled_at"],
    )


def fulfillment_from_row(row: dict[str, Any]) -> CanonicalFulfillment:
    return CanonicalFulfillment(
        id=row["id"],
        order_ref=row["order_id"],
        external_fulfillment_id=row["shopify_fulfillment_id"],
        status=row["status"],
        tracking_number=row["tracking_number"],
        tracking_company=row["tracking_company"],
        tracking_url=row["tracking_url"],
        shipment_status=row["shipment_status"],
        line_items=list(row["line_items"] or []),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        estimated_delivery=row["estimated_delivery"],
        actual_delivery=row["actual_delivery"],
    )


def tracking_event_from_row(row: dict[str, Any]) -> TrackingEvent:
    return TrackingEvent(
        id=row["id"],
        fulfillment_ref=row["fulfillment_id"],
        tracking_number=row["tracking_number"],
        courier=row["courier"],
        status=TrackingStatus(row["status"]),
        description=row["status_description"],
        location=row["location"] or None,
        timestamp=row["timestamp"],
        recorded_at=row["created_at"],
    )


def notification_from_row(row: dict[str, Any]) -> Notification:
    return Notification(
        id=row["id"],
        tenant_id=row["store_id"],
        order_ref=row["order_id"],
        customer_ref=row["customer_id"],
        fulfillment_ref=row["fulfillment_id"],
        type=NotificationType(row["type"]),
        channel=NotificationChannel(row["channel"]),
        title=row["title"],
        message=row["message"],
        payload=row["data"] or {},
        template_id=row["template_id"],
        sent=row["sent"],
        sent_at=row["sent_at"],
        attempts=row["attempts"],
        last_attempt_at=row["last_attempt_at"],
        created_at=row["created_at"],
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class PostgresStore:
    def __init__(self, database_url: str):
        self._url = database_url

    async def _connect(self) -> psycopg.AsyncConnection:
        return await psycopg.AsyncConnection.connect(self._url, autocommit=True, row_factory=dict_row)

    async def _one(self, query: str, params: Any = None) -> dict[str, Any] | None:
        async with await self._connect() as conn:
            cur = await conn.execute(query, params)
            return await cur.fetchone()

    async def _all(self, query: str, params: Any = None) -> list[dict[str, Any]]:
        async with await self._connect() as conn:
            cur = await conn.execute(query, params)
            return await cur.fetchall()

    async def ensure_schema(self) -> None:
        async with await self._connect() as conn:
            await conn.execute(SCHEMA)
        logger.info("Database schema ensured")

    async def close(self) -> None:
        return None

    # ── Tenants ─────────────────────────────────────────────────────────

    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        row = await self._one("SELECT * FROM shopify_stores WHERE id = %s", (tenant_id,))
        return tenant_from_row(row) if row else None

    async def get_tenant_by_domain(self, shop_domain: str) -> Tenant | None:
        row = await self._one(
            "SELECT * FROM shopify_stores WHERE shop_domain = %s AND is_active", (shop_domain,)
        )
        return tenant_from_row(row) if row else None

    # ── Customers ───────────────────────────────────────────────────────

    async def upsert_customer(self, customer: CanonicalCustomer) -> CanonicalCustomer:
        row = await self._one(
            """
            INSERT INTO shopify_customers (
                store_id, shopify_customer_id, email, first_name, last_name, phone,
                accepts_marketing, orders_count, total_spent, tags, default_address
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (store_id, shopify_customer_id) DO UPDATE SET
                email = EXCLUDED.email,
                first_name = EXCLUDED.first_name,
                last_name = EXCLUDED.last_name,
                phone = EXCLUDED.phone,
                accepts_marketing = EXCLUDED.accepts_marketing,
                orders_count = EXCLUDED.orders_count,
                total_spent = EXCLUDED.total_spent,
                tags = EXCLUDED.tags,
                default_address = EXCLUDED.default_address
            RETURNING *
            """,
            (
                customer.tenant_id,
                customer.external_customer_id,
                customer.email,
                customer.first_name,
                customer.last_name,
                customer.phone,
                customer.accepts_marketing,
                customer.orders_count,
                customer.total_spent,
                Jsonb(customer.tags),
                Jsonb(customer.default_address) if customer.default_address is not None else None,
            ),
        )
        return customer_from_row(row)

    async def get_customer(self, customer_id: str) -> CanonicalCustomer | None:
        row = await self._one("SELECT * FROM shopify_customers WHERE id = %s", (customer_id,))
        return customer_from_row(row) if row else None

    async def link_customer_user(self, customer_id: str, user_id: str) -> bool:
        row = await self._one(
            """
            UPDATE shopify_customers SET beeylo_user_id = %s
            WHERE id = %s AND beeylo_user_id IS NULL
            RETURNING id
            """,
            (user_id, customer_id),
        )
        return row is not None

    async def list_unlinked_customers(self, limit: int) -> list[CanonicalCustomer]:
        rows = await self._all(
            """
            SELECT * FROM shopify_customers
            WHERE beeylo_user_id IS NULL AND email IS NOT NULL
            LIMIT %s
            """,
            (limit,),
        )
        return [customer_from_row(r) for r in rows]

    async def find_user_by_email(
        self, email: str, user_types: Iterable[str] = ELIGIBLE_USER_TYPES
    ) -> UserAccount | None:
        row = await self._one(
            "SELECT * FROM user_profiles WHERE email = %s AND user_type = ANY(%s) LIMIT 1",
            (email, list(user_types)),
        )
        return UserAccount(id=row["id"], email=row["email"], user_type=row["user_type"]) if row else None

    # ── Orders ──────────────────────────────────────────────────────────

    async def upsert_order(self, order: CanonicalOrder) -> CanonicalOrder:
        row = await self._one(
            """
            INSERT INTO shopify_orders (
                store_id, shopify_order_id, order_number, email, phone, customer_id,
                financial_status, fulfillment_status, total_price, subtotal_price, total_tax,
                currency, line_items, shipping_address, billing_address,
                receive_in_beeylo_app, cancelled, created_at, updated_at, cancelled_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (store_id, shopify_order_id) DO UPDATE SET
                order_number = EXCLUDED.order_number,
                email = EXCLUDED.email,
                phone = EXCLUDED.phone,
                customer_id = EXCLUDED.customer_id,
                financial_status = EXCLUDED.financial_status,
                fulfillment_status = EXCLUDED.fulfillment_status,
                total_price = EXCLUDED.total_price,
                subtotal_price = EXCLUDED.subtotal_price,
                total_tax = EXCLUDED.total_tax,
                currency = EXCLUDED.currency,
                line_items = EXCLUDED.line_items,
                shipping_address = EXCLUDED.shipping_address,
                billing_address = EXCLUDED.billing_address,
                receive_in_beeylo_app = EXCLUDED.receive_in_beeylo_app,
                cancelled = EXCLUDED.cancelled,
                created_at = EXCLUDED.created_at,
                updated_at = EXCLUDED.updated_at,
                cancelled_at = EXCLUDED.cancelled_at
            RETURNING *
            """,
            (
                order.tenant_id,
                order.external_order_id,
                order.order_number,
                order.email,
                order.phone,
                order.customer_ref,
                order.financial_status,
                order.fulfillment_status,
                order.total_price,
                order.subtotal_price,
                order.total_tax,
                order.currency,
                Jsonb(line_items_to_json(order.line_items)),
                Jsonb(order.shipping_address) if order.shipping_address is not None else None,
                Jsonb(order.billing_address) if order.billing_address is not None else None,
                order.receive_in_app,
                order.cancelled,
                order.created_at,
                order.updated_at,
                order.cancelled_at,
            ),
        )
        return order_from_row(row)

    async def get_order(self, order_id: str) -> CanonicalOrder | None:
        row = await self._one("SELECT * FROM shopify_orders WHERE id = %s", (order_id,))
        return order_from_row(row) if row else None

    async def get_order_by_external(self, tenant_id: str, external_order_id: str) -> CanonicalOrder | None:
        row = await self._one(
            "SELECT * FROM shopify_orders WHERE store_id = %s AND shopify_order_id = %s",
            (tenant_id, external_order_id),
        )
        return order_from_row(row) if row else None

    # ── Fulfillments ────────────────────────────────────────────────────

    async def upsert_fulfillment(self, fulfillment: CanonicalFulfillment) -> CanonicalFulfillment:
        row = await self._one(
            """
            INSERT INTO order_fulfillments (
                order_id, shopify_fulfillment_id, status, tracking_number, tracking_company,
                tracking_url, shipment_status, line_items, created_at, updated_at,
                estimated_delivery, actual_delivery
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (order_id, shopify_fulfillment_id) DO UPDATE SET
                status = EXCLUDED.status,
                tracking_number = EXCLUDED.tracking_number,
                tracking_company = EXCLUDED.tracking_company,
                tracking_url = EXCLUDED.tracking_url,
                shipment_status = COALESCE(EXCLUDED.shipment_status, order_fulfillments.shipment_status),
                line_items = EXCLUDED.line_items,
                created_at = EXCLUDED.created_at,
                updated_at = EXCLUDED.updated_at,
                estimated_delivery = COALESCE(EXCLUDED.estimated_delivery, order_fulfillments.estimated_delivery),
                actual_delivery = COALESCE(EXCLUDED.actual_delivery, order_fulfillments.actual_delivery)
            RETURNING *
            """,
            (
                fulfillment.order_ref,
                fulfillment.external_fulfillment_id,
                fulfillment.status,
                fulfillment.tracking_number,
                fulfillment.tracking_company,
                fulfillment.tracking_url,
                fulfillment.shipment_status,
                Jsonb(_json_safe(fulfillment.line_items)),
                fulfillment.created_at,
                fulfillment.updated_at,
                fulfillment.estimated_delivery,
                fulfillment.actual_delivery,
            ),
        )
        return fulfillment_from_row(row)

    async def get_fulfillment(self, fulfillment_id: str) -> CanonicalFulfillment | None:
        row = await self._one("SELECT * FROM order_fulfillments WHERE id = %s", (fulfillment_id,))
        return fulfillment_from_row(row) if row else None

    async def update_fulfillment_tracking(
        self,
        fulfillment_id: str,
        *,
        shipment_status: str | None,
        estimated_delivery: datetime | None,
        actual_delivery: datetime | None,
    ) -> CanonicalFulfillment:
        row = await self._one(
            """
            UPDATE order_fulfillments SET
                shipment_status = COALESCE(%s, shipment_status),
                estimated_delivery = COALESCE(%s, estimated_delivery),
                actual_delivery = COALESCE(%s, actual_delivery)
            WHERE id = %s
            RETURNING *
            """,
            (shipment_status, estimated_delivery, actual_delivery, fulfillment_id),
        )
        if row is None:
            raise NotFoundError(
                f"fulfillment {fulfillment_id} not found", resource="fulfillment", key=fulfillment_id
            )
        return fulfillment_from_row(row)

    async def list_active_fulfillments(
        self, statuses: Iterable[str] = ACTIVE_FULFILLMENT_STATUSES
    ) -> list[CanonicalFulfillment]:
        rows = await self._all(
            """
            SELECT * FROM order_fulfillments
            WHERE status = ANY(%s) AND tracking_number IS NOT NULL AND actual_delivery IS NULL
            """,
            (list(statuses),),
        )
        return [fulfillment_from_row(r) for r in rows]

    # ── Tracking events ─────────────────────────────────────────────────

    async def create_tracking_event(self, event: TrackingEvent) -> TrackingEvent | None:
        row = await self._one(
            """
            INSERT INTO tracking_updates (
                fulfillment_id, tracking_number, courier, status, status_description, location, timestamp
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT DO NOTHING
            RETURNING *
            """,
            (
                event.fulfillment_ref,
                event.tracking_number,
                event.courier,
                event.status.value,
                event.description,
                event.location or "",
                event.timestamp,
            ),
        )
        return tracking_event_from_row(row) if row else None

    async def latest_tracking_event(self, fulfillment_id: str) -> TrackingEvent | None:
        row = await self._one(
            """
            SELECT * FROM tracking_updates WHERE fulfillment_id = %s
            ORDER BY created_at DESC LIMIT 1
            """,
            (fulfillment_id,),
        )
        return tracking_event_from_row(row) if row else None

    async def list_tracking_events(self, fulfillment_id: str) -> list[TrackingEvent]:
        rows = await self._all(
            "SELECT * FROM tracking_updates WHERE fulfillment_id = %s ORDER BY timestamp ASC",
            (fulfillment_id,),
        )
        return [tracking_event_from_row(r) for r in rows]

    # ── Notifications ───────────────────────────────────────────────────

    async def create_notification(self, notification: Notification) -> tuple[Notification, bool]:
        row = await self._one(
            """
            INSERT INTO order_notifications (
                store_id, order_id, customer_id, fulfillment_id, type, channel,
                title, message, data, template_id, dedup_key
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (dedup_key) DO NOTHING
            RETURNING *
            """,
            (
                notification.tenant_id,
                notification.order_ref,
                notification.customer_ref,
                notification.fulfillment_ref,
                notification.type.value,
                notification.channel.value,
                notification.title,
                notification.message,
                Jsonb(_json_safe(notification.payload)),
                notification.template_id,
                notification.dedup_key,
            ),
        )
        if row is not None:
            return notification_from_row(row), True
        existing = await self._one(
            "SELECT * FROM order_notifications WHERE dedup_key = %s", (notification.dedup_key,)
        )
        return notification_from_row(existing), False

    async def mark_notification_sent(self, notification_id: str, sent_at: datetime) -> None:
        row = await self._one(
            "UPDATE order_notifications SET sent = TRUE, sent_at = %s WHERE id = %s RETURNING id",
            (sent_at, notification_id),
        )
        if row is None:
            raise NotFoundError(
                f"notification {notification_id} not found", resource="notification", key=notification_id
            )

    async def record_notification_attempt(self, notification_id: str, attempted_at: datetime) -> int:
        row = await self._one(
            """
            UPDATE order_notifications SET attempts = attempts + 1, last_attempt_at = %s
            WHERE id = %s RETURNING attempts
            """,
            (attempted_at, notification_id),
        )
        if row is None:
            raise NotFoundError(
                f"notification {notification_id} not found", resource="notification", key=notification_id
            )
        return row["attempts"]

    async def list_pending_notifications(
        self, limit: int, *, max_attempts: int | None = None, attempted_until: datetime | None = None
    ) -> list[Notification]:
        clauses = ["NOT sent"]
        params: list[Any] = []
        if max_attempts is not None:
            clauses.append("attempts < %s")
            params.append(max_attempts)
        if attempted_until is not None:
            clauses.append("(last_attempt_at IS NULL OR last_attempt_at <= %s)")
            params.append(attempted_until)
        params.append(limit)
        rows = await self._all(
            f"""
            SELECT * FROM order_notifications WHERE {' AND '.join(clauses)}
            ORDER BY last_attempt_at ASC NULLS FIRST, created_at ASC LIMIT %s
            """,
            tuple(params),
        )
        return [notification_from_row(r) for r in rows]

    async def create_inbox_ticket(self, user_id: str, notification: Notification) -> str:
        row = await self._one(
            """
            INSERT INTO tickets (user_id, sender, title, content_summary, section, metadata)
            VALUES (%s, %s, %s, %s, 'Orders', %s)
            RETURNING id
            """,
            (
                user_id,
                notification.title,
                notification.title,
                notification.message,
                Jsonb(_json_safe(notification.payload)),
            ),
        )
        return row["id"]
