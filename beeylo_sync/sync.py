"""Sync engine: Shopify payloads -> canonical records -> idempotent upserts.

Orders are keyed on (tenant, order id), customers on (tenant, customer id)
and fulfillments on (order, fulfillment id). Replaying a payload produces
the same stored state.

Malformed optional fields fall back to defaults; only a missing primary id
aborts a sync with ValidationError. A failing customer sync leaves the order
with no customer reference but keeps its email for later linking.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable

from beeylo_sync.couriers.models import parse_timestamp
from beeylo_sync.errors import ValidationError
from beeylo_sync.linking import CustomerLinker
from beeylo_sync.store.base import StateStore
from beeylo_sync.store.models import (
    CanonicalCustomer,
    CanonicalFulfillment,
    CanonicalOrder,
    LineItem,
)

logger = logging.getLogger(__name__)

RECEIVE_IN_APP_ATTRIBUTE = "Receive_in_Beeylo_App"
IMAGE_URL_PROPERTY = "_image_url"
DEFAULT_CURRENCY = "EUR"

FulfillmentHook = Callable[[CanonicalFulfillment], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Field coercion
# ---------------------------------------------------------------------------


def to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return Decimal("0")
    return result if result.is_finite() else Decimal("0")


def to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        try:
            return int(to_decimal(value))
        except (InvalidOperation, ValueError):
            return 0


def to_id(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _dict_or_none(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def _first(value: Any) -> Any:
    """First element of a list, or a bare scalar as is."""
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value or None


def read_receive_in_app(payload: dict[str, Any]) -> bool:
    """True when the order opted in to delivery in the Beeylo app."""
    for attr in payload.get("note_attributes") or []:
        if not isinstance(attr, dict):
            continue
        if attr.get("name") == RECEIVE_IN_APP_ATTRIBUTE:
            return str(attr.get("value", "")).strip().lower() == "yes"
    return False


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def normalize_line_item(raw: dict[str, Any]) -> LineItem:
    image_url = None
    for prop in raw.get("properties") or []:
        if isinstance(prop, dict) and prop.get("name") == IMAGE_URL_PROPERTY:
            image_url = prop.get("value") or None
    return LineItem(
        id=to_id(raw.get("id")),
        product_id=to_id(raw.get("product_id")),
        variant_id=to_id(raw.get("variant_id")),
        title=str(raw.get("title") or raw.get("name") or ""),
        quantity=to_int(raw.get("quantity")),
        price=to_decimal(raw.get("price")),
        sku=raw.get("sku") or None,
        vendor=raw.get("vendor") or None,
        product_exists=bool(raw.get("product_exists", True)),
        fulfillment_service=raw.get("fulfillment_service"),
        fulfillment_status=raw.get("fulfillment_status"),
        image_url=image_url,
    )


def normalize_order(
    tenant_id: str,
    payload: dict[str, Any],
    *,
    customer_ref: str | None,
    receive_in_app: bool,
) -> CanonicalOrder:
    external_id = to_id(payload.get("id"))
    if external_id is None:
        raise ValidationError("order payload has no id", field="id")

    line_items = [normalize_line_item(li) for li in payload.get("line_items") or [] if isinstance(li, dict)]
    items_total = sum((li.line_total for li in line_items), Decimal("0"))

    total = payload.get("total_price")
    if total in (None, ""):
        total = payload.get("current_total_price")
    subtotal = payload.get("subtotal_price")
    customer = _dict_or_none(payload.get("customer")) or {}

    return CanonicalOrder(
        tenant_id=tenant_id,
        external_order_id=external_id,
        order_number=to_id(payload.get("name") or payload.get("order_number")),
        email=payload.get("email") or customer.get("email"),
        phone=payload.get("phone"),
        customer_ref=customer_ref,
        financial_status=payload.get("financial_status"),
        fulfillment_status=payload.get("fulfillment_status"),
        total_price=items_total if total in (None, "") else to_decimal(total),
        subtotal_price=items_total if subtotal in (None, "") else to_decimal(subtotal),
        total_tax=to_decimal(payload.get("total_tax")),
        currency=payload.get("currency") or DEFAULT_CURRENCY,
        line_items=line_items,
        shipping_address=_dict_or_none(payload.get("shipping_address")),
        billing_address=_dict_or_none(payload.get("billing_address")),
        receive_in_app=receive_in_app,
        cancelled=bool(payload.get("cancelled_at")),
        created_at=parse_timestamp(payload.get("created_at")),
        updated_at=parse_timestamp(payload.get("updated_at")),
        cancelled_at=parse_timestamp(payload.get("cancelled_at")),
    )


def normalize_customer(tenant_id: str, payload: dict[str, Any]) -> CanonicalCustomer:
    external_id = to_id(payload.get("id"))
    if external_id is None:
        raise ValidationError("customer payload has no id", field="id")

    consent = _dict_or_none(payload.get("email_marketing_consent")) or {}
    tags = payload.get("tags") or ""
    if isinstance(tags, list):
        tag_list = [str(t).strip() for t in tags if str(t).strip()]
    else:
        tag_list = [t.strip() for t in str(tags).split(",") if t.strip()]

    return CanonicalCustomer(
        tenant_id=tenant_id,
        external_customer_id=external_id,
        email=payload.get("email") or None,
        first_name=payload.get("first_name"),
        last_name=payload.get("last_name"),
        phone=payload.get("phone"),
        accepts_marketing=bool(payload.get("accepts_marketing") or consent.get("state") == "subscribed"),
        orders_count=to_int(payload.get("orders_count")),
        total_spent=to_decimal(payload.get("total_spent")),
        tags=tag_list,
        default_address=_dict_or_none(payload.get("default_address")),
    )


def normalize_fulfillment(order_ref: str, payload: dict[str, Any]) -> CanonicalFulfillment:
    external_id = to_id(payload.get("id"))
    if external_id is None:
        raise ValidationError("fulfillment payload has no id", field="id")

    tracking_number = payload.get("tracking_number")
    if not tracking_number:
        tracking_number = _first(payload.get("tracking_numbers"))
    tracking_url = payload.get("tracking_url")
    if not tracking_url:
        tracking_url = _first(payload.get("tracking_urls"))

    return CanonicalFulfillment(
        order_ref=order_ref,
        external_fulfillment_id=external_id,
        status=payload.get("status"),
        tracking_number=to_id(tracking_number),
        tracking_company=payload.get("tracking_company") or None,
        tracking_url=tracking_url,
        shipment_status=payload.get("shipment_status"),
        line_items=[li for li in payload.get("line_items") or [] if isinstance(li, dict)],
        created_at=parse_timestamp(payload.get("created_at")),
        updated_at=parse_timestamp(payload.get("updated_at")),
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class SyncEngine:
    """Applies Shopify payloads to the state store.

    Args:
        store: Persistence backend.
        linker: Optional customer linker, tried after each customer upsert.
        on_fulfillment: Awaited for every synced fulfillment that carries
            tracking info and is not yet delivered (schedules tracking).
    """

    def __init__(
        self,
        store: StateStore,
        linker: CustomerLinker | None = None,
        on_fulfillment: FulfillmentHook | None = None,
    ):
        self._store = store
        self._linker = linker
        self._on_fulfillment = on_fulfillment

    async def sync_order(
        self,
        tenant_id: str,
        external_order: dict[str, Any],
        receive_in_app: bool | None = None,
    ) -> CanonicalOrder:
        if to_id(external_order.get("id")) is None:
            raise ValidationError("order payload has no id", field="id")

        customer_ref = None
        customer_payload = _dict_or_none(external_order.get("customer"))
        if customer_payload and customer_payload.get("id"):
            try:
                customer = await self.sync_customer(tenant_id, customer_payload)
                customer_ref = customer.id
            except Exception:
                logger.warning(
                    "Customer sync failed for order %s; keeping email only",
                    external_order.get("id"),
                    exc_info=True,
                )

        if receive_in_app is None:
            receive_in_app = read_receive_in_app(external_order)

        order = normalize_order(
            tenant_id,
            external_order,
            customer_ref=customer_ref,
            receive_in_app=receive_in_app,
        )
        stored = await self._store.upsert_order(order)
        logger.info(
            "Synced order %s (%s) for tenant %s",
            stored.order_number or stored.external_order_id,
            stored.id,
            tenant_id,
        )

        for fulfillment in external_order.get("fulfillments") or []:
            if isinstance(fulfillment, dict):
                await self.sync_fulfillment(stored.id, fulfillment)
        return stored

    async def sync_customer(self, tenant_id: str, external_customer: dict[str, Any]) -> CanonicalCustomer:
        stored = await self._store.upsert_customer(normalize_customer(tenant_id, external_customer))
        if self._linker is not None and not stored.user_ref and stored.email:
            try:
                user_ref = await self._linker.link_customer(stored)
            except Exception:
                logger.warning("Customer linking failed for %s", stored.id, exc_info=True)
            else:
                if user_ref:
                    stored.user_ref = user_ref
        return stored

    async def sync_fulfillment(self, order_ref: str, external_fulfillment: dict[str, Any]) -> CanonicalFulfillment:
        stored = await self._store.upsert_fulfillment(normalize_fulfillment(order_ref, external_fulfillment))
        logger.info(
            "Synced fulfillment %s for order %s (tracking=%s)",
            stored.external_fulfillment_id,
            order_ref,
            stored.tracking_number or "-",
        )
        if self._on_fulfillment is not None and stored.has_tracking and stored.actual_delivery is None:
            await self._on_fulfillment(stored)
        return stored
