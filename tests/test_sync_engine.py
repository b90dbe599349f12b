"""Tests for payload normalization, idempotent upserts and customer linking."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from beeylo_sync.errors import ValidationError
from beeylo_sync.linking import CustomerLinker
from beeylo_sync.store.memory import MemoryStore
from beeylo_sync.store.models import Tenant, UserAccount
from beeylo_sync.sync import (
    SyncEngine,
    normalize_customer,
    normalize_fulfillment,
    normalize_order,
    read_receive_in_app,
    to_decimal,
)
from tests.factories import SHOP_DOMAIN, TENANT_ID, USER_EMAIL, USER_ID, fulfillment_payload, order_payload


# ── Normalization ─────────────────────────────────────────────────────────


class TestNormalizeOrder:
    def test_basic_fields(self):
        order = normalize_order(TENANT_ID, order_payload(), customer_ref="c1", receive_in_app=True)
        assert order.external_order_id == "5001"
        assert order.order_number == "#1001"
        assert order.total_price == Decimal("19.98")
        assert order.currency == "EUR"
        assert order.customer_ref == "c1"
        assert order.line_items[0].line_total == Decimal("19.98")
        assert order.created_at.utcoffset().total_seconds() == 3600

    def test_missing_total_falls_back_to_line_items(self):
        payload = order_payload(total_price=None, subtotal_price=None)
        payload["line_items"].append({"id": 2, "title": "Plate", "quantity": 1, "price": "5.00"})
        order = normalize_order(TENANT_ID, payload, customer_ref=None, receive_in_app=False)
        assert order.total_price == Decimal("24.98")
        assert order.subtotal_price == Decimal("24.98")

    def test_current_total_price_used(self):
        payload = order_payload(total_price=None, current_total_price="12.50")
        assert normalize_order(TENANT_ID, payload, customer_ref=None, receive_in_app=False).total_price == Decimal("12.50")

    def test_malformed_optional_fields_default(self):
        payload = order_payload(currency=None, total_tax="abc", created_at="garbage", shipping_address="n/a")
        order = normalize_order(TENANT_ID, payload, customer_ref=None, receive_in_app=False)
        assert order.currency == "EUR"
        assert order.total_tax == Decimal("0")
        assert order.created_at is None
        assert order.shipping_address is None

    def test_missing_id_rejected(self):
        with pytest.raises(ValidationError):
            normalize_order(TENANT_ID, order_payload(id=None), customer_ref=None, receive_in_app=False)

    def test_image_url_from_properties(self):
        payload = order_payload()
        payload["line_items"][0]["properties"] = [{"name": "_image_url", "value": "https://cdn.example/mug.png"}]
        order = normalize_order(TENANT_ID, payload, customer_ref=None, receive_in_app=False)
        assert order.line_items[0].image_url == "https://cdn.example/mug.png"

    def test_cancelled_flag(self):
        payload = order_payload(cancelled_at="2024-01-16T10:00:00Z")
        order = normalize_order(TENANT_ID, payload, customer_ref=None, receive_in_app=False)
        assert order.cancelled is True


class TestReceiveInApp:
    @pytest.mark.parametrize("value", ["Yes", "yes", "YES", " Yes "])
    def test_yes_values(self, value):
        assert read_receive_in_app({"note_attributes": [{"name": "Receive_in_Beeylo_App", "value": value}]})

    @pytest.mark.parametrize(
        "attrs",
        [None, [], [{"name": "Receive_in_Beeylo_App", "value": "No"}], [{"name": "gift", "value": "Yes"}], ["junk"]],
    )
    def test_other_values(self, attrs):
        assert read_receive_in_app({"note_attributes": attrs}) is False


class TestNormalizeOther:
    def test_customer_tags_and_spent(self):
        customer = normalize_customer(
            TENANT_ID, {"id": 1, "email": "a@b.c", "tags": "vip, repeat,,", "total_spent": "abc", "orders_count": "3"}
        )
        assert customer.tags == ["vip", "repeat"]
        assert customer.total_spent == Decimal("0")
        assert customer.orders_count == 3

    def test_fulfillment_tracking_number_list_fallback(self):
        payload = fulfillment_payload(tracking_number=None, tracking_numbers=["TN1", "TN2"])
        assert normalize_fulfillment("o1", payload).tracking_number == "TN1"

    def test_fulfillment_tracking_fields_as_bare_strings(self):
        payload = fulfillment_payload(
            tracking_number=None, tracking_url=None, tracking_numbers="TN1", tracking_urls="https://track.example/TN1"
        )
        fulfillment = normalize_fulfillment("o1", payload)
        assert fulfillment.tracking_number == "TN1"
        assert fulfillment.tracking_url == "https://track.example/TN1"

    def test_fulfillment_empty_tracking_lists(self):
        payload = fulfillment_payload(tracking_number=None, tracking_url=None, tracking_numbers=[], tracking_urls=[])
        fulfillment = normalize_fulfillment("o1", payload)
        assert fulfillment.tracking_number is None
        assert fulfillment.tracking_url is None

    def test_fulfillment_without_company_has_no_tracking(self):
        assert not normalize_fulfillment("o1", fulfillment_payload(tracking_company=None)).has_tracking

    @pytest.mark.parametrize("value", [None, "", "NaN", "Infinity", "x"])
    def test_to_decimal_defaults(self, value):
        assert to_decimal(value) == Decimal("0")


# ── Engine ────────────────────────────────────────────────────────────────


class TestSyncEngine:
    @pytest.mark.asyncio
    async def test_sync_order_creates_customer_and_order(self, store):
        order = await SyncEngine(store).sync_order(TENANT_ID, order_payload())
        assert order.id is not None
        assert order.receive_in_app is True
        assert order.customer_ref is not None
        assert len(store.customers) == 1

    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self, store):
        engine = SyncEngine(store)
        first = await engine.sync_order(TENANT_ID, order_payload())
        second = await engine.sync_order(TENANT_ID, order_payload())
        assert first.id == second.id
        assert first == second
        assert len(store.orders) == 1
        assert len(store.customers) == 1

    @pytest.mark.asyncio
    async def test_explicit_receive_in_app_overrides_payload(self, store):
        order = await SyncEngine(store).sync_order(TENANT_ID, order_payload(), receive_in_app=False)
        assert order.receive_in_app is False

    @pytest.mark.asyncio
    async def test_customer_failure_keeps_order(self, store):
        engine = SyncEngine(store)
        with patch.object(store, "upsert_customer", AsyncMock(side_effect=RuntimeError("db down"))):
            order = await engine.sync_order(TENANT_ID, order_payload())
        assert order.customer_ref is None
        assert order.email == USER_EMAIL
        assert len(store.orders) == 1

    @pytest.mark.asyncio
    async def test_missing_order_id_rejected(self, store):
        with pytest.raises(ValidationError):
            await SyncEngine(store).sync_order(TENANT_ID, order_payload(id=None))
        assert store.orders == {}

    @pytest.mark.asyncio
    async def test_nested_fulfillments_synced(self, store):
        hook = AsyncMock()
        payload = order_payload(fulfillments=[fulfillment_payload()])
        order = await SyncEngine(store, on_fulfillment=hook).sync_order(TENANT_ID, payload)
        assert len(store.fulfillments) == 1
        hook.assert_awaited_once()
        assert hook.await_args.args[0].order_ref == order.id

    @pytest.mark.asyncio
    async def test_hook_skipped_without_tracking(self, store):
        hook = AsyncMock()
        engine = SyncEngine(store, on_fulfillment=hook)
        order = await engine.sync_order(TENANT_ID, order_payload())
        await engine.sync_fulfillment(order.id, fulfillment_payload(tracking_number=None))
        hook.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fulfillment_upsert_keeps_tracking_state(self, store):
        engine = SyncEngine(store)
        order = await engine.sync_order(TENANT_ID, order_payload())
        first = await engine.sync_fulfillment(order.id, fulfillment_payload())
        await store.update_fulfillment_tracking(
            first.id, shipment_status="in_transit", estimated_delivery=None, actual_delivery=None
        )
        again = await engine.sync_fulfillment(order.id, fulfillment_payload())
        assert again.id == first.id
        assert again.shipment_status == "in_transit"

    @given(
        total=st.decimals(min_value=0, max_value=10_000, places=2),
        quantity=st.integers(min_value=1, max_value=20),
        in_app=st.booleans(),
        replays=st.integers(min_value=2, max_value=4),
    )
    @settings(max_examples=30)
    def test_replaying_any_order_yields_one_record(self, total, quantity, in_app, replays):
        async def run() -> MemoryStore:
            s = MemoryStore()
            s.add_tenant(Tenant(id=TENANT_ID, shop_domain=SHOP_DOMAIN))
            engine = SyncEngine(s)
            payload = order_payload(
                total_price=str(total),
                note_attributes=[{"name": "Receive_in_Beeylo_App", "value": "Yes" if in_app else "No"}],
            )
            payload["line_items"][0]["quantity"] = quantity
            results = [await engine.sync_order(TENANT_ID, payload) for _ in range(replays)]
            assert all(r == results[0] for r in results)
            return s

        s = asyncio.run(run())
        assert len(s.orders) == 1
        (order,) = s.orders.values()
        assert order.total_price == total
        assert order.receive_in_app is in_app


# ── Linking ───────────────────────────────────────────────────────────────


class TestCustomerLinking:
    @pytest.mark.asyncio
    async def test_links_eligible_user_by_email(self, store):
        engine = SyncEngine(store, CustomerLinker(store))
        order = await engine.sync_order(TENANT_ID, order_payload())
        customer = await store.get_customer(order.customer_ref)
        assert customer.user_ref == USER_ID

    @pytest.mark.asyncio
    async def test_ineligible_user_type_not_linked(self):
        s = MemoryStore()
        s.add_tenant(Tenant(id=TENANT_ID, shop_domain=SHOP_DOMAIN))
        s.add_user(UserAccount(id="merchant", email=USER_EMAIL, user_type="shopify_merchant"))
        order = await SyncEngine(s, CustomerLinker(s)).sync_order(TENANT_ID, order_payload())
        assert (await s.get_customer(order.customer_ref)).user_ref is None

    @pytest.mark.asyncio
    async def test_link_never_reassigned(self, store):
        linker = CustomerLinker(store)
        engine = SyncEngine(store, linker)
        order = await engine.sync_order(TENANT_ID, order_payload())
        store.add_user(UserAccount(id="user-2", email="other@example.com", user_type="both"))

        customer_payload = dict(order_payload()["customer"], email="other@example.com")
        await engine.sync_order(TENANT_ID, order_payload(customer=customer_payload))

        assert (await store.get_customer(order.customer_ref)).user_ref == USER_ID

    @pytest.mark.asyncio
    async def test_link_failure_does_not_fail_sync(self, store):
        linker = CustomerLinker(store)
        with patch.object(linker, "link_customer", AsyncMock(side_effect=RuntimeError("boom"))):
            order = await SyncEngine(store, linker).sync_order(TENANT_ID, order_payload())
        assert order.customer_ref is not None

    @pytest.mark.asyncio
    async def test_bulk_link_report(self, store):
        engine = SyncEngine(store)
        await engine.sync_order(TENANT_ID, order_payload())
        stranger = dict(order_payload()["customer"], id=7002, email="nobody@example.com")
        await engine.sync_order(TENANT_ID, order_payload(id=5002, customer=stranger))

        report = await CustomerLinker(store).link_all_unlinked(batch=100)
        assert report.linked == 1
        assert report.not_found == 1
        assert report.errors == 0
