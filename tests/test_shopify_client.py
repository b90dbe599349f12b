"""Tests for the Shopify Admin client: pagination, tagging and error mapping."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest

from beeylo_sync.errors import AuthError, NotFoundError, UpstreamError
from beeylo_sync.ratelimit import KeyedRateLimiter, LimitSpec
from beeylo_sync.shopify import APP_DELIVERY_TAG, ShopifyClient

BASE = "https://teststore.myshopify.com/admin/api/2024-01"


def _client(tenant, handler) -> ShopifyClient:
    limiter = KeyedRateLimiter(lambda key: LimitSpec(capacity=100, refill_rate=100))
    return ShopifyClient(tenant, limiter, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestOrders:
    @pytest.mark.asyncio
    async def test_follows_link_pagination(self, tenant):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if "page_info" not in request.url.params:
                link = f'<{BASE}/orders.json?page_info=p2&limit=250>; rel="next"'
                return httpx.Response(200, json={"orders": [{"id": 1}, {"id": 2}]}, headers={"Link": link})
            return httpx.Response(200, json={"orders": [{"id": 3}]})

        since = datetime(2024, 1, 1, tzinfo=timezone.utc)
        orders = await _client(tenant, handler).fetch_orders(since=since)

        assert [o["id"] for o in orders] == [1, 2, 3]
        assert requests[0].url.params["created_at_min"] == "2024-01-01T00:00:00+00:00"
        assert requests[0].url.params["status"] == "any"
        assert requests[1].url.params["page_info"] == "p2"
        assert "created_at_min" not in requests[1].url.params
        assert requests[0].headers["X-Shopify-Access-Token"] == "shpat_test"

    @pytest.mark.asyncio
    async def test_empty_listing(self, tenant):
        orders = await _client(tenant, lambda r: httpx.Response(200, json={})).fetch_orders()
        assert orders == []


class TestAddOrderTag:
    @pytest.mark.asyncio
    async def test_merges_tag(self, tenant):
        puts = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "PUT":
                puts.append(json.loads(request.content))
                return httpx.Response(200, json={"order": {}})
            return httpx.Response(200, json={"order": {"id": 5001, "tags": "vip, gift"}})

        assert await _client(tenant, handler).add_order_tag("5001") is True
        assert puts == [{"order": {"id": "5001", "tags": f"vip, gift, {APP_DELIVERY_TAG}"}}]

    @pytest.mark.asyncio
    async def test_already_tagged_is_noop(self, tenant):
        methods = []

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append(request.method)
            return httpx.Response(200, json={"order": {"id": 5001, "tags": f"{APP_DELIVERY_TAG},vip"}})

        assert await _client(tenant, handler).add_order_tag("5001") is False
        assert methods == ["GET"]

    @pytest.mark.asyncio
    async def test_untagged_order(self, tenant):
        puts = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "PUT":
                puts.append(json.loads(request.content)["order"]["tags"])
            return httpx.Response(200, json={"order": {"id": 5001, "tags": None}})

        await _client(tenant, handler).add_order_tag("5001")
        assert puts == [APP_DELIVERY_TAG]


class TestErrorMapping:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,error",
        [(401, AuthError), (403, AuthError), (404, NotFoundError), (422, UpstreamError)],
    )
    async def test_status_codes(self, tenant, status, error):
        client = _client(tenant, lambda r: httpx.Response(status, json={"errors": "x"}))
        with pytest.raises(error):
            await client.get_order("5001")

    @pytest.mark.asyncio
    async def test_error_carries_service_and_status(self, tenant):
        client = _client(tenant, lambda r: httpx.Response(401))
        with pytest.raises(AuthError) as exc_info:
            await client.fetch_orders()
        assert exc_info.value.service == "shopify"
        assert exc_info.value.status_code == 401
