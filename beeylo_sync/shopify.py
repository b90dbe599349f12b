"""Shopify Admin REST client used by the sync path.

Every request is serialized on the tenant's rate-limiter key and retried
with backoff on 429/5xx. Failures surface as service errors.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, AsyncIterator

import httpx

from beeylo_sync.errors import AuthError, NotFoundError, TransientUpstreamError, UpstreamError
from beeylo_sync.ratelimit import KeyedRateLimiter, store_key
from beeylo_sync.retry import RETRYABLE_STATUS_CODES, retry_with_backoff
from beeylo_sync.store.models import Tenant

logger = logging.getLogger(__name__)

APP_DELIVERY_TAG = "beeylo-app-delivery"


class ShopifyClient:
    def __init__(
        self,
        tenant: Tenant,
        limiter: KeyedRateLimiter,
        *,
        api_version: str = "2024-01",
        client: httpx.AsyncClient | None = None,
    ):
        self.tenant = tenant
        self._limiter = limiter
        self._key = store_key(tenant.id)
        self._base = f"https://{tenant.shop_domain}/admin/api/{api_version}"
        self._client = client or httpx.AsyncClient(timeout=30.0)
        self._headers = {
            "X-Shopify-Access-Token": tenant.access_token,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def aclose(self) -> None:
        await self._client.aclose()

    @retry_with_backoff(max_retries=3, base_delay=1.0)
    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        async with self._limiter.slot(self._key):
            response = await self._client.request(method, url, headers=self._headers, **kwargs)
        response.raise_for_status()
        return response

    async def _call(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._send(method, url, **kwargs)
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status in (401, 403):
                raise AuthError("shopify rejected the access token", service="shopify", status_code=status) from exc
            if status == 404:
                raise NotFoundError(f"shopify resource not found: {url}", resource="shopify") from exc
            if status in RETRYABLE_STATUS_CODES:
                raise TransientUpstreamError(
                    f"shopify API error: {status}", service="shopify", status_code=status
                ) from exc
            raise UpstreamError(f"shopify API error: {status}", service="shopify", status_code=status) from exc
        except httpx.TransportError as exc:
            raise TransientUpstreamError(f"shopify unreachable: {type(exc).__name__}", service="shopify") from exc

    # ── Orders ──────────────────────────────────────────────────────────

    async def iter_orders(
        self, since: datetime | None = None, limit: int = 250, status: str = "any"
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield orders created since ``since``, following Link pagination."""
        params: dict[str, Any] | None = {"limit": limit, "status": status}
        if since is not None:
            params["created_at_min"] = since.isoformat()
        url: str | None = f"{self._base}/orders.json"
        while url:
            response = await self._call("GET", url, params=params)
            for order in response.json().get("orders", []):
                yield order
            url = response.links.get("next", {}).get("url")
            # The next-page URL carries its own page_info cursor.
            params = None

    async def fetch_orders(
        self, since: datetime | None = None, limit: int = 250, status: str = "any"
    ) -> list[dict[str, Any]]:
        return [order async for order in self.iter_orders(since, limit, status)]

    async def get_order(self, order_id: str) -> dict[str, Any]:
        response = await self._call("GET", f"{self._base}/orders/{order_id}.json")
        return response.json()["order"]

    async def add_order_tag(self, order_id: str, tag: str = APP_DELIVERY_TAG) -> bool:
        """Merge ``tag`` into the order's tags. Returns False if already present."""
        order = await self.get_order(order_id)
        tags = [t.strip() for t in (order.get("tags") or "").split(",") if t.strip()]
        if tag in tags:
            return False
        tags.append(tag)
        await self._call(
            "PUT",
            f"{self._base}/orders/{order_id}.json",
            json={"order": {"id": order_id, "tags": ", ".join(tags)}},
        )
        logger.info("Tagged order %s on %s with %s", order_id, self.tenant.shop_domain, tag)
        return True
