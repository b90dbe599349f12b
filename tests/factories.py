"""Payload builders and constants shared by the tests."""

from __future__ import annotations

import json
from typing import Any

TENANT_ID = "tenant-1"
SHOP_DOMAIN = "teststore.myshopify.com"
WEBHOOK_SECRET = "whsec-test"
USER_ID = "user-1"
USER_EMAIL = "jane@example.com"


class FakeClock:
    """Manually advanced clock whose ``sleep`` moves time instead of waiting."""

    def __init__(self, start: float = 1_000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def order_payload(**overrides: Any) -> dict[str, Any]:
    """A Shopify orders/create body for one line item (2 x 9.99)."""
    payload: dict[str, Any] = {
        "id": 5001,
        "name": "#1001",
        "email": USER_EMAIL,
        "financial_status": "paid",
        "fulfillment_status": None,
        "total_price": "19.98",
        "subtotal_price": "19.98",
        "total_tax": "0.00",
        "currency": "EUR",
        "created_at": "2024-01-15T10:00:00+01:00",
        "updated_at": "2024-01-15T10:00:00+01:00",
        "customer": {"id": 7001, "email": USER_EMAIL, "first_name": "Jane", "last_name": "Doe"},
        "line_items": [
            {"id": 1, "product_id": 11, "variant_id": 111, "title": "Mug", "quantity": 2, "price": "9.99"},
        ],
        "note_attributes": [{"name": "Receive_in_Beeylo_App", "value": "Yes"}],
    }
    payload.update(overrides)
    return payload


def fulfillment_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": 9001,
        "order_id": 5001,
        "status": "success",
        "tracking_company": "PostNL",
        "tracking_number": "3SABCD1234567",
        "tracking_url": "https://postnl.nl/track/3SABCD1234567",
        "created_at": "2024-01-16T09:00:00Z",
    }
    payload.update(overrides)
    return payload


def as_body(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload).encode()
