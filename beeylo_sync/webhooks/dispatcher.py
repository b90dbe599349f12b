"""Webhook topic routing: normalization and queue priorities.

Lower priority values are served first. New orders jump ahead of updates so
confirmations go out quickly; fulfillments follow because they start
tracking.
"""

from __future__ import annotations

from enum import Enum


class Topic(str, Enum):
    ORDERS_CREATE = "orders/create"
    ORDERS_UPDATED = "orders/updated"
    ORDERS_CANCELLED = "orders/cancelled"
    ORDERS_FULFILLED = "orders/fulfilled"
    ORDERS_PAID = "orders/paid"
    FULFILLMENTS_CREATE = "fulfillments/create"
    FULFILLMENTS_UPDATE = "fulfillments/update"
    CUSTOMERS_CREATE = "customers/create"
    CUSTOMERS_UPDATE = "customers/update"


DEFAULT_PRIORITY = 5

TOPIC_PRIORITIES: dict[str, int] = {
    Topic.ORDERS_CREATE.value: 1,
    Topic.FULFILLMENTS_CREATE.value: 2,
    Topic.FULFILLMENTS_UPDATE.value: 3,
}


def normalize_topic(raw: str) -> str:
    """Accept ``orders/create``, ``orders-create`` or ``orders_create``."""
    topic = raw.strip().strip("/").lower()
    if "/" in topic:
        return topic
    for sep in ("-", "_"):
        if sep in topic:
            resource, _, action = topic.partition(sep)
            return f"{resource}/{action}"
    return topic


def priority_for(topic: str) -> int:
    return TOPIC_PRIORITIES.get(topic, DEFAULT_PRIORITY)


def is_supported(topic: str) -> bool:
    return topic in {t.value for t in Topic}
