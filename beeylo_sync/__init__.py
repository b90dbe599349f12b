"""Beeylo Shopify sync service.

Webhook ingestion, durable job queues, rate-limited courier tracking and
in-app order notifications for connected Shopify stores.
"""
