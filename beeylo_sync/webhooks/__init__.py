"""Inbound Shopify webhooks: verification, dedup, routing and processing."""
