"""Inbound Shopify webhook route.

The handler:
1. Reads the raw body (the exact bytes are needed for HMAC verification)
2. Resolves the tenant from the shop-domain header
3. Verifies the signature with the tenant's secret, or the app-level one
4. Drops replays by webhook id
5. Enqueues a WebhookJob and returns 200 immediately

Security contract:
- Never return error details to the webhook caller
- 401 for missing headers or a bad signature, 404 for an unknown shop
- 503 when the job cannot be queued, so Shopify redelivers
- Log all webhook activity for audit trail
"""

from __future__ import annotations

import logging
import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from beeylo_sync.queue.jobs import WebhookJob
from beeylo_sync.webhooks.dispatcher import normalize_topic, priority_for
from beeylo_sync.webhooks.verification import (
    SHOP_DOMAIN_HEADER,
    SIGNATURE_HEADER,
    WEBHOOK_ID_HEADER,
    verify,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

# Webhook receive counter per shop, for the audit line
_webhook_counts: dict[str, int] = {}


def _log_webhook(shop: str, topic: str, webhook_id: str | None, status: str) -> None:
    """Audit log for webhook activity."""
    _webhook_counts[shop] = _webhook_counts.get(shop, 0) + 1
    logger.info(
        "WEBHOOK_AUDIT shop=%s topic=%s id=%s status=%s count=%d",
        shop,
        topic,
        webhook_id or "-",
        status,
        _webhook_counts[shop],
    )


@router.post("/{topic:path}")
async def receive_webhook(topic: str, request: Request) -> JSONResponse:
    runtime = request.app.state.runtime
    start = time.time()

    body = await request.body()
    topic = normalize_topic(topic)
    signature = request.headers.get(SIGNATURE_HEADER)
    shop_domain = (request.headers.get(SHOP_DOMAIN_HEADER) or "").strip().lower()
    webhook_id = request.headers.get(WEBHOOK_ID_HEADER)

    if not signature or not shop_domain:
        _log_webhook(shop_domain or "unknown", topic, webhook_id, "missing_headers")
        return JSONResponse({"status": "unauthorized"}, status_code=401)

    tenant = await runtime.store.get_tenant_by_domain(shop_domain)
    settings = runtime.settings
    secret = (
        (tenant.webhook_secret if tenant else None) or settings.shopify_webhook_secret or settings.shopify_api_secret
    )

    if not verify(body, signature, secret):
        _log_webhook(shop_domain, topic, webhook_id, "signature_failed")
        return JSONResponse({"status": "unauthorized"}, status_code=401)

    if tenant is None:
        _log_webhook(shop_domain, topic, webhook_id, "unknown_tenant")
        return JSONResponse({"status": "not_found"}, status_code=404)

    if await runtime.dedup.is_duplicate(webhook_id):
        _log_webhook(shop_domain, topic, webhook_id, "duplicate")
        return JSONResponse({"status": "duplicate"}, status_code=200)

    job = WebhookJob(
        topic=topic,
        tenant_id=tenant.id,
        shop_domain=shop_domain,
        raw_payload=body.decode("utf-8", errors="replace"),
        received_at=start,
        webhook_id=webhook_id,
    )
    try:
        job_id = await runtime.webhook_queue.enqueue(job, priority=priority_for(topic))
    except Exception:
        logger.exception("Failed to queue webhook %s from %s", topic, shop_domain)
        await runtime.dedup.forget(webhook_id)
        _log_webhook(shop_domain, topic, webhook_id, "queue_failed")
        return JSONResponse({"status": "unavailable"}, status_code=503)

    _log_webhook(shop_domain, topic, webhook_id, "queued")
    logger.debug("Webhook accepted in %.1fms: %s", (time.time() - start) * 1000, topic)
    return JSONResponse({"status": "queued", "job_id": job_id}, status_code=200)
