"""Operator API routes: queue inspection, manual sync and tracking refresh."""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from beeylo_sync.errors import NotFoundError, SyncError
from beeylo_sync.queue.jobs import JobOptions, TrackingJob

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["operator"])


class SyncRequest(BaseModel):
    tenant_id: str
    since: datetime | None = None


class TrackingRefreshRequest(BaseModel):
    fulfillment_id: str


@router.get("/queues")
async def queue_stats(request: Request):
    """Ready, delayed, active and dead counts per queue."""
    runtime = request.app.state.runtime
    return {"queues": await runtime.queue_stats()}


@router.get("/dead-letters")
async def dead_letters(request: Request, queue: str = Query(...), limit: int = Query(50, ge=1, le=500)):
    """Dead-lettered jobs for one queue, most recent first."""
    runtime = request.app.state.runtime
    job_queue = runtime.queues.get(queue)
    if job_queue is None:
        return JSONResponse({"error": f"unknown queue {queue}"}, status_code=404)
    records = await job_queue.dead_letters(limit)
    return {"queue": queue, "jobs": [r.summary() for r in records]}


@router.post("/sync")
async def manual_sync(body: SyncRequest, request: Request):
    """Pull recent orders for one store and queue them for processing."""
    runtime = request.app.state.runtime
    try:
        queued = await runtime.manual_sync.run(body.tenant_id, since=body.since)
    except NotFoundError:
        return JSONResponse({"error": "tenant not found"}, status_code=404)
    except SyncError as exc:
        logger.warning("Manual sync for %s failed: %s", body.tenant_id, exc)
        return JSONResponse({"error": "sync failed"}, status_code=502)
    return {"status": "queued", "orders": queued}


@router.post("/tracking/refresh")
async def refresh_tracking(body: TrackingRefreshRequest, request: Request):
    """Queue an immediate tracking refresh for one fulfillment."""
    runtime = request.app.state.runtime
    fulfillment = await runtime.store.get_fulfillment(body.fulfillment_id)
    if fulfillment is None:
        return JSONResponse({"error": "fulfillment not found"}, status_code=404)
    if not fulfillment.has_tracking:
        return JSONResponse({"error": "fulfillment has no tracking info"}, status_code=422)
    order = await runtime.store.get_order(fulfillment.order_ref)
    if order is None:
        return JSONResponse({"error": "order not found"}, status_code=404)

    job = TrackingJob(
        fulfillment_id=fulfillment.id,
        tracking_number=fulfillment.tracking_number,
        courier_name=fulfillment.tracking_company or "",
        tenant_id=order.tenant_id,
    )
    job_id = await runtime.tracking_queue.enqueue(job, options=JobOptions(delay=0))
    return {"status": "queued", "job_id": job_id}
