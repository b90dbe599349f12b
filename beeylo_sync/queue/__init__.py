"""Durable priority job queues with retry backoff and dead letters."""

from beeylo_sync.queue.jobs import (
    JobOptions,
    JobRecord,
    JobState,
    RetryPolicy,
    TrackingJob,
    WebhookJob,
)
from beeylo_sync.queue.queue import JobQueue

__all__ = [
    "JobOptions",
    "JobQueue",
    "JobRecord",
    "JobState",
    "RetryPolicy",
    "TrackingJob",
    "WebhookJob",
]
