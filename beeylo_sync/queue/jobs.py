"""Job payloads, retry policy and the persisted job record."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ClassVar


class JobState(str, Enum):
    DELAYED = "delayed"
    READY = "ready"
    ACTIVE = "active"
    DEAD = "dead"


@dataclass(frozen=True)
class WebhookJob:
    """A verified webhook waiting to be processed. Immutable once queued."""

    kind: ClassVar[str] = "webhook"

    topic: str
    tenant_id: str
    shop_domain: str
    raw_payload: str
    received_at: float
    webhook_id: str | None = None

    def payload(self) -> dict[str, Any]:
        """Decode the raw JSON body."""
        return json.loads(self.raw_payload)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WebhookJob:
        return cls(**data)


@dataclass(frozen=True)
class TrackingJob:
    """Refresh courier tracking for one fulfillment."""

    kind: ClassVar[str] = "tracking"

    fulfillment_id: str
    tracking_number: str
    courier_name: str
    tenant_id: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrackingJob:
        return cls(**data)


JOB_TYPES: dict[str, type] = {
    WebhookJob.kind: WebhookJob,
    TrackingJob.kind: TrackingJob,
}


@dataclass(frozen=True)
class RetryPolicy:
    """Per-queue defaults for attempts and exponential backoff.

    The n-th retry waits ``base_delay * 2**(n-1)`` seconds, capped at
    ``max_delay``.
    """

    max_attempts: int
    base_delay: float
    max_delay: float = 600.0
    initial_delay: float = 0.0

    def backoff(self, attempts_made: int) -> float:
        return compute_backoff(attempts_made, self.base_delay, self.max_delay)


def compute_backoff(attempts_made: int, base_delay: float, max_delay: float) -> float:
    exponent = max(attempts_made - 1, 0)
    return min(base_delay * (2**exponent), max_delay)


@dataclass(frozen=True)
class JobOptions:
    """Per-job overrides of the queue's RetryPolicy."""

    delay: float | None = None
    attempts: int | None = None
    backoff: float | None = None
    backoff_cap: float | None = None


@dataclass
class JobRecord:
    """A job as stored by the broker."""

    id: str
    queue: str
    kind: str
    data: dict[str, Any]
    priority: int
    seq: int
    max_attempts: int
    backoff_base: float
    backoff_cap: float
    enqueued_at: float
    available_at: float
    state: JobState = JobState.READY
    attempts_made: int = 0
    last_error: str = ""
    dead_at: float | None = None
    delays: list[float] = field(default_factory=list)

    @property
    def job(self) -> WebhookJob | TrackingJob:
        return JOB_TYPES[self.kind].from_dict(self.data)

    @property
    def exhausted(self) -> bool:
        return self.attempts_made >= self.max_attempts

    def next_delay(self) -> float:
        return compute_backoff(self.attempts_made, self.backoff_base, self.backoff_cap)

    def to_json(self) -> str:
        data = asdict(self)
        data["state"] = self.state.value
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str | bytes) -> JobRecord:
        data = json.loads(raw)
        data["state"] = JobState(data["state"])
        return cls(**data)

    def summary(self) -> dict[str, Any]:
        """Operator-facing view used by the dead-letter listing."""
        return {
            "id": self.id,
            "queue": self.queue,
            "kind": self.kind,
            "state": self.state.value,
            "priority": self.priority,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "last_error": self.last_error,
            "enqueued_at": self.enqueued_at,
            "dead_at": self.dead_at,
            "delays": list(self.delays),
            "data": self.data,
        }
