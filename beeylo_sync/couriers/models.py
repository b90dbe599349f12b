"""Canonical tracking model shared by all courier adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any


class TrackingStatus(str, Enum):
    PENDING = "pending"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    FAILURE = "failure"
    AVAILABLE_FOR_PICKUP = "available_for_pickup"
    RETURN_TO_SENDER = "return_to_sender"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class CourierEvent:
    timestamp: datetime
    status: TrackingStatus
    description: str = ""
    location: str | None = None
    code: str | None = None


@dataclass(frozen=True)
class ProofOfDelivery:
    signature_url: str | None = None
    photo_url: str | None = None
    receiver_name: str | None = None
    timestamp: datetime | None = None


@dataclass(frozen=True)
class TrackingResponse:
    """Normalized answer of one courier tracking lookup."""

    tracking_number: str
    courier: str
    status: TrackingStatus
    status_description: str = ""
    events: list[CourierEvent] = field(default_factory=list)
    current_location: str | None = None
    estimated_delivery: datetime | None = None
    actual_delivery: datetime | None = None
    proof_of_delivery: ProofOfDelivery | None = None

    @property
    def delivered(self) -> bool:
        return self.status is TrackingStatus.DELIVERED or self.actual_delivery is not None


_COMPACT_FORMATS = ("%Y%m%d%H%M%S", "%Y%m%dT%H%M%S", "%Y%m%d")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse courier timestamps into aware datetimes (naive means UTC).

    Accepts ISO-8601 strings (with or without ``Z``), plain dates and the
    compact ``YYYYMMDD[HHMMSS]`` form some carriers use. Anything else
    returns None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        parsed = None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            for fmt in _COMPACT_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
        if parsed is None:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
