"""UPS Tracking API (OAuth2 client credentials via HTTP Basic)."""

from __future__ import annotations

from typing import Any

from beeylo_sync.couriers.base import OAuthCourierAdapter, dig
from beeylo_sync.couriers.models import ProofOfDelivery, TrackingResponse, TrackingStatus, parse_timestamp
from beeylo_sync.errors import NotFoundError

S = TrackingStatus


class UPSAdapter(OAuthCourierAdapter):
    name = "ups"
    status_map = {
        "I": S.PENDING,  # information received
        "M": S.IN_TRANSIT,
        "X": S.OUT_FOR_DELIVERY,
        "D": S.DELIVERED,
        "P": S.AVAILABLE_FOR_PICKUP,
        "RS": S.RETURN_TO_SENDER,
    }

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.ups_client_id and self.settings.ups_client_secret)

    @property
    def base_url(self) -> str:
        return self.settings.ups_api_url

    def _token_request(self) -> dict[str, Any]:
        return {
            "data": {"grant_type": "client_credentials"},
            "auth": (self.settings.ups_client_id, self.settings.ups_client_secret),
        }

    async def _fetch(self, tracking_number: str) -> Any:
        return await self._authorized("GET", f"{self.base_url}/api/track/v1/details/{tracking_number}")

    def _parse(self, tracking_number: str, data: Any) -> TrackingResponse:
        shipment = dig(data, "trackResponse", "shipment", 0)
        if not shipment:
            raise NotFoundError(f"ups: no shipment for {tracking_number}", resource="tracking", key=tracking_number)
        pkg = dig(shipment, "package", 0) or {}

        events = [
            self._event(
                f"{a.get('date', '')}T{a.get('time', '')}",
                dig(a, "status", "type"),
                dig(a, "status", "description"),
                dig(a, "location", "address", "city"),
            )
            for a in pkg.get("activity") or []
        ]
        delivery_date = dig(pkg, "deliveryDate", 0, "date")
        received_by = dig(pkg, "deliveryInformation", "receivedBy")
        pod = None
        if received_by:
            pod = ProofOfDelivery(receiver_name=received_by, timestamp=parse_timestamp(delivery_date))
        return self._response(
            tracking_number,
            status_code=dig(pkg, "currentStatus", "type"),
            status_description=dig(pkg, "currentStatus", "description"),
            events=events,
            current_location=dig(pkg, "currentStatus", "location", "address", "city"),
            estimated_delivery=delivery_date,
            actual_delivery=delivery_date if received_by else None,
            proof_of_delivery=pod,
        )
