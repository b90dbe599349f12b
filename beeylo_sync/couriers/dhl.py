"""DHL Shipment Tracking - Unified API (API key header)."""

from __future__ import annotations

from typing import Any

from beeylo_sync.couriers.base import CourierAdapter, dig
from beeylo_sync.couriers.models import ProofOfDelivery, TrackingResponse, TrackingStatus, parse_timestamp
from beeylo_sync.errors import NotFoundError

S = TrackingStatus


class DHLAdapter(CourierAdapter):
    name = "dhl"
    status_map = {
        "pre-transit": S.PENDING,
        "transit": S.IN_TRANSIT,
        "delivered": S.DELIVERED,
        "failure": S.FAILURE,
        "unknown": S.UNKNOWN,
    }

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.dhl_api_key)

    async def _fetch(self, tracking_number: str) -> Any:
        return await self._request(
            "GET",
            self.settings.dhl_api_url,
            params={"trackingNumber": tracking_number},
            headers={"DHL-API-Key": self.settings.dhl_api_key, "Accept": "application/json"},
        )

    def _parse(self, tracking_number: str, data: Any) -> TrackingResponse:
        shipment = dig(data, "shipments", 0)
        if not shipment:
            raise NotFoundError(f"dhl: no shipment for {tracking_number}", resource="tracking", key=tracking_number)

        events = [
            self._event(
                e.get("timestamp"),
                e.get("statusCode"),
                e.get("description"),
                dig(e, "location", "address", "addressLocality"),
            )
            for e in shipment.get("events") or []
        ]
        proof = dig(shipment, "details", "proofOfDelivery")
        pod = None
        if proof:
            pod = ProofOfDelivery(
                signature_url=proof.get("signatureUrl"),
                receiver_name=dig(proof, "signed", "name"),
                timestamp=parse_timestamp(proof.get("timestamp")),
            )
        return self._response(
            tracking_number,
            status_code=dig(shipment, "status", "statusCode"),
            status_description=dig(shipment, "status", "description"),
            events=events,
            current_location=dig(shipment, "status", "location", "address", "addressLocality"),
            estimated_delivery=shipment.get("estimatedTimeOfDelivery"),
            actual_delivery=proof.get("timestamp") if proof else None,
            proof_of_delivery=pod,
        )
