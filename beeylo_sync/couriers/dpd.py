"""DPD parcel lifecycle API (bearer API key)."""

from __future__ import annotations

from typing import Any

from beeylo_sync.couriers.base import CourierAdapter, dig
from beeylo_sync.couriers.models import ProofOfDelivery, TrackingResponse, TrackingStatus, parse_timestamp

S = TrackingStatus


class DPDAdapter(CourierAdapter):
    name = "dpd"
    status_map = {
        "COLLECTED": S.IN_TRANSIT,
        "AT_DEPOT": S.IN_TRANSIT,
        "IN_TRANSIT": S.IN_TRANSIT,
        "OUT_FOR_DELIVERY": S.OUT_FOR_DELIVERY,
        "DELIVERED": S.DELIVERED,
        "DELIVERY_FAILED": S.FAILURE,
        "RETURNED": S.RETURN_TO_SENDER,
    }

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.dpd_api_key)

    async def _fetch(self, tracking_number: str) -> Any:
        return await self._request(
            "GET",
            f"{self.settings.dpd_api_url}/parcels/{tracking_number}",
            headers={"Authorization": f"Bearer {self.settings.dpd_api_key}", "Accept": "application/json"},
        )

    def _parse(self, tracking_number: str, data: Any) -> TrackingResponse:
        events = [
            self._event(e.get("date"), e.get("statusCode"), e.get("statusDescription"), dig(e, "depot", "city"))
            for e in data.get("parcelLifeCycleData") or []
        ]
        proof = data.get("proofOfDelivery")
        pod = None
        if proof:
            pod = ProofOfDelivery(
                signature_url=proof.get("signatureUrl"),
                receiver_name=proof.get("recipientName"),
                timestamp=parse_timestamp(data.get("deliveryDate")),
            )
        return self._response(
            tracking_number,
            status_code=data.get("currentStatus"),
            status_description=data.get("currentStatusDescription"),
            events=events,
            estimated_delivery=data.get("predictedDeliveryDate"),
            actual_delivery=data.get("deliveryDate"),
            proof_of_delivery=pod,
        )
