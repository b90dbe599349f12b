"""PostNL shipment status API (API key header)."""

from __future__ import annotations

from typing import Any

from beeylo_sync.couriers.base import CourierAdapter, dig
from beeylo_sync.couriers.models import ProofOfDelivery, TrackingResponse, TrackingStatus, parse_timestamp

S = TrackingStatus


class PostNLAdapter(CourierAdapter):
    name = "postnl"
    status_map = {
        "1": S.PENDING,  # shipment pre-announced
        "2": S.IN_TRANSIT,
        "3": S.IN_TRANSIT,
        "4": S.IN_TRANSIT,
        "5": S.OUT_FOR_DELIVERY,
        "6": S.DELIVERED,
        "7": S.FAILURE,
        "8": S.AVAILABLE_FOR_PICKUP,
        "9": S.RETURN_TO_SENDER,
    }

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.postnl_api_key)

    async def _fetch(self, tracking_number: str) -> Any:
        return await self._request(
            "GET",
            f"{self.settings.postnl_api_url}/{tracking_number}",
            headers={"apikey": self.settings.postnl_api_key, "Accept": "application/json"},
        )

    def _parse(self, tracking_number: str, data: Any) -> TrackingResponse:
        events = [
            self._event(e.get("TimeStamp"), e.get("StatusCode"), e.get("StatusDescription"), e.get("LocationCode"))
            for e in data.get("statusHistory") or []
        ]
        signature = data.get("signature")
        pod = None
        if signature:
            pod = ProofOfDelivery(
                signature_url=signature.get("imageUrl"),
                receiver_name=signature.get("receiverName"),
                timestamp=parse_timestamp(data.get("actualDeliveryDate")),
            )
        return self._response(
            tracking_number,
            status_code=dig(data, "currentStatus", "StatusCode"),
            status_description=dig(data, "currentStatus", "StatusDescription"),
            events=events,
            estimated_delivery=data.get("expectedDeliveryDate"),
            actual_delivery=data.get("actualDeliveryDate"),
            proof_of_delivery=pod,
        )
