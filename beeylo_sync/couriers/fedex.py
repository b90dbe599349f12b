"""FedEx Track API (OAuth2 client credentials in the form body)."""

from __future__ import annotations

from typing import Any

from beeylo_sync.couriers.base import OAuthCourierAdapter, dig
from beeylo_sync.couriers.models import ProofOfDelivery, TrackingResponse, TrackingStatus, parse_timestamp
from beeylo_sync.errors import NotFoundError

S = TrackingStatus


class FedExAdapter(OAuthCourierAdapter):
    name = "fedex"
    status_map = {
        "OC": S.PENDING,  # label created
        "PU": S.IN_TRANSIT,
        "IT": S.IN_TRANSIT,
        "AR": S.IN_TRANSIT,
        "OD": S.OUT_FOR_DELIVERY,
        "DL": S.DELIVERED,
        "DE": S.FAILURE,
        "HL": S.AVAILABLE_FOR_PICKUP,
        "RS": S.RETURN_TO_SENDER,
    }

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.fedex_client_id and self.settings.fedex_client_secret)

    @property
    def base_url(self) -> str:
        return self.settings.fedex_api_url

    def _token_request(self) -> dict[str, Any]:
        return {
            "data": {
                "grant_type": "client_credentials",
                "client_id": self.settings.fedex_client_id,
                "client_secret": self.settings.fedex_client_secret,
            }
        }

    async def _fetch(self, tracking_number: str) -> Any:
        body = {
            "includeDetailedScans": True,
            "trackingInfo": [{"trackingNumberInfo": {"trackingNumber": tracking_number}}],
        }
        return await self._authorized("POST", f"{self.base_url}/track/v1/trackingnumbers", json=body)

    def _parse(self, tracking_number: str, data: Any) -> TrackingResponse:
        result = dig(data, "output", "completeTrackResults", 0, "trackResults", 0)
        if not result:
            raise NotFoundError(f"fedex: no result for {tracking_number}", resource="tracking", key=tracking_number)

        events = [
            self._event(e.get("date"), e.get("eventType"), e.get("eventDescription"), dig(e, "scanLocation", "city"))
            for e in result.get("scanEvents") or []
        ]
        received_by = dig(result, "deliveryDetails", "receivedByName")
        pod = None
        if received_by:
            pod = ProofOfDelivery(
                receiver_name=received_by,
                signature_url=dig(result, "deliveryDetails", "signatureImageUrl"),
                timestamp=parse_timestamp(result.get("actualDeliveryTimestamp")),
            )
        return self._response(
            tracking_number,
            status_code=dig(result, "latestStatusDetail", "code"),
            status_description=dig(result, "latestStatusDetail", "description"),
            events=events,
            current_location=dig(result, "latestStatusDetail", "scanLocation", "city"),
            estimated_delivery=dig(result, "estimatedDeliveryTimeWindow", "window", "begins"),
            actual_delivery=result.get("actualDeliveryTimestamp"),
            proof_of_delivery=pod,
        )
