"""GLS MyGLS parcel status API (HTTP Basic)."""

from __future__ import annotations

from typing import Any

from beeylo_sync.couriers.base import CourierAdapter, dig
from beeylo_sync.couriers.models import ProofOfDelivery, TrackingResponse, TrackingStatus, parse_timestamp
from beeylo_sync.errors import NotFoundError

S = TrackingStatus


class GLSAdapter(CourierAdapter):
    name = "gls"
    status_map = {
        "PREADVICE": S.PENDING,
        "COLLECTED": S.IN_TRANSIT,
        "IN_TRANSIT": S.IN_TRANSIT,
        "AT_DEPOT": S.IN_TRANSIT,
        "AT_HUB": S.IN_TRANSIT,
        "OUT_FOR_DELIVERY": S.OUT_FOR_DELIVERY,
        "DELIVERED": S.DELIVERED,
        "DELIVERY_FAILED": S.FAILURE,
        "AWAITING_COLLECTION": S.AVAILABLE_FOR_PICKUP,
        "COLLECTED_BY_RECIPIENT": S.DELIVERED,
        "RETURNED": S.RETURN_TO_SENDER,
        "CANCELLED": S.CANCELLED,
        "EXCEPTION": S.FAILURE,
        "DAMAGED": S.FAILURE,
        "LOST": S.FAILURE,
    }

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.gls_api_username and self.settings.gls_api_password)

    async def _fetch(self, tracking_number: str) -> Any:
        return await self._request(
            "POST",
            f"{self.settings.gls_base_url}/ParcelService.svc/json/GetParcelStatuses",
            json={"ParcelNumber": tracking_number},
            auth=(self.settings.gls_api_username, self.settings.gls_api_password),
            headers={"Accept": "application/json"},
        )

    def _parse(self, tracking_number: str, data: Any) -> TrackingResponse:
        parcel = dig(data, "ParcelStatusList", 0)
        if not parcel:
            raise NotFoundError(f"gls: no status for parcel {tracking_number}", resource="tracking", key=tracking_number)

        events = [
            self._event(e.get("Date"), e.get("Code"), e.get("Description"), e.get("Location"))
            for e in parcel.get("Events") or []
        ]
        pod_info = parcel.get("PODInfo") or {}
        pod = None
        if pod_info.get("SignatureAvailable"):
            pod = ProofOfDelivery(
                signature_url=pod_info.get("SignatureUrl"),
                photo_url=pod_info.get("PhotoUrl"),
                receiver_name=pod_info.get("ReceiverName"),
                timestamp=parse_timestamp(pod_info.get("DeliveryDate")),
            )
        return self._response(
            parcel.get("ParcelNumber") or tracking_number,
            status_code=dig(parcel, "StatusInfo", "StatusCode"),
            status_description=dig(parcel, "StatusInfo", "StatusText"),
            events=events,
            current_location=dig(parcel, "DepotInfo", "DepotName"),
            estimated_delivery=dig(parcel, "DeliveryInfo", "EstimatedDeliveryDate"),
            actual_delivery=dig(parcel, "DeliveryInfo", "ActualDeliveryDate"),
            proof_of_delivery=pod,
        )
