"""Courier adapters and the carrier-name resolver.

Free-text carrier names from the storefront resolve to a Courier variant
once; the variant then selects the adapter from a lookup table.
"""

from __future__ import annotations

from enum import Enum

import httpx

from beeylo_sync.config import Settings
from beeylo_sync.couriers.base import CourierAdapter
from beeylo_sync.couriers.dhl import DHLAdapter
from beeylo_sync.couriers.dpd import DPDAdapter
from beeylo_sync.couriers.fedex import FedExAdapter
from beeylo_sync.couriers.gls import GLSAdapter
from beeylo_sync.couriers.postnl import PostNLAdapter
from beeylo_sync.couriers.ups import UPSAdapter


class Courier(str, Enum):
    POSTNL = "postnl"
    DHL = "dhl"
    DPD = "dpd"
    UPS = "ups"
    FEDEX = "fedex"
    GLS = "gls"


# Checked in order; first substring hit wins.
_ALIASES: list[tuple[Courier, tuple[str, ...]]] = [
    (Courier.POSTNL, ("postnl", "post nl")),
    (Courier.DHL, ("dhl",)),
    (Courier.DPD, ("dpd",)),
    (Courier.UPS, ("ups", "united parcel")),
    (Courier.FEDEX, ("fedex", "federal express")),
    (Courier.GLS, ("gls", "general logistics")),
]

ADAPTER_TYPES: dict[Courier, type[CourierAdapter]] = {
    Courier.POSTNL: PostNLAdapter,
    Courier.DHL: DHLAdapter,
    Courier.DPD: DPDAdapter,
    Courier.UPS: UPSAdapter,
    Courier.FEDEX: FedExAdapter,
    Courier.GLS: GLSAdapter,
}


def resolve_courier(name: str | None) -> Courier | None:
    """Map a free-text carrier name to a supported Courier, or None."""
    if not name:
        return None
    text = name.strip().lower()
    for courier, aliases in _ALIASES:
        if any(alias in text for alias in aliases):
            return courier
    return None


def build_adapters(settings: Settings, client: httpx.AsyncClient | None = None) -> dict[Courier, CourierAdapter]:
    """Instantiate every adapter. Unconfigured ones report ``is_configured`` False."""
    return {courier: cls(settings, client) for courier, cls in ADAPTER_TYPES.items()}


__all__ = ["ADAPTER_TYPES", "Courier", "CourierAdapter", "build_adapters", "resolve_courier"]
