"""Shared plumbing for courier adapters.

An adapter owns one vendor's wire format. It fetches the raw payload over
httpx and maps vendor status codes to TrackingStatus. HTTP failures are
translated into the service error taxonomy:

    401       -> AuthError            (OAuth adapters refresh once first)
    404       -> NotFoundError
    429       -> RateLimitedError     (absorbed by the rate limiter)
    5xx, I/O  -> TransientUpstreamError
    other 4xx -> UpstreamError
"""

from __future__ import annotations

import logging
import math
import time
from typing import Any, ClassVar, Iterable, Mapping

import httpx

from beeylo_sync.config import Settings
from beeylo_sync.couriers.models import (
    CourierEvent,
    ProofOfDelivery,
    TrackingResponse,
    TrackingStatus,
    parse_timestamp,
)
from beeylo_sync.errors import (
    AuthError,
    NotFoundError,
    RateLimitedError,
    TransientUpstreamError,
    UpstreamError,
)

logger = logging.getLogger(__name__)


def dig(data: Any, *path: str | int) -> Any:
    """Walk nested dicts/lists, returning None at the first missing step."""
    current = data
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
        elif not isinstance(current, dict):
            return None
        current = current[step] if isinstance(step, int) else current.get(step)
        if current is None:
            return None
    return current


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class CourierAdapter:
    """Base class: subclasses set ``name``/``status_map`` and implement
    ``_fetch`` and ``_parse``."""

    name: ClassVar[str] = ""
    status_map: ClassVar[Mapping[str, TrackingStatus]] = {}

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self._client = client or httpx.AsyncClient(timeout=settings.courier_timeout_seconds)

    @property
    def is_configured(self) -> bool:
        raise NotImplementedError

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_tracking(self, tracking_number: str) -> TrackingResponse:
        """Fetch and normalize tracking for one shipment."""
        logger.debug("[%s] fetching tracking for %s", self.name, tracking_number)
        data = await self._fetch(tracking_number)
        return self._parse(tracking_number, data)

    async def _fetch(self, tracking_number: str) -> Any:
        raise NotImplementedError

    def _parse(self, tracking_number: str, data: Any) -> TrackingResponse:
        raise NotImplementedError

    # ── Status mapping ──────────────────────────────────────────────────

    def map_status(self, code: Any) -> TrackingStatus:
        if code is None:
            return TrackingStatus.UNKNOWN
        text = str(code).strip()
        for candidate in (text, text.upper(), text.lower()):
            status = self.status_map.get(candidate)
            if status is not None:
                return status
        return TrackingStatus.UNKNOWN

    # ── HTTP ────────────────────────────────────────────────────────────

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientUpstreamError(f"{self.name} timed out", service=self.name) from exc
        except httpx.TransportError as exc:
            raise TransientUpstreamError(
                f"{self.name} unreachable: {type(exc).__name__}", service=self.name
            ) from exc
        self._raise_for_status(response)
        try:
            return response.json()
        except ValueError as exc:
            raise TransientUpstreamError(
                f"{self.name} returned a non-JSON body", service=self.name, status_code=response.status_code
            ) from exc

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        if status == 401:
            raise AuthError(f"{self.name} authentication failed", service=self.name, status_code=status)
        if status == 404:
            raise NotFoundError(f"{self.name}: tracking number not found", resource="tracking")
        if status == 429:
            raise RateLimitedError(
                f"{self.name} rate limit exceeded",
                service=self.name,
                retry_after=_retry_after(response),
            )
        if status >= 500:
            raise TransientUpstreamError(f"{self.name} API error: {status}", service=self.name, status_code=status)
        raise UpstreamError(f"{self.name} API error: {status}", service=self.name, status_code=status)

    # ── Response assembly ───────────────────────────────────────────────

    def _event(self, timestamp: Any, code: Any, description: Any, location: Any) -> CourierEvent | None:
        parsed = parse_timestamp(timestamp)
        if parsed is None:
            logger.debug("[%s] dropping event with unparseable timestamp %r", self.name, timestamp)
            return None
        return CourierEvent(
            timestamp=parsed,
            status=self.map_status(code),
            description=str(description or ""),
            location=str(location) if location else None,
            code=str(code) if code is not None else None,
        )

    def _response(
        self,
        tracking_number: str,
        *,
        status_code: Any,
        status_description: Any = "",
        events: Iterable[CourierEvent | None] = (),
        current_location: str | None = None,
        estimated_delivery: Any = None,
        actual_delivery: Any = None,
        proof_of_delivery: ProofOfDelivery | None = None,
    ) -> TrackingResponse:
        ordered = sorted((e for e in events if e is not None), key=lambda e: e.timestamp)
        location = current_location or (ordered[-1].location if ordered else None)
        return TrackingResponse(
            tracking_number=tracking_number,
            courier=self.name,
            status=self.map_status(status_code),
            status_description=str(status_description or ""),
            events=ordered,
            current_location=location,
            estimated_delivery=parse_timestamp(estimated_delivery),
            actual_delivery=parse_timestamp(actual_delivery),
            proof_of_delivery=proof_of_delivery,
        )


class OAuthCourierAdapter(CourierAdapter):
    """Adapter authenticating with an OAuth2 client-credentials token.

    The token is cached until it expires or a 401 forces a refresh. A
    request rejected with 401 is retried exactly once with a fresh token.
    """

    token_path: ClassVar[str] = "/oauth/token"

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        super().__init__(settings, client)
        self._token: str | None = None
        self._token_expires_at = 0.0

    @property
    def base_url(self) -> str:
        raise NotImplementedError

    def _token_request(self) -> dict[str, Any]:
        """Keyword arguments for the token POST."""
        raise NotImplementedError

    def clear_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        try:
            data = await self._request("POST", f"{self.base_url}{self.token_path}", **self._token_request())
        except (TransientUpstreamError, RateLimitedError):
            raise
        except (NotFoundError, UpstreamError) as exc:
            raise AuthError(f"failed to authenticate with {self.name}", service=self.name) from exc
        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise AuthError(f"{self.name} token response had no access_token", service=self.name)
        invalid = f"{self.name} token response had invalid expires_in"
        try:
            expires_in = float(data.get("expires_in") or 3600)
        except (TypeError, ValueError) as exc:
            raise TransientUpstreamError(invalid, service=self.name) from exc
        if not math.isfinite(expires_in):
            raise TransientUpstreamError(invalid, service=self.name)
        # Refresh a minute early.
        self._token = token
        self._token_expires_at = time.monotonic() + max(expires_in - 60, 0)
        return token

    async def _authorized(self, method: str, url: str, *, headers: dict[str, str] | None = None, **kwargs: Any) -> Any:
        for attempt in range(2):
            token = await self._access_token()
            merged = {**(headers or {}), "Authorization": f"Bearer {token}", "Accept": "application/json"}
            try:
                return await self._request(method, url, headers=merged, **kwargs)
            except AuthError:
                self.clear_token()
                if attempt == 1:
                    raise
                logger.info("[%s] token rejected, refreshing", self.name)
        raise AssertionError("unreachable")
