"""Delivery channels for stored notifications.

Security: recipient addresses and relay URLs are never logged in full.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import httpx

from beeylo_sync.store.base import StateStore
from beeylo_sync.store.models import Notification

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    """Result of sending a notification."""

    success: bool
    channel_id: str
    error: str = ""
    response_id: str = ""


@dataclass
class Recipient:
    user_id: str | None = None
    email: str | None = None


@runtime_checkable
class Channel(Protocol):
    @property
    def channel_id(self) -> str: ...

    @property
    def is_configured(self) -> bool: ...

    async def send(self, notification: Notification, recipient: Recipient) -> SendResult: ...


class InboxChannel:
    """Writes the notification into the app user's Orders inbox."""

    def __init__(self, store: StateStore, channel_id: str = "app-inbox"):
        self._store = store
        self._channel_id = channel_id

    @property
    def channel_id(self) -> str:
        return self._channel_id

    @property
    def is_configured(self) -> bool:
        return True

    async def send(self, notification: Notification, recipient: Recipient) -> SendResult:
        if not recipient.user_id:
            return SendResult(success=False, channel_id=self._channel_id, error="no linked app user")
        ticket_id = await self._store.create_inbox_ticket(recipient.user_id, notification)
        return SendResult(success=True, channel_id=self._channel_id, response_id=ticket_id)


class EmailRelayChannel:
    """Hands email-equivalent notifications to an HTTP mail relay."""

    def __init__(self, relay_url: str, client: httpx.AsyncClient | None = None, channel_id: str = "email-relay"):
        self._relay_url = relay_url
        self._client = client or httpx.AsyncClient(timeout=10.0)
        self._channel_id = channel_id

    @property
    def channel_id(self) -> str:
        return self._channel_id

    @property
    def is_configured(self) -> bool:
        return bool(self._relay_url)

    async def send(self, notification: Notification, recipient: Recipient) -> SendResult:
        if not recipient.email:
            return SendResult(success=False, channel_id=self._channel_id, error="no recipient email")
        body = {
            "to": recipient.email,
            "subject": notification.title,
            "text": notification.message,
            "template_id": notification.template_id,
            "data": notification.payload,
        }
        try:
            response = await self._client.post(self._relay_url, json=body)
        except httpx.HTTPError as e:
            return SendResult(success=False, channel_id=self._channel_id, error=f"relay unreachable: {type(e).__name__}")
        if response.status_code >= 400:
            return SendResult(success=False, channel_id=self._channel_id, error=f"relay HTTP {response.status_code}")
        return SendResult(success=True, channel_id=self._channel_id, response_id=response.headers.get("X-Message-Id", ""))


class LogChannel:
    """Fallback when no relay is configured: records the send in the log."""

    def __init__(self, channel_id: str = "log"):
        self._channel_id = channel_id

    @property
    def channel_id(self) -> str:
        return self._channel_id

    @property
    def is_configured(self) -> bool:
        return True

    async def send(self, notification: Notification, recipient: Recipient) -> SendResult:
        logger.info(
            "NOTIFICATION type=%s channel=%s order=%s title=%r",
            notification.type.value,
            notification.channel.value,
            notification.order_ref,
            notification.title,
        )
        return SendResult(success=True, channel_id=self._channel_id)
