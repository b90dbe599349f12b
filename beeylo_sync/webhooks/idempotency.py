"""Webhook replay dedup keyed on X-Shopify-Webhook-Id.

Contract:
- Webhook ids are recorded with SET NX and a 24h TTL
- Duplicates are answered 200 and not queued (Shopify retries on errors)
- Key pattern: webhook:seen:shopify:{webhook_id}
- If Redis is down, falls back to allowing (fail-open for availability)
- Without Redis a process-local TTL map is used
"""

from __future__ import annotations

import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)

_DEDUP_TTL_SECONDS = 86400
_KEY_PREFIX = "webhook:seen:shopify"


class WebhookDeduplicator:
    def __init__(
        self,
        redis=None,
        *,
        ttl_seconds: int = _DEDUP_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._redis = redis
        self._ttl = ttl_seconds
        self._clock = clock
        self._seen: dict[str, float] = {}

    @staticmethod
    def _key(webhook_id: str) -> str:
        return f"{_KEY_PREFIX}:{webhook_id}"

    async def is_duplicate(self, webhook_id: str | None) -> bool:
        """Atomically check-and-mark a webhook id. True if already seen."""
        if not webhook_id:
            return False

        if self._redis is None:
            return self._check_local(webhook_id)

        try:
            was_set = await self._redis.set(self._key(webhook_id), "1", nx=True, ex=self._ttl)
        except Exception:
            logger.warning("Redis unavailable for webhook dedup, allowing %s", webhook_id, exc_info=True)
            return False
        if not was_set:
            logger.info("Duplicate webhook rejected: %s", webhook_id)
            return True
        return False

    async def forget(self, webhook_id: str | None) -> None:
        """Unmark an id so a redelivery is accepted (used when queuing failed)."""
        if not webhook_id:
            return
        if self._redis is None:
            self._seen.pop(webhook_id, None)
            return
        try:
            await self._redis.delete(self._key(webhook_id))
        except Exception:
            logger.warning("Failed to clear webhook dedup key %s", webhook_id, exc_info=True)

    def _check_local(self, webhook_id: str) -> bool:
        now = self._clock()
        expired = [k for k, expires in self._seen.items() if expires <= now]
        for k in expired:
            del self._seen[k]
        if webhook_id in self._seen:
            logger.info("Duplicate webhook rejected: %s", webhook_id)
            return True
        self._seen[webhook_id] = now + self._ttl
        return False
