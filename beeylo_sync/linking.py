"""Link storefront customers to Beeylo app users by exact email match."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from beeylo_sync.store.base import ELIGIBLE_USER_TYPES, StateStore
from beeylo_sync.store.models import CanonicalCustomer

logger = logging.getLogger(__name__)


@dataclass
class LinkReport:
    scanned: int = 0
    linked: int = 0
    not_found: int = 0
    errors: int = 0


class CustomerLinker:
    def __init__(self, store: StateStore):
        self._store = store

    async def link_customer(self, customer: CanonicalCustomer) -> str | None:
        """Return the user id the customer is linked to, linking if possible.

        An already linked customer is returned as is; the match is never
        re-evaluated.
        """
        if customer.user_ref:
            return customer.user_ref
        if not customer.email or not customer.id:
            return None

        user = await self._store.find_user_by_email(customer.email.strip(), ELIGIBLE_USER_TYPES)
        if user is None:
            return None
        if await self._store.link_customer_user(customer.id, user.id):
            logger.info("Linked customer %s to user %s", customer.id, user.id)
            return user.id
        # Lost a race with another link; keep whoever won.
        current = await self._store.get_customer(customer.id)
        return current.user_ref if current else None

    async def link_all_unlinked(self, batch: int = 100) -> LinkReport:
        """One pass over unlinked customers that have an email."""
        report = LinkReport()
        for customer in await self._store.list_unlinked_customers(batch):
            report.scanned += 1
            try:
                if await self.link_customer(customer):
                    report.linked += 1
                else:
                    report.not_found += 1
            except Exception:
                report.errors += 1
                logger.warning("Failed to link customer %s", customer.id, exc_info=True)
        logger.info(
            "Customer linking pass: scanned=%d linked=%d not_found=%d errors=%d",
            report.scanned,
            report.linked,
            report.not_found,
            report.errors,
        )
        return report
