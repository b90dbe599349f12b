"""Shared fixtures for the beeylo_sync test suite."""

from __future__ import annotations

import pytest

from beeylo_sync.config import Settings
from beeylo_sync.queue.broker import MemoryBroker
from beeylo_sync.queue.jobs import RetryPolicy
from beeylo_sync.queue.queue import JobQueue
from beeylo_sync.store.memory import MemoryStore
from beeylo_sync.store.models import Tenant, TenantSettings, UserAccount
from tests.factories import SHOP_DOMAIN, TENANT_ID, USER_EMAIL, USER_ID, WEBHOOK_SECRET, FakeClock


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        _env_file=None,
        shopify_api_secret="app-secret",
        redis_url="",
        database_url="",
        postnl_api_key="postnl-key",
        dhl_api_key="dhl-key",
        dpd_api_key="dpd-key",
        ups_client_id="ups-id",
        ups_client_secret="ups-secret",
        fedex_client_id="fedex-id",
        fedex_client_secret="fedex-secret",
        gls_api_username="gls-user",
        gls_api_password="gls-pass",
    )


@pytest.fixture()
def tenant() -> Tenant:
    return Tenant(
        id=TENANT_ID,
        shop_domain=SHOP_DOMAIN,
        access_token="shpat_test",
        webhook_secret=WEBHOOK_SECRET,
        settings=TenantSettings(),
    )


@pytest.fixture()
def store(tenant: Tenant) -> MemoryStore:
    s = MemoryStore()
    s.add_tenant(tenant)
    s.add_user(UserAccount(id=USER_ID, email=USER_EMAIL, user_type="flutter_consumer"))
    return s


@pytest.fixture()
def webhook_queue(clock: FakeClock) -> JobQueue:
    return JobQueue(
        "webhooks",
        MemoryBroker(),
        RetryPolicy(max_attempts=3, base_delay=2.0, max_delay=60.0),
        clock=clock,
    )


@pytest.fixture()
def tracking_queue(clock: FakeClock) -> JobQueue:
    return JobQueue(
        "tracking",
        MemoryBroker(),
        RetryPolicy(max_attempts=5, base_delay=5.0, max_delay=600.0, initial_delay=300.0),
        clock=clock,
    )
