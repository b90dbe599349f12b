"""Service configuration loaded from the environment.

All numeric thresholds for queues, workers and rate limits live here as
defaults so they can be tuned per deployment without code changes.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings

# ── Courier request rates (requests per second) ──────────────────────────

DEFAULT_COURIER_RATES: dict[str, float] = {
    "postnl": 10.0,
    "dhl": 5.0,
    "ups": 4.0,
    "fedex": 4.0,
    "dpd": 2.0,
    "gls": 2.0,
    "default": 2.0,
}


class Settings(BaseSettings):
    # Shopify
    shopify_api_secret: str = ""
    shopify_webhook_secret: str = ""
    shopify_api_version: str = "2024-01"

    # Infrastructure (empty = in-memory implementation)
    redis_url: str = ""
    database_url: str = ""
    queue_namespace: str = "beeylo"

    # Couriers
    postnl_api_key: str = ""
    postnl_api_url: str = "https://api.postnl.nl/shipment/v2"
    dhl_api_key: str = ""
    dhl_api_url: str = "https://api-eu.dhl.com/track/shipments"
    dpd_api_key: str = ""
    dpd_api_url: str = "https://api.dpd.com/shipping/v1"
    ups_client_id: str = ""
    ups_client_secret: str = ""
    ups_api_url: str = "https://onlinetools.ups.com"
    fedex_client_id: str = ""
    fedex_client_secret: str = ""
    fedex_api_url: str = "https://apis.fedex.com"
    gls_api_username: str = ""
    gls_api_password: str = ""
    gls_environment: str = "test"
    gls_api_url: str = "https://api.mygls.hu"
    gls_api_url_test: str = "https://api.test.mygls.hu"
    courier_timeout_seconds: float = 10.0

    # Notifications
    email_relay_url: str = ""

    # Webhook queue
    webhook_max_attempts: int = 3
    webhook_backoff_seconds: float = 2.0
    webhook_backoff_cap_seconds: float = 60.0
    webhook_concurrency: int = 10
    webhook_jobs_per_second: float = 100.0

    # Tracking queue
    tracking_max_attempts: int = 5
    tracking_backoff_seconds: float = 5.0
    tracking_backoff_cap_seconds: float = 600.0
    tracking_initial_delay_seconds: float = 300.0
    tracking_concurrency: int = 5
    tracking_jobs_per_second: float = 20.0
    tracking_recheck_after_seconds: float = 7200.0
    tracking_recheck_interval_seconds: float = 3600.0

    # Dead letters and leases
    dead_letter_retention_seconds: float = 86400.0
    job_lease_seconds: float = 300.0

    # Rate limiting
    store_limit_capacity: int = 40
    store_limit_refill_per_second: float = 40.0
    store_limit_min_interval_seconds: float = 0.5
    global_limit_per_second: float = 5.0
    courier_rates: dict[str, float] = DEFAULT_COURIER_RATES
    limiter_idle_seconds: float = 3600.0
    limiter_max_rate_limit_retries: int = 3

    # Background sweeps
    notification_sweep_interval_seconds: float = 300.0
    notification_sweep_batch: int = 100
    notification_max_attempts: int = 288
    maintenance_interval_seconds: float = 300.0

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore"}

    @property
    def gls_base_url(self) -> str:
        if self.gls_environment == "production":
            return self.gls_api_url
        return self.gls_api_url_test


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
