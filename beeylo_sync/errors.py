"""Error taxonomy shared by the ingestion, sync and tracking paths.

Routing contract (applied by the worker pool):
- VerificationError, NotFoundError: terminal for the job, never retried
- ValidationError: only raised when a primary key is missing; dead-lettered
- AuthError: dead-lettered (adapters already retried once with a fresh token)
- TransientUpstreamError: retried with the queue's backoff
- RateLimitedError: absorbed by the rate limiter, escalates to transient
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all service errors."""


class VerificationError(SyncError):
    """Inbound webhook signature did not verify."""


class NotFoundError(SyncError):
    """Tenant, order, fulfillment or tracking number does not exist."""

    def __init__(self, message: str, *, resource: str = "", key: str = ""):
        super().__init__(message)
        self.resource = resource
        self.key = key


class ValidationError(SyncError):
    """Payload is missing a field the sync cannot default."""

    def __init__(self, message: str, *, field: str = ""):
        super().__init__(message)
        self.field = field


class UpstreamError(SyncError):
    """Error returned by an external HTTP service."""

    def __init__(self, message: str, *, service: str = "", status_code: int | None = None):
        super().__init__(message)
        self.service = service
        self.status_code = status_code


class TransientUpstreamError(UpstreamError):
    """5xx, timeout or connection failure. Safe to retry."""


class AuthError(UpstreamError):
    """Credentials rejected by the upstream service."""


class RateLimitedError(UpstreamError):
    """Upstream answered 429."""

    def __init__(
        self,
        message: str,
        *,
        service: str = "",
        status_code: int | None = 429,
        retry_after: float | None = None,
    ):
        super().__init__(message, service=service, status_code=status_code)
        self.retry_after = retry_after
