"""Webhook signature verification: HMAC-SHA256 over the raw request body.

Security contract:
- The digest is computed over the exact raw bytes, before any JSON parsing
- The signature header is base64-decoded and compared in constant time
- Fails closed: missing header, missing body, empty secret or an
  undecodable signature all return False
- No side effects, never raises
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Shopify-Hmac-Sha256"
SHOP_DOMAIN_HEADER = "X-Shopify-Shop-Domain"
WEBHOOK_ID_HEADER = "X-Shopify-Webhook-Id"
TOPIC_HEADER = "X-Shopify-Topic"


def _as_bytes(secret: bytes | str | None) -> bytes:
    if secret is None:
        return b""
    if isinstance(secret, str):
        return secret.encode("utf-8")
    return secret


def verify(raw_body: bytes | None, signature_header: str | None, secret: bytes | str | None) -> bool:
    """Verify a Shopify webhook signature.

    Args:
        raw_body: Request body exactly as received.
        signature_header: Value of the X-Shopify-Hmac-Sha256 header.
        secret: Shared secret the webhook was signed with.

    Returns:
        True only if the signature matches the body.
    """
    key = _as_bytes(secret)
    if not key:
        logger.warning("Webhook secret not configured, rejecting")
        return False
    if raw_body is None or not signature_header:
        return False

    try:
        provided = base64.b64decode(signature_header.strip(), validate=True)
    except (binascii.Error, ValueError):
        return False

    expected = hmac.new(key, raw_body, hashlib.sha256).digest()
    return hmac.compare_digest(expected, provided)


def sign(raw_body: bytes, secret: bytes | str) -> str:
    """Produce the header value Shopify would send for ``raw_body``."""
    digest = hmac.new(_as_bytes(secret), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")
