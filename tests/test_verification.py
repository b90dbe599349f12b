"""Tests for webhook signature verification and topic routing."""

from __future__ import annotations

import base64
import hashlib
import hmac

from hypothesis import given, settings
from hypothesis import strategies as st

from beeylo_sync.webhooks.dispatcher import (
    DEFAULT_PRIORITY,
    is_supported,
    normalize_topic,
    priority_for,
)
from beeylo_sync.webhooks.verification import sign, verify

SECRET = "shopify-test-secret"


def _sign(body: bytes, secret: str = SECRET) -> str:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


# ── Signature Verification ────────────────────────────────────────────────


class TestVerify:
    def test_valid_signature(self):
        body = b'{"id": 123, "topic": "orders/create"}'
        assert verify(body, _sign(body), SECRET) is True

    def test_sign_matches_reference_hmac(self):
        body = b'{"id": 1}'
        assert sign(body, SECRET) == _sign(body)

    def test_tampered_body(self):
        body = b'{"id": 123}'
        assert verify(b'{"id": 456}', _sign(body), SECRET) is False

    def test_wrong_secret(self):
        body = b'{"id": 123}'
        assert verify(body, _sign(body, "other"), SECRET) is False

    def test_missing_signature(self):
        assert verify(b"body", None, SECRET) is False
        assert verify(b"body", "", SECRET) is False

    def test_missing_body(self):
        assert verify(None, _sign(b""), SECRET) is False

    def test_missing_secret_rejects(self):
        """No secret configured -> always reject (fail-closed)."""
        body = b'{"id": 123}'
        assert verify(body, _sign(body, ""), "") is False
        assert verify(body, _sign(body, ""), None) is False

    def test_malformed_base64(self):
        assert verify(b"body", "not base64!!", SECRET) is False

    def test_empty_body_can_be_signed(self):
        assert verify(b"", _sign(b""), SECRET) is True

    def test_whitespace_in_body_matters(self):
        body = b'{"id": 1}'
        assert verify(b'{"id":1}', _sign(body), SECRET) is False

    def test_bytes_secret(self):
        body = b"payload"
        assert verify(body, _sign(body), SECRET.encode()) is True

    @given(body=st.binary(min_size=1, max_size=256), data=st.data())
    @settings(max_examples=100)
    def test_any_single_byte_change_fails(self, body: bytes, data):
        signature = _sign(body)
        index = data.draw(st.integers(min_value=0, max_value=len(body) - 1))
        flip = data.draw(st.integers(min_value=1, max_value=255))
        tampered = bytearray(body)
        tampered[index] ^= flip
        assert verify(bytes(tampered), signature, SECRET) is False

    @given(body=st.binary(max_size=256))
    @settings(max_examples=50)
    def test_signed_body_always_verifies(self, body: bytes):
        assert verify(body, sign(body, SECRET), SECRET) is True


# ── Topic routing ─────────────────────────────────────────────────────────


class TestTopics:
    def test_slash_form_unchanged(self):
        assert normalize_topic("orders/create") == "orders/create"

    def test_dash_form_normalized(self):
        assert normalize_topic("orders-create") == "orders/create"
        assert normalize_topic("Fulfillments-Update") == "fulfillments/update"

    def test_underscore_form_normalized(self):
        assert normalize_topic("customers_create") == "customers/create"

    def test_priorities(self):
        assert priority_for("orders/create") == 1
        assert priority_for("fulfillments/create") == 2
        assert priority_for("fulfillments/update") == 3
        assert priority_for("orders/updated") == DEFAULT_PRIORITY
        assert priority_for("customers/update") == DEFAULT_PRIORITY

    def test_new_orders_outrank_updates(self):
        assert priority_for("orders/create") < priority_for("fulfillments/create") < priority_for("orders/updated")

    def test_supported(self):
        assert is_supported("orders/paid")
        assert not is_supported("products/create")
