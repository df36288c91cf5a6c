"""Paystack adapter: signatures, checkout payload validation, API calls."""

from __future__ import annotations

import hashlib
import hmac
import json
import re
from unittest.mock import patch

import httpx
import pytest

from conftest import WEBHOOK_SECRET, make_provider
from shelfpay.errors import (
    ConfigurationError, InvalidSignature, ProviderError, ValidationFailed,
)
from shelfpay.paystack import (
    Paystack, build_initialize_payload, sign, verified_success,
    verify_signature,
)


# ── Signature Verification ────────────────────────────────────────────────


class TestSignature:
    """Hex HMAC-SHA512 over the raw body."""

    BODY = b'{"event":"charge.success","data":{"reference":"ref123"}}'

    def test_matches_reference_hmac(self):
        expected = hmac.new(b"sk", self.BODY, hashlib.sha512).hexdigest()
        assert sign(self.BODY, "sk") == expected

    def test_valid(self):
        assert verify_signature(self.BODY, sign(self.BODY, "sk"), "sk") is True

    def test_uppercase_hex_accepted(self):
        assert verify_signature(self.BODY, sign(self.BODY, "sk").upper(), "sk")

    def test_one_flipped_byte(self):
        sig = sign(self.BODY, "sk")
        tampered = self.BODY.replace(b"ref123", b"ref12X")
        assert verify_signature(tampered, sig, "sk") is False

    def test_missing_signature(self):
        assert verify_signature(self.BODY, None, "sk") is False
        assert verify_signature(self.BODY, "", "sk") is False

    def test_missing_secret_fails_closed(self):
        assert verify_signature(self.BODY, sign(self.BODY, ""), "") is False

    def test_adapter_rejects_without_secret(self):
        provider = make_provider(secret="")
        with pytest.raises(InvalidSignature):
            provider.verify_webhook(self.BODY, {"x-paystack-signature": "x"})

    def test_adapter_decodes_event(self):
        provider = make_provider()
        event = provider.verify_webhook(
            self.BODY,
            {"x-paystack-signature": sign(self.BODY, WEBHOOK_SECRET)},
        )
        assert provider.event_kind(event) == "charge.success"
        assert provider.event_reference(event) == "ref123"

    @patch("shelfpay.paystack.PAYSTACK_WEBHOOK_SECRET", "")
    @patch("shelfpay.paystack.PAYSTACK_SECRET_KEY", "sk_fallback")
    def test_webhook_secret_defaults_to_secret_key(self):
        provider = Paystack(httpx.AsyncClient())
        assert provider.webhook_secret == "sk_fallback"


# ── Checkout payload ──────────────────────────────────────────────────────


def _body(**overrides):
    body = {
        "email": "ada@example.com",
        "amount": 1000000,
        "bookId": "book-1",
        "metadata": {
            "name": "Ada",
            "bookId": "book-1",
            "quantity": 2,
            "purchaseFormat": "physical",
            "address": "1 Main St",
            "phone": "+2348000000000",
        },
    }
    body.update(overrides)
    return body


class TestInitializePayload:

    def test_physical(self):
        payload = build_initialize_payload(
            _body(), base_url="https://shop.example.com/", ts=1700000000.0
        )
        assert payload["email"] == "ada@example.com"
        assert payload["amount"] == 1000000
        assert payload["metadata"]["quantity"] == 2
        assert payload["metadata"]["unitPrice"] == 5000.0
        assert payload["metadata"]["initiatedAt"].startswith("2023-11-14")
        assert payload["callback_url"] == (
            "https://shop.example.com/store/checkout/complete"
        )
        assert re.fullmatch(r"BST-1700000000000-[a-z0-9]{6}",
                            payload["reference"])
        assert "currency" not in payload

    def test_digital_forces_quantity_one(self):
        body = _body(amount=250000)
        body["metadata"] = {"name": "Ada", "bookId": "ebook-1",
                            "quantity": 3, "purchaseFormat": "digital"}
        payload = build_initialize_payload(body, base_url="https://x")
        assert payload["metadata"]["quantity"] == 1

    def test_currency_upper_cased(self):
        payload = build_initialize_payload(_body(currency="ngn"),
                                           base_url="https://x")
        assert payload["currency"] == "NGN"

    def test_references_are_unique(self):
        a = build_initialize_payload(_body(), base_url="https://x", ts=1.0)
        b = build_initialize_payload(_body(), base_url="https://x", ts=1.0)
        assert a["reference"] != b["reference"]

    @pytest.mark.parametrize("overrides, message", [
        ({"email": "not-an-email"}, "Valid email is required"),
        ({"amount": 0}, "Valid amount is required"),
        ({"amount": "100"}, "Valid amount is required"),
        ({"amount": True}, "Valid amount is required"),
        ({"bookId": ""}, "Book ID is required"),
        ({"metadata": None}, "Metadata is required"),
    ])
    def test_rejects(self, overrides, message):
        with pytest.raises(ValidationFailed) as exc:
            build_initialize_payload(_body(**overrides), base_url="https://x")
        assert exc.value.detail == message

    @pytest.mark.parametrize("quantity", [-1, 100, 1.5, "lots"])
    def test_rejects_bad_quantity(self, quantity):
        body = _body()
        body["metadata"]["quantity"] = quantity
        with pytest.raises(ValidationFailed):
            build_initialize_payload(body, base_url="https://x")

    @pytest.mark.parametrize("field", ["address", "phone"])
    def test_physical_needs_address_and_phone(self, field):
        body = _body()
        body["metadata"][field] = " "
        with pytest.raises(ValidationFailed):
            build_initialize_payload(body, base_url="https://x")

    def test_non_dict_body(self):
        with pytest.raises(ValidationFailed):
            build_initialize_payload(["nope"], base_url="https://x")


# ── API calls ─────────────────────────────────────────────────────────────


class TestApiCalls:

    @pytest.mark.asyncio
    async def test_initialize_posts_with_bearer(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={
                "status": True,
                "data": {"authorization_url": "https://checkout.paystack.com/x",
                         "reference": "BST-1"},
            })

        provider = make_provider(handler)
        data = await provider.initialize_transaction({"email": "a@x.com"})
        assert data["data"]["reference"] == "BST-1"
        assert seen[0].method == "POST"
        assert seen[0].url.path == "/transaction/initialize"
        assert seen[0].headers["authorization"] == f"Bearer {WEBHOOK_SECRET}"
        assert json.loads(seen[0].content) == {"email": "a@x.com"}

    @pytest.mark.asyncio
    async def test_initialize_refused(self):
        def handler(request):
            return httpx.Response(400, json={"status": False,
                                             "message": "Invalid key"})

        with pytest.raises(ProviderError) as exc:
            await make_provider(handler).initialize_transaction({})
        assert exc.value.detail == "Invalid key"
        assert exc.value.status_code == 502
        assert exc.value.payload["status"] is False

    @pytest.mark.asyncio
    async def test_unreachable_provider(self):
        def handler(request):
            raise httpx.ConnectError("boom", request=request)

        with pytest.raises(ProviderError):
            await make_provider(handler).verify_transaction("ref123")

    @pytest.mark.asyncio
    async def test_non_json_response(self):
        def handler(request):
            return httpx.Response(502, text="<html>bad gateway</html>")

        with pytest.raises(ProviderError):
            await make_provider(handler).verify_transaction("ref123")

    @pytest.mark.asyncio
    async def test_reference_is_path_quoted(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"status": True, "data": {}})

        await make_provider(handler).verify_transaction("a/b c")
        assert seen[0].url.raw_path == b"/transaction/verify/a%2Fb%20c"

    @pytest.mark.asyncio
    async def test_missing_secret_key(self):
        provider = Paystack(httpx.AsyncClient(), secret_key="",
                            webhook_secret="w")
        with pytest.raises(ConfigurationError):
            await provider.verify_transaction("ref123")


def test_verified_success():
    assert verified_success({"status": True, "data": {"status": "success"}})
    assert not verified_success({"status": True, "data": {"status": "failed"}})
    assert not verified_success({"status": False, "data": {"status": "success"}})
    assert not verified_success({"status": True})
