from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from urllib.parse import quote
import hashlib
import hmac
import json
import logging
import os

import httpx

from .errors import (
    ConfigurationError, InvalidSignature, ProviderError, ValidationFailed,
)
from .helpers import (
    clean_str, is_valid_email, new_payment_reference, now_ts, to_iso,
)
from .infra.timings import timeit

log = logging.getLogger(__name__)

PAYSTACK_SECRET_KEY = os.environ.get("PAYSTACK_SECRET_KEY", "")
# Paystack signs webhooks with the account's secret key; allow an override
PAYSTACK_WEBHOOK_SECRET = (
    os.environ.get("PAYSTACK_WEBHOOK_SECRET", "") or PAYSTACK_SECRET_KEY
)
PAYSTACK_BASE_URL = os.environ.get(
    "PAYSTACK_BASE_URL", "https://api.paystack.co"
)

SIGNATURE_HEADER = "x-paystack-signature"
EVENT_CHARGE_SUCCESS = "charge.success"
MAX_QUANTITY = 99


def sign(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA512 of the raw body, as sent in X-Paystack-Signature."""
    return hmac.new(secret.encode(), payload, hashlib.sha512).hexdigest()


def verify_signature(payload: bytes, signature: Optional[str],
                     secret: str) -> bool:
    # fail closed without a secret; constant-time compare otherwise
    if not secret or not signature:
        return False
    expected = sign(payload, secret)
    return hmac.compare_digest(expected.encode(),
                               signature.strip().lower().encode())


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        """Authenticate and decode a webhook body. Raises InvalidSignature."""

    @abstractmethod
    def event_kind(self, event: dict) -> str: ...

    @abstractmethod
    def event_reference(self, event: dict) -> str: ...

    @abstractmethod
    async def initialize_transaction(self, payload: dict) -> dict: ...

    @abstractmethod
    async def verify_transaction(self, reference: str) -> dict: ...


# ----------------------------
# Paystack implementation
# ----------------------------
class Paystack(PaymentAdapter):

    def __init__(
        self,
        http: httpx.AsyncClient,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> None:
        self.http = http
        self.secret_key = (
            secret_key if secret_key is not None else PAYSTACK_SECRET_KEY
        )
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None
            else (PAYSTACK_WEBHOOK_SECRET or self.secret_key)
        )
        self.base_url = (base_url or PAYSTACK_BASE_URL).rstrip("/")

    def _headers(self) -> Dict[str, str]:
        if not self.secret_key:
            raise ConfigurationError("Paystack secret not configured")
        return {"Authorization": f"Bearer {self.secret_key}"}

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get(SIGNATURE_HEADER)
        if not verify_signature(payload, sig, self.webhook_secret):
            raise InvalidSignature()
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ValidationFailed("Invalid JSON")
        if not isinstance(event, dict):
            raise ValidationFailed("Invalid JSON")
        return event

    def event_kind(self, event: dict) -> str:
        return event.get("event", "") or ""

    def event_reference(self, event: dict) -> str:
        data = event.get("data")
        if not isinstance(data, dict):
            return ""
        return clean_str(data.get("reference"))

    async def _call(self, method: str, path: str,
                    body: Optional[dict] = None) -> dict:
        headers = self._headers()
        try:
            r = await self.http.request(
                method, f"{self.base_url}{path}", json=body, headers=headers
            )
        except httpx.HTTPError as e:
            log.error("Paystack %s %s failed: %s", method, path, e)
            raise ProviderError("payment provider unreachable") from e
        try:
            data = r.json()
        except ValueError as e:
            log.error("Paystack %s %s returned non-JSON (HTTP %d)",
                      method, path, r.status_code)
            raise ProviderError("invalid provider response") from e
        if not isinstance(data, dict):
            raise ProviderError("invalid provider response")
        return data

    async def initialize_transaction(self, payload: dict) -> dict:
        async with timeit("paystack.initialize"):
            data = await self._call("POST", "/transaction/initialize", payload)
        if not data or data.get("status") is False:
            message = data.get("message") or "Paystack initialization failed"
            log.error("Paystack init failed: %s", message)
            raise ProviderError(message, payload=data)
        log.info("Paystack payment initiated: %s",
                 (data.get("data") or {}).get("reference"))
        return data

    async def verify_transaction(self, reference: str) -> dict:
        async with timeit("paystack.verify"):
            return await self._call(
                "GET", f"/transaction/verify/{quote(reference, safe='')}"
            )


def verified_success(data: dict) -> bool:
    """True when a verify-by-reference response confirms a paid charge."""
    inner = data.get("data") if isinstance(data, dict) else None
    return bool(
        data.get("status") and isinstance(inner, dict)
        and inner.get("status") == "success"
    )


# ----------------------------
# Checkout initiation
# ----------------------------
def build_initialize_payload(body: Any, *, base_url: str,
                             ts: Optional[float] = None) -> dict:
    """
    Validate a storefront checkout request and shape the provider payload.

    The client sends ``amount`` in minor units, already multiplied by the
    quantity. Digital purchases are pinned to quantity 1; physical purchases
    need an address and phone number.
    """
    if not isinstance(body, dict):
        raise ValidationFailed("Invalid request body")

    email = body.get("email")
    if not isinstance(email, str) or not is_valid_email(email):
        raise ValidationFailed("Valid email is required")

    amount = body.get("amount")
    if (isinstance(amount, bool) or not isinstance(amount, (int, float))
            or amount <= 0):
        raise ValidationFailed("Valid amount is required")

    if not isinstance(body.get("bookId"), str) or not body["bookId"]:
        raise ValidationFailed("Book ID is required")

    metadata = body.get("metadata")
    if not isinstance(metadata, dict):
        raise ValidationFailed("Metadata is required")
    if not isinstance(metadata.get("name"), str) or not metadata["name"]:
        raise ValidationFailed("Customer name is required")
    if not isinstance(metadata.get("bookId"), str) or not metadata["bookId"]:
        raise ValidationFailed("Book ID in metadata is required")

    raw_qty = metadata.get("quantity") or 1
    try:
        qty = float(raw_qty)
    except (TypeError, ValueError):
        qty = 0.0
    if not qty.is_integer() or not 1 <= qty <= MAX_QUANTITY:
        raise ValidationFailed(
            f"Quantity must be an integer between 1 and {MAX_QUANTITY}"
        )

    digital = metadata.get("purchaseFormat") == "digital"
    if not digital:
        if not clean_str(metadata.get("address")):
            raise ValidationFailed(
                "Shipping address is required for physical purchases"
            )
        if not clean_str(metadata.get("phone")):
            raise ValidationFailed(
                "Phone number is required for physical purchases"
            )

    quantity = 1 if digital else int(qty)
    ts = now_ts() if ts is None else ts
    payload = {
        "email": email.strip(),
        "amount": int(round(amount)),
        "metadata": {
            **metadata,
            "quantity": quantity,
            "unitPrice": amount / quantity / 100,
            "initiatedAt": to_iso(ts),
        },
        "callback_url": f"{base_url.rstrip('/')}/store/checkout/complete",
        "reference": new_payment_reference(ts),
    }
    if isinstance(body.get("currency"), str) and body["currency"]:
        payload["currency"] = body["currency"].upper()
    return payload
