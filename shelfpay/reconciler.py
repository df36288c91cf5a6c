"""
Payment reconciliation: turn a provider-confirmed charge into exactly one
order.

Two entry points share one atomic path:
- ``handle_webhook`` (provider -> us, at-least-once, possibly concurrent)
- ``handle_verification`` (storefront asks us to confirm a reference)

Both end in ``reconcile``, which in a single store transaction re-checks that
no order exists for the reference, checks and decrements stock for physical
books, and creates the order. Fulfillment runs after commit and can fail
without affecting the order.
"""
from __future__ import annotations
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import (
    BookNotFound, DuplicateOrder, InsufficientStock, ProcessingFailed,
    ShelfpayError, ValidationFailed,
)
from .fulfillment import FulfillmentDispatcher, FulfillmentReport
from .helpers import clean_str, now_ts, parse_quantity, to_iso
from .infra.timings import timeit
from .model.store import DocumentStore, Increment, Transaction
from .model.types import (
    BOOKS, ORDERS, Charge, Order, OrderItem, Physical, delivery_mode,
    order_key,
)
from .paystack import EVENT_CHARGE_SUCCESS, PaymentAdapter, verified_success

log = logging.getLogger(__name__)

MSG_CREATED = "Order created"
MSG_DUPLICATE = "Order already processed"
MSG_IGNORED = "Event ignored"


def _audit(reference: str, event: str, status: str) -> None:
    log.info("WEBHOOK_AUDIT reference=%s event=%s status=%s",
             reference or "-", event or "-", status)


def _metadata(raw: Any) -> Dict[str, Any]:
    # the provider echoes metadata back either as an object or a JSON string
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def parse_charge(data: Dict[str, Any],
                 fallback_metadata: Optional[Dict[str, Any]] = None) -> Charge:
    """
    Normalize a provider charge payload.

    Provider metadata wins over ``fallback_metadata`` (what the storefront
    sent), which only fills gaps. Raises ValidationFailed for a missing
    reference, book id, customer email or name, or a physical order without
    an address.
    """
    metadata = {**_metadata(fallback_metadata), **_metadata(data.get("metadata"))}
    customer = data.get("customer") or {}
    if not isinstance(customer, dict):
        customer = {}

    reference = order_key(clean_str(data.get("reference")))
    if not reference:
        raise ValidationFailed("missing payment reference")

    book_id = clean_str(metadata.get("bookId"))
    if not book_id:
        raise ValidationFailed("missing bookId in metadata")

    email = clean_str(customer.get("email")) or clean_str(metadata.get("email"))
    if not email:
        raise ValidationFailed("missing customer email")

    name = clean_str(metadata.get("name")) or clean_str(
        customer.get("first_name")
    )
    if not name:
        raise ValidationFailed("missing customer name")

    try:
        mode = delivery_mode(metadata.get("purchaseFormat"),
                             metadata.get("address"))
    except ValueError as e:
        raise ValidationFailed(str(e))

    try:
        amount = int(data.get("amount") or 0)
    except (TypeError, ValueError):
        raise ValidationFailed("invalid amount")

    return Charge(
        reference=reference,
        amount=amount,
        currency=clean_str(data.get("currency")).upper() or "NGN",
        email=email,
        name=name,
        phone=clean_str(metadata.get("phone")) or clean_str(
            customer.get("phone")
        ),
        book_id=book_id,
        quantity=mode.pin_quantity(parse_quantity(metadata.get("quantity"))),
        mode=mode,
    )


@dataclass
class ReconcileResult:
    order_id: str
    created: bool
    order: Optional[Order] = None
    fulfillment: Optional[FulfillmentReport] = None
    fulfillment_error: Optional[str] = None

    @property
    def fulfilled(self) -> bool:
        return (
            self.fulfillment is not None and self.fulfillment.ok
            and self.fulfillment_error is None
        )

    def ack(self) -> Dict[str, Any]:
        if not self.created:
            return {"ok": True, "message": MSG_DUPLICATE,
                    "orderId": self.order_id}
        return {"ok": True, "message": MSG_CREATED, "orderId": self.order_id,
                "fulfilled": self.fulfilled}


class Reconciler:
    def __init__(
        self,
        store: DocumentStore,
        adapter: PaymentAdapter,
        dispatcher: Optional[FulfillmentDispatcher] = None,
    ) -> None:
        self.store = store
        self.adapter = adapter
        self.dispatcher = dispatcher

    # ----------------------------
    # Webhook
    # ----------------------------
    async def handle_webhook(self, body: bytes, headers: dict) -> Dict[str, Any]:
        try:
            # authenticate before touching the store
            event = self.adapter.verify_webhook(body, headers)
        except ShelfpayError as e:
            _audit("", "", e.code.lower())
            raise

        kind = self.adapter.event_kind(event)
        reference = order_key(self.adapter.event_reference(event))
        if kind != EVENT_CHARGE_SUCCESS:
            _audit(reference, kind, "ignored")
            return {"ok": True, "message": MSG_IGNORED}

        # fast path for provider retries; the transaction re-checks
        if reference:
            async with timeit("reconcile.precheck"):
                existing = await self.store.get(ORDERS, reference)
            if existing is not None:
                _audit(reference, kind, "duplicate")
                return {"ok": True, "message": MSG_DUPLICATE,
                        "orderId": reference}

        data = event.get("data")
        try:
            charge = parse_charge(data if isinstance(data, dict) else {})
            result = await self.reconcile(charge)
        except ShelfpayError as e:
            _audit(reference, kind, e.code.lower())
            raise

        _audit(reference, kind, "created" if result.created else "duplicate")
        return result.ack()

    # ----------------------------
    # Client-initiated verification
    # ----------------------------
    async def handle_verification(
        self, reference: Any, metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        reference = order_key(clean_str(reference))
        if not reference:
            raise ValidationFailed("missing reference")

        data = await self.adapter.verify_transaction(reference)
        if not verified_success(data):
            log.warning("Paystack verify returned non-success for %s",
                        reference)
            return {"success": False, "detail": data}

        # never trust the echoed reference over the one we asked about
        charge_data = dict(data["data"])
        charge_data["reference"] = reference
        result = await self.reconcile(
            parse_charge(charge_data, fallback_metadata=metadata)
        )
        return {"success": True, "orderId": result.order_id}

    # ----------------------------
    # Atomic transition
    # ----------------------------
    async def reconcile(self, charge: Charge) -> ReconcileResult:
        key = order_key(charge.reference)
        prefix = f"[Order: {key}]"

        async def txn(tx: Transaction) -> Order:
            if await tx.get(ORDERS, key) is not None:
                raise DuplicateOrder(key)

            book = await tx.get(BOOKS, charge.book_id)
            if book is None:
                raise BookNotFound(charge.book_id)

            if isinstance(charge.mode, Physical):
                stock = int(book.get("stock") or 0)
                if stock < charge.quantity:
                    raise InsufficientStock(charge.book_id, charge.quantity,
                                            stock)
                tx.update(BOOKS, charge.book_id,
                          {"stock": Increment(-charge.quantity)})

            ts = now_ts()
            order = Order(
                id=key,
                customer_name=charge.name,
                customer_email=charge.email,
                customer_phone=charge.phone,
                items=[OrderItem(book_id=charge.book_id,
                                 quantity=charge.quantity,
                                 title=book.get("title"))],
                amount=charge.amount,
                currency=charge.currency,
                payment_reference=charge.reference,
                mode=charge.mode,
                date=to_iso(ts),
                created_at=ts,
                updated_at=ts,
                shipping_status=charge.mode.initial_shipping_status,
            )
            tx.set(ORDERS, key, order.to_doc())
            return order

        try:
            async with timeit("reconcile.transaction"):
                order = await self.store.run_transaction(txn)
        except DuplicateOrder:
            log.info("%s already processed", prefix)
            return ReconcileResult(order_id=key, created=False)
        except InsufficientStock as e:
            log.warning("%s rejected: %s", prefix, e.detail)
            raise
        except BookNotFound:
            log.error("%s rejected: book %s not found", prefix, charge.book_id)
            raise
        except ShelfpayError:
            log.exception("%s processing failed", prefix)
            raise
        except Exception as e:
            log.exception("%s processing failed", prefix)
            raise ProcessingFailed() from e

        log.info("%s created (%s, qty=%d, book=%s)", prefix, charge.mode.kind,
                 charge.quantity, charge.book_id)
        result = ReconcileResult(order_id=key, created=True, order=order)

        # committed: from here on failures are reported, never raised
        if self.dispatcher is not None:
            try:
                async with timeit("reconcile.dispatch"):
                    result.fulfillment = await self.dispatcher.dispatch(order)
            except Exception as e:
                log.exception("%s fulfillment dispatch failed", prefix)
                result.fulfillment_error = str(e)
        return result
