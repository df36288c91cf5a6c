"""
Fulfillment for committed orders.

Runs after the order transaction has committed. Every effect here is best
effort: failures are logged and collected on the report, never raised back
into the reconciler, and never undo the order.
"""
from __future__ import annotations
import logging
import os
import secrets
import string
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .downloads import BASE_URL, download_expiration, issue_download_url
from .errors import InvalidTransition, OrderNotFound, ValidationFailed
from .helpers import clean_str, estimated_delivery, now_ts, today
from .infra.timings import timeit
from .mailer import Mailer
from .model.store import DocumentStore, Increment, Transaction
from .model.types import (
    BOOKS, CUSTOMERS, ORDERS, SHIP_PROCESSING, SHIP_SHIPPED,
    SHIPPING_TRANSITIONS, Order,
)

log = logging.getLogger(__name__)

SHIPPING_TRACKING_URL = os.environ.get(
    "SHIPPING_TRACKING_URL", "{base_url}/store/orders/{reference}"
)
SHIPPING_CARRIER = "Standard Shipping"
DELIVERY_ESTIMATE_DAYS = 5


@dataclass
class ShipmentRequest:
    order_reference: str
    name: str
    address: str
    phone: str
    items: List[Dict]
    tracking_number: str
    carrier: str
    estimated_delivery: str
    status: str = SHIP_PROCESSING


@dataclass
class FulfillmentReport:
    order_id: str
    confirmation_sent: bool = False
    download_urls: Dict[str, str] = field(default_factory=dict)
    shipment: Optional[ShipmentRequest] = None
    customer_id: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def _tracking_number() -> str:
    alphabet = string.ascii_uppercase + string.digits
    return "TRACK-" + "".join(secrets.choice(alphabet) for _ in range(7))


# ----------------------------
# Customer aggregate
# ----------------------------
async def upsert_customer(
    store: DocumentStore,
    *,
    name: str,
    email: str,
    amount: int,
    address: str = "",
    phone: str = "",
) -> Optional[str]:
    """
    Fold one order into the customer keyed by email.

    Lookup and transaction are separate steps, so two first orders from the
    same new email committing at once can each create a customer. The orders
    collection stays the source of truth.
    """
    email = clean_str(email)
    if not email:
        return None

    existing = await store.find(CUSTOMERS, "email", email, limit=1)
    key = existing[0]["id"] if existing else uuid.uuid4().hex
    ts = now_ts()

    async def txn(tx: Transaction) -> str:
        doc = await tx.get(CUSTOMERS, key)
        if doc is None:
            tx.set(CUSTOMERS, key, {
                "id": key,
                "name": clean_str(name) or "Customer",
                "email": email,
                "phone": clean_str(phone),
                "joinDate": today(ts),
                "lastOrderDate": today(ts),
                "totalOrders": 1,
                "totalSpent": int(amount),
                "address": clean_str(address),
                "isAdmin": False,
                "createdAt": ts,
            })
            return key

        delta = {
            "totalOrders": Increment(1),
            "totalSpent": Increment(int(amount)),
            "name": clean_str(name) or doc.get("name") or "Customer",
            "lastOrderDate": today(ts),
        }
        # keep what we have unless the new order brings a value
        if clean_str(address):
            delta["address"] = clean_str(address)
        if clean_str(phone):
            delta["phone"] = clean_str(phone)
        tx.update(CUSTOMERS, key, delta)
        return key

    async with timeit("fulfillment.customer"):
        return await store.run_transaction(txn)


# ----------------------------
# Operator shipping transitions
# ----------------------------
async def set_shipping_status(
    store: DocumentStore, reference: str, status: str
) -> Tuple[Order, bool]:
    """Move an order along SHIPPING_TRANSITIONS. Returns (order, changed)."""
    status = clean_str(status).capitalize()
    if status not in SHIPPING_TRANSITIONS:
        raise ValidationFailed(f"unknown shipping status {status!r}")

    async def txn(tx: Transaction) -> Tuple[Order, bool]:
        doc = await tx.get(ORDERS, reference)
        if doc is None:
            raise OrderNotFound(f"order {reference} not found")
        current = doc.get("shippingStatus") or SHIP_PROCESSING
        if status == current:
            return Order.from_doc(doc), False
        if status not in SHIPPING_TRANSITIONS.get(current, frozenset()):
            raise InvalidTransition(f"{current} -> {status}")
        ts = now_ts()
        tx.update(ORDERS, reference,
                  {"shippingStatus": status, "updatedAt": ts})
        doc.update({"shippingStatus": status, "updatedAt": ts})
        return Order.from_doc(doc), True

    return await store.run_transaction(txn)


# ----------------------------
# Dispatcher
# ----------------------------
class FulfillmentDispatcher:
    def __init__(
        self,
        store: DocumentStore,
        mailer: Mailer,
        issue_url: Callable[..., str] = issue_download_url,
    ) -> None:
        self.store = store
        self.mailer = mailer
        self.issue_url = issue_url

    async def dispatch(self, order: Order) -> FulfillmentReport:
        report = FulfillmentReport(order_id=order.id)
        prefix = f"[Order: {order.payment_reference}]"

        try:
            async with timeit("fulfillment.confirmation_email"):
                report.confirmation_sent = (
                    await self.mailer.send_order_confirmation(
                        order,
                        estimated_delivery=(
                            None if order.digital
                            else estimated_delivery(DELIVERY_ESTIMATE_DAYS)
                        ),
                    )
                )
        except Exception as e:
            log.exception("%s order confirmation email failed", prefix)
            report.errors.append(f"confirmation: {e}")

        if order.digital:
            await self._deliver_digital(order, report)
        else:
            report.shipment = self._request_shipment(order)

        try:
            report.customer_id = await upsert_customer(
                self.store,
                name=order.customer_name,
                email=order.customer_email,
                amount=order.amount,
                address=order.address,
                phone=order.customer_phone,
            )
        except Exception as e:
            log.exception("%s customer aggregate update failed", prefix)
            report.errors.append(f"customer: {e}")

        if report.errors:
            log.warning("%s fulfillment finished with %d error(s)",
                        prefix, len(report.errors))
        else:
            log.info("%s fulfillment done (%s)", prefix, order.mode.kind)
        return report

    async def _deliver_digital(self, order: Order,
                               report: FulfillmentReport) -> None:
        prefix = f"[Order: {order.payment_reference}]"
        for item in order.items:
            try:
                book = await self.store.get(BOOKS, item.book_id)
                digital_file = (book or {}).get("digitalFile") or {}
                if not digital_file.get("url"):
                    raise LookupError(
                        f"book {item.book_id} has no digital file"
                    )
                title = item.title or (book or {}).get("title") or "your book"
                url = self.issue_url(
                    file_id=digital_file["url"],
                    file_name=digital_file.get("name") or title,
                    book_id=item.book_id,
                    order_reference=order.payment_reference,
                )
                report.download_urls[item.book_id] = url
                async with timeit("fulfillment.delivery_email"):
                    await self.mailer.send_digital_delivery(
                        to=order.customer_email,
                        book_title=title,
                        download_url=url,
                        expires_at=download_expiration(),
                        order_reference=order.payment_reference,
                    )
            except Exception as e:
                log.exception("%s digital delivery of %s failed",
                              prefix, item.book_id)
                report.errors.append(f"digital {item.book_id}: {e}")

    def _request_shipment(self, order: Order) -> ShipmentRequest:
        # no carrier integration: the request is recorded in the log and on
        # the report; operators move shippingStatus forward by hand
        shipment = ShipmentRequest(
            order_reference=order.payment_reference,
            name=order.customer_name,
            address=order.address,
            phone=order.customer_phone,
            items=[i.to_doc() for i in order.items],
            tracking_number=_tracking_number(),
            carrier=SHIPPING_CARRIER,
            estimated_delivery=estimated_delivery(DELIVERY_ESTIMATE_DAYS),
        )
        log.info(
            "[Order: %s] Shipment requested: %s via %s to %r",
            order.payment_reference, shipment.tracking_number,
            shipment.carrier, shipment.address,
        )
        return shipment

    async def notify_shipped(self, order: Order) -> bool:
        if order.shipping_status != SHIP_SHIPPED or order.digital:
            return False
        tracking_url = SHIPPING_TRACKING_URL.format(
            base_url=BASE_URL.rstrip("/"), reference=order.payment_reference
        )
        try:
            return await self.mailer.send_shipping_confirmation(
                to=order.customer_email,
                order_reference=order.payment_reference,
                tracking_url=tracking_url,
            )
        except Exception:
            log.exception("[Order: %s] shipping confirmation email failed",
                          order.payment_reference)
            return False
