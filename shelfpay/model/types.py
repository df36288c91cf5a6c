from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Union

# Collections (documents are dicts with the storefront's camelCase fields)
ORDERS = "orders"
BOOKS = "books"
CUSTOMERS = "customers"

PAYMENT_PAID = "Paid"

SHIP_PROCESSING = "Processing"
SHIP_SHIPPED = "Shipped"
SHIP_DELIVERED = "Delivered"
SHIP_CANCELLED = "Cancelled"

# operator-driven shipping lifecycle; Delivered and Cancelled are terminal
SHIPPING_TRANSITIONS: Dict[str, frozenset] = {
    SHIP_PROCESSING: frozenset({SHIP_SHIPPED, SHIP_DELIVERED, SHIP_CANCELLED}),
    SHIP_SHIPPED: frozenset({SHIP_DELIVERED, SHIP_CANCELLED}),
    SHIP_DELIVERED: frozenset(),
    SHIP_CANCELLED: frozenset(),
}


# ----------------------------
# Delivery mode (tagged variant)
# ----------------------------
@dataclass(frozen=True)
class Digital:
    kind: ClassVar[str] = "digital"

    @property
    def address(self) -> str:
        return ""

    def pin_quantity(self, requested: int) -> int:
        # single-license goods: never more than one per order
        return 1

    @property
    def initial_shipping_status(self) -> str:
        return SHIP_DELIVERED


@dataclass(frozen=True)
class Physical:
    address: str
    kind: ClassVar[str] = "physical"

    def __post_init__(self):
        if not self.address or not self.address.strip():
            raise ValueError("physical delivery requires a shipping address")

    def pin_quantity(self, requested: int) -> int:
        return requested

    @property
    def initial_shipping_status(self) -> str:
        return SHIP_PROCESSING


DeliveryMode = Union[Digital, Physical]


def delivery_mode(purchase_format: Optional[str],
                  address: Optional[str]) -> DeliveryMode:
    """Map the checkout's string ``purchaseFormat`` onto the variant.

    Anything other than ``"digital"`` is a physical purchase, as at checkout.
    """
    if (purchase_format or "").strip().lower() == Digital.kind:
        return Digital()
    return Physical((address or "").strip())


def mode_from_doc(doc: Dict[str, Any]) -> DeliveryMode:
    if doc.get("deliveryMode") == Digital.kind:
        return Digital()
    return Physical(doc.get("address") or "(unknown)")


# ----------------------------
# Charge / Order
# ----------------------------
@dataclass(frozen=True)
class Charge:
    """A provider-confirmed payment, normalized for reconciliation."""
    reference: str
    amount: int  # minor units (kobo/cents)
    currency: str
    email: str
    name: str
    phone: str
    book_id: str
    quantity: int
    mode: DeliveryMode


@dataclass
class OrderItem:
    book_id: str
    quantity: int
    title: Optional[str] = None

    def to_doc(self) -> Dict[str, Any]:
        return {
            "bookId": self.book_id,
            "quantity": self.quantity,
            "bookTitle": self.title,
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "OrderItem":
        return cls(
            book_id=doc["bookId"],
            quantity=int(doc.get("quantity") or 1),
            title=doc.get("bookTitle"),
        )


@dataclass
class Order:
    id: str
    customer_name: str
    customer_email: str
    customer_phone: str
    items: List[OrderItem]
    amount: int
    currency: str
    payment_reference: str
    mode: DeliveryMode
    date: str
    created_at: float
    payment_status: str = PAYMENT_PAID
    shipping_status: str = SHIP_PROCESSING
    updated_at: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def digital(self) -> bool:
        return isinstance(self.mode, Digital)

    @property
    def address(self) -> str:
        return self.mode.address

    def to_doc(self) -> Dict[str, Any]:
        doc = dict(self.extra)
        doc.update({
            "id": self.id,
            "customerName": self.customer_name,
            "customerEmail": self.customer_email,
            "customerPhone": self.customer_phone,
            "items": [i.to_doc() for i in self.items],
            "amount": self.amount,
            "currency": self.currency,
            "paymentStatus": self.payment_status,
            "shippingStatus": self.shipping_status,
            "paymentReference": self.payment_reference,
            "deliveryMode": self.mode.kind,
            "address": self.mode.address,
            "date": self.date,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        })
        return doc

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Order":
        known = {
            "id", "customerName", "customerEmail", "customerPhone", "items",
            "amount", "currency", "paymentStatus", "shippingStatus",
            "paymentReference", "deliveryMode", "address", "date",
            "createdAt", "updatedAt",
        }
        return cls(
            id=doc["id"],
            customer_name=doc.get("customerName") or "",
            customer_email=doc.get("customerEmail") or "",
            customer_phone=doc.get("customerPhone") or "",
            items=[OrderItem.from_doc(i) for i in doc.get("items") or []],
            amount=int(doc.get("amount") or 0),
            currency=doc.get("currency") or "NGN",
            payment_reference=doc.get("paymentReference") or doc["id"],
            mode=mode_from_doc(doc),
            date=doc.get("date") or "",
            created_at=float(doc.get("createdAt") or 0.0),
            payment_status=doc.get("paymentStatus") or PAYMENT_PAID,
            shipping_status=doc.get("shippingStatus") or SHIP_PROCESSING,
            updated_at=doc.get("updatedAt"),
            extra={k: v for k, v in doc.items() if k not in known},
        )


def order_key(reference: str) -> str:
    """Deterministic order document key: the payment reference itself."""
    return (reference or "").strip()
