from typing import Any, Dict

from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    JSON,
    CheckConstraint,
)


Base = declarative_base()


class DocMixin:
    """Maps a row to/from the storefront's camelCase document shape.

    ``__fields__``: document field -> column attribute.
    """
    __fields__: Dict[str, str] = {}

    @classmethod
    def column_for(cls, field: str):
        try:
            return getattr(cls, cls.__fields__[field])
        except KeyError:
            raise ValueError(
                f"{cls.__tablename__}: unknown field {field!r}"
            ) from None

    def to_doc(self) -> Dict[str, Any]:
        return {f: getattr(self, attr) for f, attr in self.__fields__.items()}

    @classmethod
    def from_doc(cls, key: str, doc: Dict[str, Any]):
        kw = {
            attr: doc[f] for f, attr in cls.__fields__.items()
            if f in doc and f != "id"
        }
        return cls(id=key, **kw)


# ----------------------------
# ORM models
# ----------------------------
class Order(DocMixin, Base):
    __tablename__ = "orders"
    # payment reference; primary key doubles as the idempotency key
    id = Column(String, primary_key=True)
    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False, index=True)
    customer_phone = Column(String, nullable=False, default="")
    items = Column(JSON, nullable=False)
    amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String, nullable=False, default="NGN")

    # Paid
    payment_status = Column(String, nullable=False)
    # Processing | Shipped | Delivered | Cancelled
    shipping_status = Column(String, nullable=False)
    payment_reference = Column(String, nullable=False)
    # digital | physical
    delivery_mode = Column(String, nullable=False)
    address = Column(String, nullable=False, default="")

    date = Column(String, nullable=False)  # ISO, client-visible
    created_at = Column(Float, nullable=False, index=True)
    updated_at = Column(Float, nullable=True)

    __fields__ = {
        "id": "id",
        "customerName": "customer_name",
        "customerEmail": "customer_email",
        "customerPhone": "customer_phone",
        "items": "items",
        "amount": "amount",
        "currency": "currency",
        "paymentStatus": "payment_status",
        "shippingStatus": "shipping_status",
        "paymentReference": "payment_reference",
        "deliveryMode": "delivery_mode",
        "address": "address",
        "date": "date",
        "createdAt": "created_at",
        "updatedAt": "updated_at",
    }


class Book(DocMixin, Base):
    __tablename__ = "books"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    price = Column(Integer, nullable=False, default=0)  # minor units
    stock = Column(Integer, nullable=False, default=0)
    digital_file_url = Column(String, nullable=True)
    digital_file_name = Column(String, nullable=True)
    created_at = Column(Float, nullable=False, default=0.0)

    __table_args__ = (
        CheckConstraint("stock >= 0", name="books_stock_nonnegative"),
    )

    __fields__ = {
        "id": "id",
        "title": "title",
        "price": "price",
        "stock": "stock",
        "createdAt": "created_at",
    }

    def to_doc(self) -> Dict[str, Any]:
        doc = super().to_doc()
        if self.digital_file_url:
            doc["digitalFile"] = {
                "url": self.digital_file_url,
                "name": self.digital_file_name or "",
            }
        return doc

    @classmethod
    def from_doc(cls, key: str, doc: Dict[str, Any]):
        row = super().from_doc(key, doc)
        f = doc.get("digitalFile") or {}
        row.digital_file_url = f.get("url")
        row.digital_file_name = f.get("name")
        return row


class Customer(DocMixin, Base):
    __tablename__ = "customers"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    # looked up by email; deliberately not unique (best-effort aggregate)
    email = Column(String, nullable=False, index=True)
    phone = Column(String, nullable=False, default="")
    total_orders = Column(Integer, nullable=False, default=0)
    total_spent = Column(Integer, nullable=False, default=0)
    address = Column(String, nullable=False, default="")
    join_date = Column(String, nullable=False)
    last_order_date = Column(String, nullable=True)
    is_admin = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False, default=0.0)

    __fields__ = {
        "id": "id",
        "name": "name",
        "email": "email",
        "phone": "phone",
        "totalOrders": "total_orders",
        "totalSpent": "total_spent",
        "address": "address",
        "joinDate": "join_date",
        "lastOrderDate": "last_order_date",
        "isAdmin": "is_admin",
        "createdAt": "created_at",
    }


MODELS = {
    Order.__tablename__: Order,
    Book.__tablename__: Book,
    Customer.__tablename__: Customer,
}
