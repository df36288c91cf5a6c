"""Shared fixtures for the shelfpay test suite."""

from __future__ import annotations

import json
import os

# module-level config is read at import time
os.environ["STORE_BACKEND"] = "sql"
os.environ.setdefault("PAYSTACK_SECRET_KEY", "sk_test_conftest")
os.environ.setdefault("DOWNLOAD_LINK_SECRET", "test-download-secret")
os.environ.setdefault("BASE_URL", "https://shop.example.com")
os.environ.setdefault("SMTP_HOST", "")

from typing import Callable, List, Optional

import fakeredis
import httpx
import pytest
import pytest_asyncio

from shelfpay.fulfillment import FulfillmentDispatcher
from shelfpay.mailer import Mailer
from shelfpay.model.store import RedisDocumentStore, SqlDocumentStore
from shelfpay.model.types import BOOKS
from shelfpay.paystack import Paystack, sign
from shelfpay.reconciler import Reconciler

WEBHOOK_SECRET = "whsec_test_secret"


class RecordingMailer(Mailer):
    """Renders real messages but keeps them instead of talking SMTP."""

    def __init__(self, fail: bool = False, company_email: str = ""):
        super().__init__(
            host="smtp.test", port=587, user="", password="",
            from_name="Test Books", from_address="shop@example.com",
            company_email=company_email,
        )
        self.sent: List = []
        self.fail = fail

    async def send(self, msg) -> bool:
        if self.fail:
            raise ConnectionRefusedError("smtp down")
        self.sent.append(msg)
        return True

    def subjects(self) -> List[str]:
        return [m["Subject"] for m in self.sent]


def make_provider(
    handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
    secret: str = WEBHOOK_SECRET,
) -> Paystack:
    def _unexpected(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"unexpected provider call {request.url}")

    http = httpx.AsyncClient(
        transport=httpx.MockTransport(handler or _unexpected)
    )
    return Paystack(http, secret_key=secret, webhook_secret=secret,
                    base_url="https://api.paystack.test")


def charge_event(
    reference: str = "ref123",
    *,
    book_id: str = "book-1",
    quantity="1",
    purchase_format: str = "physical",
    address: Optional[str] = "1 Main St",
    email: str = "ada@example.com",
    name: str = "Ada",
    amount: int = 500000,
    event: str = "charge.success",
) -> dict:
    metadata = {
        "name": name,
        "bookId": book_id,
        "quantity": quantity,
        "purchaseFormat": purchase_format,
        "phone": "+2348000000000",
    }
    if address is not None:
        metadata["address"] = address
    return {
        "event": event,
        "data": {
            "reference": reference,
            "status": "success",
            "amount": amount,
            "currency": "NGN",
            "customer": {"email": email},
            "metadata": metadata,
        },
    }


def signed(event: dict, secret: str = WEBHOOK_SECRET):
    body = json.dumps(event).encode()
    return body, {"x-paystack-signature": sign(body, secret)}


async def seed_book(store, book_id: str = "book-1", *, stock: int = 5,
                    title: str = "The Quiet Ledger",
                    file_url: Optional[str] = None) -> None:
    doc = {"id": book_id, "title": title, "price": 500000, "stock": stock,
           "createdAt": 1.0}
    if file_url:
        doc["digitalFile"] = {"url": file_url, "name": "book.pdf"}
    await store.put(BOOKS, book_id, doc)


@pytest_asyncio.fixture()
async def sql_store(tmp_path):
    store = SqlDocumentStore(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await store.init()
    yield store
    await store.close()


@pytest_asyncio.fixture()
async def redis_store():
    store = RedisDocumentStore(fakeredis.aioredis.FakeRedis(decode_responses=True))
    yield store
    await store.close()


@pytest_asyncio.fixture(params=["sql", "redis"])
async def store(request, tmp_path):
    if request.param == "sql":
        s = SqlDocumentStore(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
        await s.init()
    else:
        s = RedisDocumentStore(
            fakeredis.aioredis.FakeRedis(decode_responses=True)
        )
    yield s
    await s.close()


@pytest.fixture()
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture()
def reconciler(store, mailer) -> Reconciler:
    return Reconciler(store, make_provider(),
                      FulfillmentDispatcher(store, mailer))
