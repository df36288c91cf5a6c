"""Document store contract, run against both the SQL and Redis backends."""

from __future__ import annotations

import asyncio
import warnings

import fakeredis
import pytest

from conftest import seed_book
from shelfpay.errors import ProcessingFailed
from shelfpay.model.store import (
    DocumentStore, DuplicateKey, Increment, RedisDocumentStore,
    TransactionConflict, new_store,
)
from shelfpay.model.store.base import apply_delta
from shelfpay.model.types import BOOKS, CUSTOMERS, ORDERS


class TestTransactions:

    @pytest.mark.asyncio
    async def test_increment_and_assign(self, store):
        await seed_book(store, stock=5)

        async def txn(tx):
            book = await tx.get(BOOKS, "book-1")
            tx.update(BOOKS, "book-1",
                      {"stock": Increment(-2), "title": "Renamed"})
            return book["stock"]

        before = await store.run_transaction(txn)
        after = await store.get(BOOKS, "book-1")
        assert before == 5
        assert after["stock"] == 3
        assert after["title"] == "Renamed"

    @pytest.mark.asyncio
    async def test_writes_discarded_when_body_raises(self, store):
        await seed_book(store, stock=5)

        async def txn(tx):
            tx.update(BOOKS, "book-1", {"stock": Increment(-1)})
            tx.set(ORDERS, "o-1", {"id": "o-1"})
            raise LookupError("abort")

        with pytest.raises(LookupError):
            await store.run_transaction(txn)
        assert (await store.get(BOOKS, "book-1"))["stock"] == 5
        assert await store.get(ORDERS, "o-1") is None

    @pytest.mark.asyncio
    async def test_update_missing_document_fails(self, store):
        async def txn(tx):
            tx.update(BOOKS, "ghost", {"stock": Increment(1)})

        with pytest.raises(ProcessingFailed):
            await store.run_transaction(txn)

    @pytest.mark.asyncio
    async def test_concurrent_increments_all_apply(self, store):
        await seed_book(store, stock=0)

        async def bump(tx):
            await tx.get(BOOKS, "book-1")
            tx.update(BOOKS, "book-1", {"stock": Increment(1)})

        await asyncio.gather(*(store.run_transaction(bump) for _ in range(4)))
        assert (await store.get(BOOKS, "book-1"))["stock"] == 4


class TestRetries:

    @pytest.mark.asyncio
    async def test_conflict_is_retried(self):
        class Flaky(DocumentStore):
            max_attempts = 3

            def __init__(self):
                self.calls = 0

            async def _attempt(self, fn):
                self.calls += 1
                if self.calls < 3:
                    raise TransactionConflict("lost race")
                return await fn(None)

            get = put = add = find = recent = None

        async def body(tx):
            return "done"

        s = Flaky()
        assert await s.run_transaction(body) == "done"
        assert s.calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        class AlwaysConflicts(DocumentStore):
            async def _attempt(self, fn):
                raise TransactionConflict("lost race")

            get = put = add = find = recent = None

        with pytest.raises(TransactionConflict) as exc:
            await AlwaysConflicts().run_transaction(lambda tx: None)
        assert exc.value.status_code == 500
        assert "gave up" in exc.value.detail


class TestQueries:

    @pytest.mark.asyncio
    async def test_find_by_email(self, store):
        for i, email in enumerate(["a@x.com", "b@x.com", "a@x.com"]):
            await store.put(CUSTOMERS, f"c{i}", {
                "id": f"c{i}", "name": "N", "email": email, "phone": "",
                "totalOrders": 1, "totalSpent": 0, "address": "",
                "joinDate": "2025-01-01", "isAdmin": False,
                "createdAt": float(i),
            })
        found = await store.find(CUSTOMERS, "email", "a@x.com", limit=5)
        assert [c["id"] for c in found] == ["c0", "c2"]
        assert await store.find(CUSTOMERS, "email", "nobody@x.com") == []

    @pytest.mark.asyncio
    async def test_recent_newest_first(self, store):
        for i in range(3):
            await store.put(BOOKS, f"b{i}", {
                "id": f"b{i}", "title": "T", "price": 1, "stock": 1,
                "createdAt": float(10 + i),
            })
        ids = [b["id"] for b in await store.recent(BOOKS, limit=2)]
        assert ids == ["b2", "b1"]

    @pytest.mark.asyncio
    async def test_add_generates_key(self, store):
        key = await store.add(CUSTOMERS, {
            "name": "N", "email": "z@x.com", "phone": "", "totalOrders": 1,
            "totalSpent": 0, "address": "", "joinDate": "2025-01-01",
            "isAdmin": False, "createdAt": 1.0,
        })
        doc = await store.get(CUSTOMERS, key)
        assert doc["email"] == "z@x.com"
        assert doc["id"] == key

    @pytest.mark.asyncio
    async def test_digital_file_round_trips(self, store):
        await seed_book(store, "ebook-1", file_url="https://f.example.com/a")
        doc = await store.get(BOOKS, "ebook-1")
        assert doc["digitalFile"]["url"] == "https://f.example.com/a"


class TestDuplicateKeys:

    @pytest.mark.asyncio
    async def test_set_on_existing_key_is_duplicate(self, store):
        async def create(tx):
            tx.set(ORDERS, "dup-1", {
                "id": "dup-1", "customerName": "A", "customerEmail": "a@x",
                "customerPhone": "", "items": [], "amount": 1,
                "currency": "NGN", "paymentStatus": "Paid",
                "shippingStatus": "Processing", "paymentReference": "dup-1",
                "deliveryMode": "physical", "address": "x",
                "date": "2025-01-01", "createdAt": 1.0,
            })

        await store.run_transaction(create)
        with pytest.raises(TransactionConflict) as exc:
            await store.run_transaction(create)
        assert isinstance(exc.value.__cause__, DuplicateKey)
        assert (await store.get(ORDERS, "dup-1"))["customerName"] == "A"


class TestSqlSpecifics:

    @pytest.mark.asyncio
    async def test_negative_stock_rejected_by_constraint(self, sql_store):
        await seed_book(sql_store, stock=1)

        async def oversell(tx):
            tx.update(BOOKS, "book-1", {"stock": Increment(-2)})

        with pytest.raises(TransactionConflict):
            await sql_store.run_transaction(oversell)
        assert (await sql_store.get(BOOKS, "book-1"))["stock"] == 1


class TestRedisSpecifics:

    @pytest.mark.asyncio
    async def test_close_is_not_deprecated(self):
        store = RedisDocumentStore(
            fakeredis.aioredis.FakeRedis(decode_responses=True)
        )
        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            await store.close()


class TestFactory:

    def test_sql_requires_url(self):
        with pytest.raises(RuntimeError):
            new_store(backend="sql")

    def test_redis_requires_client(self):
        with pytest.raises(RuntimeError):
            new_store(backend="redis")

    def test_unknown_backend(self):
        with pytest.raises(RuntimeError):
            new_store(backend="mongo", database_url="x")


def test_apply_delta():
    doc = {"totalOrders": 1, "name": "A"}
    out = apply_delta(doc, {"totalOrders": Increment(2), "name": "B",
                            "totalSpent": Increment(5)})
    assert out == {"totalOrders": 3, "name": "B", "totalSpent": 5}
    assert doc["totalOrders"] == 1
