import asyncio
import json
import os
import sys

import redis.asyncio as redis

from shelfpay.helpers import now_ts
from shelfpay.logging_config import get_logger, setup_logging
from shelfpay.model.store import BACKEND, DocumentStore, new_store
from shelfpay.model.types import BOOKS

log = get_logger("seed_catalog")

# Demo catalog; prices in minor units
BOOKS_SEED = [
    {
        "id": "book-1",
        "title": "The Quiet Ledger",
        "price": 500000,
        "stock": 5,
    },
    {
        "id": "book-2",
        "title": "Harbour Lights",
        "price": 350000,
        "stock": 20,
    },
    {
        "id": "ebook-1",
        "title": "The Quiet Ledger (eBook)",
        "price": 250000,
        "stock": 0,
        "digitalFile": {
            "url": "https://files.example.com/books/the-quiet-ledger.pdf",
            "name": "the-quiet-ledger.pdf",
        },
    },
]


async def seed_books(store: DocumentStore, books) -> int:
    ts = now_ts()
    for book in books:
        doc = dict(book)
        doc.setdefault("createdAt", ts)
        await store.put(BOOKS, doc["id"], doc)
        log.info("seeded %s (%s), stock %s", doc["id"], doc["title"],
                 doc.get("stock", 0))
    return len(books)


async def main(path: str | None = None) -> None:
    setup_logging()
    books = BOOKS_SEED
    if path:
        with open(path) as f:
            books = json.load(f)

    r = None
    if BACKEND == "redis":
        r = redis.from_url(
            os.getenv("REDIS_URL", "redis://127.0.0.1:6379"),
            decode_responses=True,
        )
    store = new_store(
        database_url=os.environ.get(
            "DATABASE_URL", "sqlite+aiosqlite:///./shelfpay.db"
        ),
        r=r,
    )
    try:
        await store.init()
        n = await seed_books(store, books)
        log.info("catalog seeded: %d book(s) into %s store", n, BACKEND)
    finally:
        await store.close()


if __name__ == '__main__':
    # optional: path to a JSON list of book documents
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None))
