import os
from typing import Optional
import redis.asyncio as redis

from .base import (
    DocumentStore, Transaction, Increment, TransactionConflict, DuplicateKey,
)
from ._sql import SqlDocumentStore
from ._redis import RedisDocumentStore

BACKEND = os.getenv("STORE_BACKEND", "sql").lower()  # 'sql' | 'redis'


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, database_url: Optional[str] = None,
              r: Optional[redis.Redis] = None,
              backend: Optional[str] = None) -> DocumentStore:
    backend = (backend or BACKEND).lower()
    if backend == "sql":
        if not database_url:
            raise RuntimeError("DocumentStore(sql) requires database_url")
        return SqlDocumentStore(database_url)
    if backend == "redis":
        if r is None:
            raise RuntimeError("DocumentStore(redis) requires r=redis.Redis")
        return RedisDocumentStore(r)
    raise RuntimeError(f"unknown STORE_BACKEND {backend!r}")


__all__ = [
    "DocumentStore", "Transaction", "Increment", "TransactionConflict",
    "DuplicateKey", "SqlDocumentStore", "RedisDocumentStore", "new_store",
    "BACKEND",
]
