"""
Redis document-store backend.

Documents are JSON strings under ``{collection}:{key}``. Transactions are
optimistic: every key read (or written) is WATCHed, writes are queued in a
MULTI/EXEC pipeline, and a WatchError means another client touched one of the
keys; the store then re-runs the transaction body.
"""
from __future__ import annotations
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import redis.asyncio as redis
from redis.exceptions import WatchError

from ...errors import ProcessingFailed
from ...infra.timings import timeit
from ..types import ORDERS, CUSTOMERS
from .base import (
    DocumentStore, DuplicateKey, Transaction, TransactionConflict, T,
    apply_delta,
)

log = logging.getLogger(__name__)

# secondary indexes maintained for find()
INDEXED_FIELDS = {
    CUSTOMERS: ("email",),
    ORDERS: ("customerEmail",),
}


# ---- keys
def k_doc(collection: str, key: str) -> str:
    return f"{collection}:{key}"


def k_idx_created(collection: str) -> str:
    return f"idx:{collection}:created"


def k_idx_field(collection: str, field: str, value: Any) -> str:
    return f"idx:{collection}:{field}:{value}"


def _dumps(doc: Dict[str, Any]) -> str:
    return json.dumps(doc, separators=(",", ":"))


def _loads(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    return json.loads(raw) if raw else None


def _queue_index(pipe, collection: str, key: str,
                 old: Optional[Dict[str, Any]], new: Dict[str, Any]) -> None:
    if old is None:
        pipe.zadd(k_idx_created(collection),
                  {key: float(new.get("createdAt") or 0.0)})
    for field in INDEXED_FIELDS.get(collection, ()):
        before = (old or {}).get(field)
        after = new.get(field)
        if before == after and old is not None:
            continue
        if before is not None:
            pipe.srem(k_idx_field(collection, field, before), key)
        if after is not None:
            pipe.sadd(k_idx_field(collection, field, after), key)


class RedisTransaction(Transaction):
    def __init__(self, pipe) -> None:
        self.pipe = pipe
        self._seen: Dict[str, Optional[Dict[str, Any]]] = {}
        self._ops: List[tuple] = []

    async def _read(self, k: str) -> Optional[Dict[str, Any]]:
        if k not in self._seen:
            await self.pipe.watch(k)
            self._seen[k] = _loads(await self.pipe.get(k))
        return self._seen[k]

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        doc = await self._read(k_doc(collection, key))
        return dict(doc) if doc is not None else None

    def set(self, collection: str, key: str, value: Dict[str, Any]) -> None:
        self._ops.append(("set", collection, key, dict(value)))

    def update(self, collection: str, key: str,
               delta: Mapping[str, Any]) -> None:
        self._ops.append(("update", collection, key, dict(delta)))

    async def commit(self) -> None:
        # resolve every write against a watched read before MULTI
        current: Dict[str, Optional[Dict[str, Any]]] = {}
        writes = []
        for op, collection, key, value in self._ops:
            k = k_doc(collection, key)
            if k not in current:
                current[k] = await self._read(k)
            old = current[k]
            if op == "set":
                if old is not None:
                    raise DuplicateKey(f"{k} already exists")
                new = dict(value)
                new.setdefault("id", key)
            else:
                if old is None:
                    raise ProcessingFailed(f"{k} does not exist")
                new = apply_delta(old, value)
            writes.append((collection, key, self._seen.get(k), new))
            current[k] = new

        if not writes:
            return

        self.pipe.multi()
        for collection, key, old, new in writes:
            self.pipe.set(k_doc(collection, key), _dumps(new))
            _queue_index(self.pipe, collection, key, old, new)
        await self.pipe.execute()


class RedisDocumentStore(DocumentStore):
    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def close(self) -> None:
        await self.r.aclose()

    async def _attempt(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        async with self.r.pipeline(transaction=True) as pipe:
            tx = RedisTransaction(pipe)
            result = await fn(tx)
            try:
                async with timeit("store.redis.commit"):
                    await tx.commit()
            except WatchError as e:
                raise TransactionConflict("watched key changed") from e
        return result

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        return _loads(await self.r.get(k_doc(collection, key)))

    async def put(self, collection: str, key: str,
                  value: Dict[str, Any]) -> None:
        new = dict(value)
        new.setdefault("id", key)
        old = await self.get(collection, key)
        pipe = self.r.pipeline(transaction=True)
        pipe.set(k_doc(collection, key), _dumps(new))
        _queue_index(pipe, collection, key, old, new)
        await pipe.execute()

    async def add(self, collection: str, value: Dict[str, Any]) -> str:
        key = uuid.uuid4().hex
        await self.put(collection, key, value)
        return key

    async def _mget(self, collection: str,
                    keys: List[str]) -> List[Dict[str, Any]]:
        if not keys:
            return []
        raws = await self.r.mget([k_doc(collection, k) for k in keys])
        return [d for d in (_loads(x) for x in raws) if d is not None]

    async def find(self, collection: str, field: str, value: Any,
                   limit: int = 1) -> List[Dict[str, Any]]:
        if field not in INDEXED_FIELDS.get(collection, ()):
            raise ValueError(f"{collection}.{field} is not indexed")
        keys = await self.r.smembers(k_idx_field(collection, field, value))
        docs = await self._mget(collection, sorted(keys))
        docs = [d for d in docs if d.get(field) == value]
        docs.sort(key=lambda d: d.get("createdAt") or 0.0)
        return docs[:limit]

    async def recent(self, collection: str,
                     limit: int = 200) -> List[Dict[str, Any]]:
        keys = await self.r.zrevrange(
            k_idx_created(collection), 0, max(0, limit - 1)
        )
        return await self._mget(collection, list(keys))
