"""
Document-store capability the reconciler is written against.

A ``Transaction`` exposes ``get``/``set``/``update`` on (collection, key).
Reads happen immediately; writes are staged and applied atomically when the
store commits. ``DocumentStore.run_transaction(fn)`` runs ``fn(tx)`` and
re-runs it when the commit loses a race, so ``fn`` must be free of outside
side effects.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
from typing import (
    Any, Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar,
)

from ...errors import ProcessingFailed

log = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class Increment:
    """``update()`` sentinel: add ``by`` to a numeric field."""
    by: int | float


class TransactionConflict(ProcessingFailed):
    """Commit lost a race with another transaction on the same keys."""
    code = "TRANSACTION_CONFLICT"
    default_detail = "transaction conflict"


class DuplicateKey(TransactionConflict):
    """``set()`` targeted a key that exists at commit time."""


def apply_delta(doc: Dict[str, Any], delta: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(doc)
    for k, v in delta.items():
        if isinstance(v, Increment):
            out[k] = (out.get(k) or 0) + v.by
        else:
            out[k] = v
    return out


class Transaction(ABC):
    @abstractmethod
    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def set(self, collection: str, key: str, value: Dict[str, Any]) -> None:
        """Create a document. Fails the commit if the key already exists."""

    @abstractmethod
    def update(self, collection: str, key: str,
               delta: Mapping[str, Any]) -> None:
        """Assign fields / apply ``Increment``s on an existing document."""


class DocumentStore(ABC):
    max_attempts = MAX_ATTEMPTS

    @abstractmethod
    async def _attempt(
        self, fn: Callable[[Transaction], Awaitable[T]]
    ) -> T:
        """Run ``fn`` once and commit; raise TransactionConflict on a race."""

    async def run_transaction(
        self, fn: Callable[[Transaction], Awaitable[T]]
    ) -> T:
        last: Optional[TransactionConflict] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._attempt(fn)
            except TransactionConflict as e:
                last = e
                log.info("transaction conflict (attempt %d/%d): %s",
                         attempt, self.max_attempts, e)
        raise TransactionConflict(
            f"gave up after {self.max_attempts} attempts"
        ) from last

    @abstractmethod
    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def put(self, collection: str, key: str,
                  value: Dict[str, Any]) -> None:
        """Upsert outside a transaction (catalog seeding, fixtures)."""

    @abstractmethod
    async def add(self, collection: str, value: Dict[str, Any]) -> str:
        """Create with a generated key; returns the key."""

    @abstractmethod
    async def find(self, collection: str, field: str, value: Any,
                   limit: int = 1) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def recent(self, collection: str,
                     limit: int = 200) -> List[Dict[str, Any]]:
        """Newest first by ``createdAt``."""

    async def init(self) -> None:
        return None

    async def close(self) -> None:
        return None
