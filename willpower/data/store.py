"""Document store contract, in-memory implementation and optimistic transactions."""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from typing import Any

from willpower.core.config import Settings
from willpower.core.config import settings as default_settings
from willpower.core.errors import NotFoundError, StateConflictError

logger = logging.getLogger(__name__)

Document = dict[str, Any]

# Receives the current document (None if absent), returns the fields to write.
Mutation = Callable[[Document | None], Mapping[str, Any]]


class VersionConflictError(Exception):
    """Raised by a store when a write's expected_version is stale."""


class DocumentStore(ABC):
    """Generic document store.

    Every document carries an ``id`` and a store-maintained ``version`` that
    increases on each write. ``update`` with ``expected_version`` is a
    compare-and-set; ``create`` with an explicit id that already exists is a
    conflict.
    """

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Document | None:
        """Return a copy of the document, or None."""

    @abstractmethod
    async def query(self, collection: str, filters: Mapping[str, Any] | None = None) -> list[Document]:
        """Return copies of all documents whose fields equal every filter value."""

    @abstractmethod
    async def create(self, collection: str, fields: Mapping[str, Any], doc_id: str | None = None) -> str:
        """Insert a document and return its id."""

    @abstractmethod
    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: Mapping[str, Any],
        expected_version: int | None = None,
    ) -> int:
        """Merge fields into a document and return the new version."""

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        """Remove a document; missing documents are ignored."""


def _matches_filters(record: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    """Check if a record matches all filter key-value pairs."""
    return all(record.get(k) == v for k, v in filters.items())


def new_id() -> str:
    """Generate a document id."""
    return uuid.uuid4().hex


class InMemoryStore(DocumentStore):
    """Process-local store used by tests and single-instance deployments."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, Document]] = {}
        self._lock = asyncio.Lock()

    def _bucket(self, collection: str) -> dict[str, Document]:
        return self._collections.setdefault(collection, {})

    async def get(self, collection: str, doc_id: str) -> Document | None:
        doc = self._bucket(collection).get(doc_id)
        # yield like a network round trip so concurrent callers interleave
        await asyncio.sleep(0)
        return copy.deepcopy(doc) if doc is not None else None

    async def query(self, collection: str, filters: Mapping[str, Any] | None = None) -> list[Document]:
        docs = [
            copy.deepcopy(doc)
            for doc in self._bucket(collection).values()
            if not filters or _matches_filters(doc, filters)
        ]
        await asyncio.sleep(0)
        return docs

    async def create(self, collection: str, fields: Mapping[str, Any], doc_id: str | None = None) -> str:
        async with self._lock:
            bucket = self._bucket(collection)
            key = doc_id or new_id()
            if key in bucket:
                msg = f"{collection}/{key} already exists"
                raise VersionConflictError(msg)
            bucket[key] = {**copy.deepcopy(dict(fields)), "id": key, "version": 1}
        logger.debug("Created %s/%s", collection, key)
        return key

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: Mapping[str, Any],
        expected_version: int | None = None,
    ) -> int:
        async with self._lock:
            bucket = self._bucket(collection)
            doc = bucket.get(doc_id)
            if doc is None:
                msg = f"{collection}/{doc_id} not found"
                raise NotFoundError(msg)
            if expected_version is not None and doc["version"] != expected_version:
                msg = f"{collection}/{doc_id} is at version {doc['version']}, expected {expected_version}"
                raise VersionConflictError(msg)
            updates = {k: copy.deepcopy(v) for k, v in fields.items() if k not in ("id", "version")}
            doc.update(updates)
            doc["version"] += 1
            return int(doc["version"])

    async def delete(self, collection: str, doc_id: str) -> None:
        async with self._lock:
            self._bucket(collection).pop(doc_id, None)


async def run_transaction(
    store: DocumentStore,
    collection: str,
    doc_id: str,
    mutate: Mutation,
    config: Settings | None = None,
) -> Document:
    """Read-modify-write one document with retry on version conflict.

    ``mutate`` must be free of side effects: it may run several times and may
    raise a WillpowerError to abort without writing anything. Returns the
    document as written.
    """
    cfg = config or default_settings
    for attempt in range(1, cfg.store_max_retries + 1):
        current = await store.get(collection, doc_id)
        fields = dict(mutate(copy.deepcopy(current)))
        try:
            if current is None:
                await store.create(collection, fields, doc_id=doc_id)
                return {**fields, "id": doc_id, "version": 1}
            version = await store.update(collection, doc_id, fields, expected_version=current["version"])
        except VersionConflictError:
            logger.warning("Write conflict on %s/%s (attempt %d), retrying", collection, doc_id, attempt)
            continue
        return {**current, **fields, "version": version}

    msg = "This record was changed by someone else at the same time. Please try again."
    raise StateConflictError(msg)
