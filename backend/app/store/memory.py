"""
In-memory document store with remote-store semantics.

Used by the unit tests and for throwaway local runs. It behaves like the
remote backend on purpose: no foreign keys, no cascading deletes, every
write fans out a fresh snapshot to the matching subscriptions.

Testing helpers:
    - ``fail_writes_to(collection)`` makes writes touching that collection
      raise ``RemoteUnavailable`` until ``restore_writes()`` is called
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from app.core.errors import DuplicateKey, RemoteUnavailable
from app.store.base import (
    UNIQUE_FIELDS,
    Document,
    DocumentStore,
    FieldFilter,
    Listener,
    Subscription,
    SubscriptionRegistry,
    WriteOp,
    apply_write,
    collections_touched,
    matches_filters,
    sort_documents,
    validate_filters,
)

logger = logging.getLogger(__name__)


class InMemoryDocumentStore(DocumentStore):
    name = "memory"

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._subscriptions = SubscriptionRegistry()
        self._write_lock = asyncio.Lock()
        self._failing: set[str] = set()
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        logger.debug("InMemoryDocumentStore connected")

    async def close(self) -> None:
        self._connected = False
        self._subscriptions.close_all()
        logger.debug("InMemoryDocumentStore closed")

    def fail_writes_to(self, *collections: str) -> None:
        self._failing.update(collections)

    def restore_writes(self) -> None:
        self._failing.clear()

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise RemoteUnavailable("Store is not connected")

    def _ensure_writable(self, collections: Sequence[str]) -> None:
        self._ensure_connected()
        blocked = self._failing.intersection(collections)
        if blocked:
            raise RemoteUnavailable(f"Writes to {', '.join(sorted(blocked))} are failing")

    def _check_unique(
        self,
        collection: str,
        data: Mapping[str, Any],
        exclude_id: str | None,
        pending: Mapping[str, dict[str, Any] | None] | None = None,
    ) -> None:
        rows = dict(self._collections[collection])
        if pending:
            for doc_id, body in pending.items():
                if body is None:
                    rows.pop(doc_id, None)
                else:
                    rows[doc_id] = body
        for field_name in UNIQUE_FIELDS.get(collection, ()):
            value = data.get(field_name)
            if value is None:
                continue
            for doc_id, body in rows.items():
                if doc_id != exclude_id and body.get(field_name) == value:
                    raise DuplicateKey(collection, field_name, value)

    async def get(self, collection: str, doc_id: str) -> Document | None:
        self._ensure_connected()
        body = self._collections[collection].get(doc_id)
        if body is None:
            return None
        return Document(id=doc_id, data=copy.deepcopy(body))

    async def add(self, collection: str, data: Mapping[str, Any]) -> Document:
        async with self._write_lock:
            self._ensure_writable([collection])
            body = copy.deepcopy(dict(data))
            body.setdefault("created_at", datetime.now(timezone.utc))
            self._check_unique(collection, body, exclude_id=None)
            doc_id = uuid4().hex
            self._collections[collection][doc_id] = body
            await self._subscriptions.refresh([collection], self._fetch)
        return Document(id=doc_id, data=copy.deepcopy(body))

    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        order_by: str | None = None,
    ) -> list[Document]:
        self._ensure_connected()
        validate_filters(collection, filters)
        documents = await self._fetch(collection, filters)
        return sort_documents(documents, order_by)

    async def _fetch(self, collection: str, filters: Sequence[FieldFilter]) -> list[Document]:
        return [
            Document(id=doc_id, data=copy.deepcopy(body))
            for doc_id, body in self._collections[collection].items()
            if matches_filters(body, filters)
        ]

    async def commit(self, writes: Sequence[WriteOp]) -> None:
        if not writes:
            return
        touched = collections_touched(writes)
        async with self._write_lock:
            self._ensure_writable(touched)
            staged: dict[tuple[str, str], dict[str, Any] | None] = {}
            for op in writes:
                key = (op.collection, op.doc_id)
                current = staged[key] if key in staged else self._collections[op.collection].get(op.doc_id)
                staged[key] = apply_write(copy.deepcopy(current), op)
            for (collection, doc_id), body in staged.items():
                if body is None:
                    continue
                pending = {
                    other_id: other_body
                    for (other_collection, other_id), other_body in staged.items()
                    if other_collection == collection
                }
                self._check_unique(collection, body, exclude_id=doc_id, pending=pending)
            for (collection, doc_id), body in staged.items():
                if body is None:
                    self._collections[collection].pop(doc_id, None)
                else:
                    self._collections[collection][doc_id] = body
            await self._subscriptions.refresh(touched, self._fetch)

    async def subscribe(
        self,
        collection: str,
        filters: Sequence[FieldFilter],
        listener: Listener,
    ) -> Subscription:
        self._ensure_connected()
        validate_filters(collection, filters)
        subscription = self._subscriptions.register(collection, filters, listener)
        await self._subscriptions.prime(subscription, self._fetch)
        return subscription
