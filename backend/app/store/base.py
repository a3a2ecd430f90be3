"""
Document store abstraction shared by the remote and local backends.

Ledgers talk to a ``DocumentStore`` only, never to a concrete backend, so the
same validation and state-machine code runs against Redis, the SQL cache or
the in-memory double.

Invariants:
    - Documents are keyed by a store-generated opaque id
    - Non-null values of a collection's unique fields never collide
    - A batch passed to ``commit`` is applied entirely or not at all
    - Every subscriber sees the full current result set on subscribe and
      again after each write that changes it, in write order
"""

from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Union

from app.core.errors import InvalidInput, NotFound, SocialGraphError

logger = logging.getLogger(__name__)

USERS = "users"
FRIEND_REQUESTS = "friend_requests"
GROUPS = "groups"
GROUP_INVITATIONS = "group_invitations"

COLLECTIONS = (USERS, FRIEND_REQUESTS, GROUPS, GROUP_INVITATIONS)

UNIQUE_FIELDS: dict[str, tuple[str, ...]] = {
    USERS: ("username",),
    FRIEND_REQUESTS: ("pending_key",),
    GROUPS: (),
    GROUP_INVITATIONS: ("pending_key",),
}

ARRAY_FIELDS: dict[str, tuple[str, ...]] = {
    GROUPS: ("member_ids",),
}

MAX_EQUALITY_FILTERS = 2


class PreconditionFailed(SocialGraphError):
    """A conditional write found the document in a different state."""

    status_code = 409
    code = "precondition_failed"

    def __init__(self, collection: str, doc_id: str, current: Mapping[str, Any]) -> None:
        self.collection = collection
        self.doc_id = doc_id
        self.current = dict(current)
        super().__init__(f"{collection}/{doc_id} changed before the write was applied")


@dataclass(frozen=True)
class FieldFilter:
    field: str
    value: Any
    op: Literal["==", "array_contains"] = "=="

    def matches(self, data: Mapping[str, Any]) -> bool:
        current = data.get(self.field)
        if self.op == "array_contains":
            return isinstance(current, (list, tuple, set)) and self.value in current
        return current == self.value


def where(field_name: str, value: Any) -> FieldFilter:
    return FieldFilter(field=field_name, value=value)


def array_contains(field_name: str, value: Any) -> FieldFilter:
    return FieldFilter(field=field_name, value=value, op="array_contains")


def validate_filters(collection: str, filters: Sequence[FieldFilter]) -> None:
    if collection not in COLLECTIONS:
        raise InvalidInput(f"Unknown collection: {collection}")
    equality = [item for item in filters if item.op == "=="]
    contains = [item for item in filters if item.op == "array_contains"]
    if len(equality) > MAX_EQUALITY_FILTERS:
        raise InvalidInput(
            f"Queries support at most {MAX_EQUALITY_FILTERS} equality filters"
        )
    if len(contains) > 1:
        raise InvalidInput("Queries support a single array_contains filter")
    for item in contains:
        if item.field not in ARRAY_FIELDS.get(collection, ()):
            raise InvalidInput(f"{collection}.{item.field} is not an array field")


def matches_filters(data: Mapping[str, Any], filters: Sequence[FieldFilter]) -> bool:
    return all(item.matches(data) for item in filters)


@dataclass
class Document:
    id: str
    data: dict[str, Any]

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, **self.data}


class ChangeType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass
class DocumentChange:
    type: ChangeType
    document: Document


@dataclass
class Snapshot:
    """Full result set of a subscribed query plus what changed since the last one."""

    collection: str
    documents: list[Document]
    changes: list[DocumentChange] = field(default_factory=list)

    @property
    def ids(self) -> set[str]:
        return {doc.id for doc in self.documents}


@dataclass(frozen=True)
class UpdateDoc:
    collection: str
    doc_id: str
    fields: Mapping[str, Any]
    precondition: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class ArrayUnion:
    collection: str
    doc_id: str
    field: str
    values: tuple[Any, ...]


@dataclass(frozen=True)
class ArrayRemove:
    collection: str
    doc_id: str
    field: str
    values: tuple[Any, ...]


@dataclass(frozen=True)
class DeleteDoc:
    collection: str
    doc_id: str


WriteOp = Union[UpdateDoc, ArrayUnion, ArrayRemove, DeleteDoc]

Listener = Callable[[Snapshot], None]


def apply_write(data: dict[str, Any] | None, op: WriteOp) -> dict[str, Any] | None:
    """Return the document body after ``op``; ``None`` means deleted."""
    if isinstance(op, DeleteDoc):
        return None
    if data is None:
        raise NotFound(f"{op.collection}/{op.doc_id} not found")

    if isinstance(op, UpdateDoc):
        if op.precondition:
            for key, expected in op.precondition.items():
                if data.get(key) != expected:
                    raise PreconditionFailed(op.collection, op.doc_id, data)
        updated = dict(data)
        updated.update(op.fields)
        return updated

    current = list(data.get(op.field) or [])
    if isinstance(op, ArrayUnion):
        for value in op.values:
            if value not in current:
                current.append(value)
    else:
        current = [value for value in current if value not in op.values]
    updated = dict(data)
    updated[op.field] = current
    return updated


def collections_touched(writes: Iterable[WriteOp]) -> list[str]:
    seen: list[str] = []
    for op in writes:
        if op.collection not in seen:
            seen.append(op.collection)
    return seen


class Subscription:
    """Handle for a live query. ``close`` is safe to call any number of times."""

    def __init__(
        self,
        collection: str,
        filters: Sequence[FieldFilter],
        listener: Listener,
        on_close: Callable[[Subscription], None] | None = None,
    ) -> None:
        self.collection = collection
        self.filters = tuple(filters)
        self.listener = listener
        self._on_close = on_close
        self._last: dict[str, Document] | None = None
        self._closed = False

    @property
    def active(self) -> bool:
        return not self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            self._on_close(self)
        logger.debug("Subscription closed on %s %s", self.collection, self.filters)

    def deliver(self, documents: list[Document]) -> None:
        """Diff ``documents`` against the last delivery and notify when changed."""
        if self._closed:
            return
        current = {doc.id: doc for doc in documents}
        previous = self._last
        changes: list[DocumentChange] = []
        if previous is None:
            changes = [DocumentChange(ChangeType.ADDED, doc) for doc in documents]
        else:
            for doc in documents:
                before = previous.get(doc.id)
                if before is None:
                    changes.append(DocumentChange(ChangeType.ADDED, doc))
                elif before.data != doc.data:
                    changes.append(DocumentChange(ChangeType.MODIFIED, doc))
            for doc_id, doc in previous.items():
                if doc_id not in current:
                    changes.append(DocumentChange(ChangeType.REMOVED, doc))
            if not changes:
                return
        self._last = current
        snapshot = Snapshot(
            collection=self.collection,
            documents=[copy.deepcopy(doc) for doc in documents],
            changes=changes,
        )
        try:
            self.listener(snapshot)
        except Exception:
            logger.exception("Snapshot listener failed for %s", self.collection)


class SubscriptionRegistry:
    """Per-store bookkeeping of live queries, grouped by collection."""

    def __init__(self) -> None:
        self._by_collection: dict[str, list[Subscription]] = {}
        self._lock = asyncio.Lock()

    def register(
        self,
        collection: str,
        filters: Sequence[FieldFilter],
        listener: Listener,
    ) -> Subscription:
        subscription = Subscription(collection, filters, listener, on_close=self._discard)
        self._by_collection.setdefault(collection, []).append(subscription)
        return subscription

    def _discard(self, subscription: Subscription) -> None:
        bucket = self._by_collection.get(subscription.collection, [])
        if subscription in bucket:
            bucket.remove(subscription)

    def has_listeners(self, collection: str) -> bool:
        return bool(self._by_collection.get(collection))

    def close_all(self) -> None:
        for bucket in list(self._by_collection.values()):
            for subscription in list(bucket):
                subscription.close()
        self._by_collection.clear()

    async def refresh(
        self,
        collections: Iterable[str],
        fetch: Callable[[str, Sequence[FieldFilter]], Awaitable[list[Document]]],
    ) -> None:
        async with self._lock:
            for collection in collections:
                for subscription in list(self._by_collection.get(collection, [])):
                    if not subscription.active:
                        continue
                    documents = await fetch(collection, subscription.filters)
                    subscription.deliver(documents)

    async def prime(
        self,
        subscription: Subscription,
        fetch: Callable[[str, Sequence[FieldFilter]], Awaitable[list[Document]]],
    ) -> None:
        async with self._lock:
            documents = await fetch(subscription.collection, subscription.filters)
            subscription.deliver(documents)


class DocumentStore(ABC):
    """Authoritative store interface the ledgers depend on."""

    name = "abstract"

    @property
    @abstractmethod
    def is_connected(self) -> bool: ...

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Document | None: ...

    @abstractmethod
    async def add(self, collection: str, data: Mapping[str, Any]) -> Document: ...

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        order_by: str | None = None,
    ) -> list[Document]: ...

    @abstractmethod
    async def commit(self, writes: Sequence[WriteOp]) -> None: ...

    @abstractmethod
    async def subscribe(
        self,
        collection: str,
        filters: Sequence[FieldFilter],
        listener: Listener,
    ) -> Subscription: ...

    async def get_many(self, collection: str, ids: Iterable[str]) -> list[Document]:
        unique_ids = list(dict.fromkeys(ids))
        if not unique_ids:
            return []
        documents = []
        for doc_id in unique_ids:
            document = await self.get(collection, doc_id)
            if document is not None:
                documents.append(document)
        return documents

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: Mapping[str, Any],
        precondition: Mapping[str, Any] | None = None,
    ) -> Document:
        await self.commit([UpdateDoc(collection, doc_id, dict(fields), precondition)])
        document = await self.get(collection, doc_id)
        if document is None:
            raise NotFound(f"{collection}/{doc_id} not found")
        return document

    async def array_union(self, collection: str, doc_id: str, field_name: str, *values: Any) -> None:
        await self.commit([ArrayUnion(collection, doc_id, field_name, tuple(values))])

    async def array_remove(self, collection: str, doc_id: str, field_name: str, *values: Any) -> None:
        await self.commit([ArrayRemove(collection, doc_id, field_name, tuple(values))])

    async def delete(self, collection: str, doc_id: str) -> None:
        await self.commit([DeleteDoc(collection, doc_id)])


def sort_documents(documents: list[Document], order_by: str | None) -> list[Document]:
    if not order_by:
        return documents
    descending = order_by.startswith("-")
    key = order_by.lstrip("-")
    return sorted(
        documents,
        key=lambda doc: (doc.data.get(key) is None, doc.data.get(key) or ""),
        reverse=descending,
    )
