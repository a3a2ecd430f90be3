"""
Remote document store backed by Redis.

Layout (``prefix`` defaults to ``settings.redis_key_prefix``):
    {prefix}:doc:{collection}                hash  doc_id -> JSON body
    {prefix}:unique:{collection}:{field}     hash  value  -> doc_id
    {prefix}:changes:{collection}            pub/sub channel, payload = writer id

Every write publishes on the collection's channel, including writes made
by other processes, and each process re-runs its live queries when a
message arrives. Batches run inside WATCH/MULTI/EXEC so they apply whole or
not at all.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from app.core.errors import DuplicateKey, RemoteUnavailable
from app.store.base import (
    COLLECTIONS,
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

MAX_COMMIT_ATTEMPTS = 5


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Unsupported value for JSON encoding: {type(value).__name__}")


def encode_body(data: Mapping[str, Any]) -> str:
    return json.dumps(dict(data), default=_json_default, sort_keys=True)


def decode_body(raw: str | bytes) -> dict[str, Any]:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    return json.loads(raw)


class RedisDocumentStore(DocumentStore):
    name = "redis"

    def __init__(self, url: str, *, prefix: str = "splitter", client: redis.Redis | None = None) -> None:
        self._url = url
        self._prefix = prefix
        self._client = client
        self._writer_id = uuid4().hex
        self._subscriptions = SubscriptionRegistry()
        self._pubsub = None
        self._reader_task: asyncio.Task | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _doc_key(self, collection: str) -> str:
        return f"{self._prefix}:doc:{collection}"

    def _unique_key(self, collection: str, field_name: str) -> str:
        return f"{self._prefix}:unique:{collection}:{field_name}"

    def _channel(self, collection: str) -> str:
        return f"{self._prefix}:changes:{collection}"

    async def connect(self) -> None:
        if self._client is None:
            self._client = redis.Redis.from_url(self._url, decode_responses=True)
        try:
            await self._client.ping()
        except (RedisError, OSError) as exc:
            raise RemoteUnavailable(f"Redis unreachable at {self._url}") from exc
        self._connected = True
        logger.info("Connected to remote store at %s", self._url)

    async def close(self) -> None:
        self._subscriptions.close_all()
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        if self._client is not None and self._connected:
            await self._client.aclose()
        self._connected = False
        logger.info("Remote store connection closed")

    def _require_client(self) -> redis.Redis:
        if not self._connected or self._client is None:
            raise RemoteUnavailable("Remote store is not connected")
        return self._client

    async def get(self, collection: str, doc_id: str) -> Document | None:
        client = self._require_client()
        try:
            raw = await client.hget(self._doc_key(collection), doc_id)
        except RedisError as exc:
            raise RemoteUnavailable(str(exc)) from exc
        if raw is None:
            return None
        return Document(id=doc_id, data=decode_body(raw))

    async def get_many(self, collection: str, ids) -> list[Document]:
        unique_ids = list(dict.fromkeys(ids))
        if not unique_ids:
            return []
        client = self._require_client()
        try:
            rows = await client.hmget(self._doc_key(collection), unique_ids)
        except RedisError as exc:
            raise RemoteUnavailable(str(exc)) from exc
        return [
            Document(id=doc_id, data=decode_body(raw))
            for doc_id, raw in zip(unique_ids, rows)
            if raw is not None
        ]

    async def add(self, collection: str, data: Mapping[str, Any]) -> Document:
        client = self._require_client()
        body = dict(data)
        body.setdefault("created_at", datetime.now(timezone.utc))
        doc_id = uuid4().hex
        encoded = encode_body(body)
        unique = [
            (field_name, self._unique_key(collection, field_name), str(body[field_name]))
            for field_name in UNIQUE_FIELDS.get(collection, ())
            if body.get(field_name) is not None
        ]
        # The index claims and the document land in one MULTI/EXEC, so a
        # failed write never leaves a claim behind.
        try:
            for attempt in range(1, MAX_COMMIT_ATTEMPTS + 1):
                async with client.pipeline(transaction=True) as pipe:
                    try:
                        if unique:
                            await pipe.watch(*(index_key for _, index_key, _ in unique))
                            for field_name, index_key, value in unique:
                                if await pipe.hexists(index_key, value):
                                    await pipe.unwatch()
                                    raise DuplicateKey(collection, field_name, body[field_name])
                        pipe.multi()
                        pipe.hset(self._doc_key(collection), doc_id, encoded)
                        for _, index_key, value in unique:
                            pipe.hset(index_key, value, doc_id)
                        pipe.publish(self._channel(collection), self._writer_id)
                        await pipe.execute()
                        return Document(id=doc_id, data=decode_body(encoded))
                    except WatchError:
                        logger.debug("Concurrent claim on %s, retrying add (attempt %s)", collection, attempt)
                        continue
        except RedisError as exc:
            raise RemoteUnavailable(str(exc)) from exc
        raise RemoteUnavailable(f"Gave up adding to {collection} under contention")

    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        order_by: str | None = None,
    ) -> list[Document]:
        validate_filters(collection, filters)
        documents = await self._fetch(collection, filters)
        return sort_documents(documents, order_by)

    async def _fetch(self, collection: str, filters: Sequence[FieldFilter]) -> list[Document]:
        client = self._require_client()
        try:
            rows = await client.hgetall(self._doc_key(collection))
        except RedisError as exc:
            raise RemoteUnavailable(str(exc)) from exc
        documents = []
        for doc_id, raw in rows.items():
            body = decode_body(raw)
            if matches_filters(body, filters):
                documents.append(Document(id=doc_id, data=body))
        return documents

    async def commit(self, writes: Sequence[WriteOp]) -> None:
        if not writes:
            return
        client = self._require_client()
        touched = collections_touched(writes)
        watched = [self._doc_key(collection) for collection in touched]
        for collection in touched:
            watched.extend(
                self._unique_key(collection, field_name)
                for field_name in UNIQUE_FIELDS.get(collection, ())
            )
        try:
            for attempt in range(1, MAX_COMMIT_ATTEMPTS + 1):
                async with client.pipeline(transaction=True) as pipe:
                    try:
                        await pipe.watch(*watched)
                        await self._stage_and_execute(pipe, writes, touched)
                        return
                    except WatchError:
                        # Nothing was applied, so re-reading and re-staging is safe.
                        logger.debug("Concurrent write on %s, restaging (attempt %s)", touched, attempt)
                        continue
        except RedisError as exc:
            raise RemoteUnavailable(str(exc)) from exc
        raise RemoteUnavailable(f"Gave up committing to {', '.join(touched)} under contention")

    async def _stage_and_execute(self, pipe, writes: Sequence[WriteOp], touched: list[str]) -> None:
        before: dict[tuple[str, str], dict[str, Any] | None] = {}
        staged: dict[tuple[str, str], dict[str, Any] | None] = {}
        for op in writes:
            key = (op.collection, op.doc_id)
            if key not in before:
                raw = await pipe.hget(self._doc_key(op.collection), op.doc_id)
                before[key] = decode_body(raw) if raw is not None else None
            current = staged[key] if key in staged else before[key]
            staged[key] = apply_write(dict(current) if current is not None else None, op)

        index_updates: list[tuple[str, str, str | None]] = []
        for (collection, doc_id), body in staged.items():
            old_body = before[(collection, doc_id)] or {}
            for field_name in UNIQUE_FIELDS.get(collection, ()):
                old_value = old_body.get(field_name)
                new_value = (body or {}).get(field_name)
                if old_value == new_value:
                    continue
                index_key = self._unique_key(collection, field_name)
                if old_value is not None:
                    index_updates.append((index_key, str(old_value), None))
                if new_value is not None:
                    owner = await pipe.hget(index_key, str(new_value))
                    if owner is not None and owner != doc_id:
                        await pipe.unwatch()
                        raise DuplicateKey(collection, field_name, new_value)
                    index_updates.append((index_key, str(new_value), doc_id))

        pipe.multi()
        for (collection, doc_id), body in staged.items():
            if body is None:
                pipe.hdel(self._doc_key(collection), doc_id)
            else:
                pipe.hset(self._doc_key(collection), doc_id, encode_body(body))
        for index_key, value, owner in index_updates:
            if owner is None:
                pipe.hdel(index_key, value)
            else:
                pipe.hset(index_key, value, owner)
        for collection in touched:
            pipe.publish(self._channel(collection), self._writer_id)
        await pipe.execute()

    async def subscribe(
        self,
        collection: str,
        filters: Sequence[FieldFilter],
        listener: Listener,
    ) -> Subscription:
        validate_filters(collection, filters)
        await self._ensure_reader()
        subscription = self._subscriptions.register(collection, filters, listener)
        await self._subscriptions.prime(subscription, self._fetch)
        return subscription

    async def _ensure_reader(self) -> None:
        if self._reader_task is not None and not self._reader_task.done():
            return
        client = self._require_client()
        self._pubsub = client.pubsub(ignore_subscribe_messages=True)
        try:
            await self._pubsub.subscribe(*(self._channel(collection) for collection in COLLECTIONS))
        except RedisError as exc:
            raise RemoteUnavailable(str(exc)) from exc
        self._reader_task = asyncio.create_task(self._read_changes())

    async def _read_changes(self) -> None:
        channel_prefix = f"{self._prefix}:changes:"
        try:
            async for message in self._pubsub.listen():
                if message.get("type") != "message":
                    continue
                channel = message.get("channel") or ""
                collection = channel[len(channel_prefix):]
                if collection not in COLLECTIONS:
                    continue
                if not self._subscriptions.has_listeners(collection):
                    continue
                try:
                    await self._subscriptions.refresh([collection], self._fetch)
                except RemoteUnavailable:
                    logger.warning("Could not refresh live queries on %s", collection)
        except asyncio.CancelledError:
            raise
        except RedisError:
            logger.exception("Change feed reader stopped")
            self._connected = False
