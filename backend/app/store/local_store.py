"""
Local durable cache: the document store interface over SQLAlchemy.

Used as the only store in local-only mode. Each ``add`` and each ``commit``
batch runs in a single database transaction, and deleting a group removes
its membership rows and invitations through the ORM cascade. Live queries
are served in-process after every commit.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.core.errors import DuplicateKey, InvalidInput, NotFound
from app.db.base import Base
from app.db.migrations import ensure_runtime_schema
from app.db.models import FriendRequest, Group, GroupInvitation, GroupMember, User
from app.db.session import build_engine, build_session_factory
from app.store.base import (
    FRIEND_REQUESTS,
    GROUP_INVITATIONS,
    GROUPS,
    UNIQUE_FIELDS,
    USERS,
    ArrayRemove,
    ArrayUnion,
    DeleteDoc,
    Document,
    DocumentStore,
    FieldFilter,
    Listener,
    PreconditionFailed,
    Subscription,
    SubscriptionRegistry,
    UpdateDoc,
    WriteOp,
    collections_touched,
    validate_filters,
)

logger = logging.getLogger(__name__)

MODELS = {
    USERS: User,
    FRIEND_REQUESTS: FriendRequest,
    GROUPS: Group,
    GROUP_INVITATIONS: GroupInvitation,
}

COLUMNS: dict[str, tuple[str, ...]] = {
    USERS: ("username", "display_name", "email", "phone_number", "created_at", "last_seen"),
    FRIEND_REQUESTS: (
        "sender_id",
        "receiver_id",
        "status",
        "pending_key",
        "created_at",
        "resolved_at",
    ),
    GROUPS: ("name", "creator_id", "created_at"),
    GROUP_INVITATIONS: (
        "group_id",
        "inviter_id",
        "invitee_id",
        "status",
        "pending_key",
        "created_at",
        "resolved_at",
    ),
}


# Collections whose rows go away with a deleted parent row.
CASCADES: dict[str, tuple[str, ...]] = {
    GROUPS: (GROUP_INVITATIONS,),
}


def _aware(value: Any) -> Any:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class LocalDocumentStore(DocumentStore):
    name = "local"

    def __init__(self, session_factory: sessionmaker, engine: Engine | None = None) -> None:
        self._session_factory = session_factory
        self._engine = engine
        self._subscriptions = SubscriptionRegistry()
        self._connected = False

    @classmethod
    def from_url(cls, database_url: str) -> LocalDocumentStore:
        engine = build_engine(database_url)
        return cls(build_session_factory(engine), engine=engine)

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if self._engine is not None:
            Base.metadata.create_all(bind=self._engine)
            ensure_runtime_schema(self._engine)
        self._connected = True
        logger.info("Local cache ready")

    async def close(self) -> None:
        self._subscriptions.close_all()
        self._connected = False

    def _model(self, collection: str):
        try:
            return MODELS[collection]
        except KeyError:
            raise InvalidInput(f"Unknown collection: {collection}") from None

    def _to_document(self, collection: str, row) -> Document:
        data = {name: _aware(getattr(row, name)) for name in COLUMNS[collection]}
        if collection == GROUPS:
            data["member_ids"] = [member.user_id for member in row.members]
        return Document(id=row.id, data=data)

    def _check_unique(
        self,
        db: Session,
        collection: str,
        data: Mapping[str, Any],
        exclude_id: str | None,
    ) -> None:
        model = self._model(collection)
        for field_name in UNIQUE_FIELDS.get(collection, ()):
            value = data.get(field_name)
            if value is None:
                continue
            owner = db.scalar(select(model.id).where(getattr(model, field_name) == value))
            if owner is not None and owner != exclude_id:
                raise DuplicateKey(collection, field_name, value)

    def _commit(self, db: Session, collections: Sequence[str]) -> None:
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            detail = str(exc.orig)
            for collection in collections:
                for field_name in UNIQUE_FIELDS.get(collection, ()):
                    if field_name in detail:
                        raise DuplicateKey(collection, field_name, None) from exc
            raise

    async def get(self, collection: str, doc_id: str) -> Document | None:
        model = self._model(collection)
        with self._session_factory() as db:
            row = db.get(model, doc_id)
            if row is None:
                return None
            return self._to_document(collection, row)

    async def add(self, collection: str, data: Mapping[str, Any]) -> Document:
        model = self._model(collection)
        values = {name: data[name] for name in COLUMNS[collection] if name in data}
        values.setdefault("created_at", datetime.now(timezone.utc))
        with self._session_factory() as db:
            self._check_unique(db, collection, values, exclude_id=None)
            row = model(id=uuid4().hex, **values)
            if collection == GROUPS:
                row.members = [
                    GroupMember(user_id=user_id, position=index)
                    for index, user_id in enumerate(dict.fromkeys(data.get("member_ids") or []))
                ]
            db.add(row)
            self._commit(db, [collection])
            document = self._to_document(collection, row)
        await self._subscriptions.refresh([collection], self._fetch)
        return document

    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        order_by: str | None = None,
    ) -> list[Document]:
        validate_filters(collection, filters)
        return await self._fetch(collection, filters, order_by)

    async def _fetch(
        self,
        collection: str,
        filters: Sequence[FieldFilter],
        order_by: str | None = None,
    ) -> list[Document]:
        model = self._model(collection)
        stmt = select(model)
        for item in filters:
            if item.op == "array_contains":
                stmt = stmt.where(Group.members.any(GroupMember.user_id == item.value))
                continue
            if item.field not in COLUMNS[collection]:
                raise InvalidInput(f"{collection}.{item.field} cannot be filtered")
            stmt = stmt.where(getattr(model, item.field) == item.value)
        if order_by:
            column = getattr(model, order_by.lstrip("-"))
            stmt = stmt.order_by(column.desc() if order_by.startswith("-") else column.asc())
        with self._session_factory() as db:
            rows = db.scalars(stmt).all()
            return [self._to_document(collection, row) for row in rows]

    async def commit(self, writes: Sequence[WriteOp]) -> None:
        if not writes:
            return
        touched = collections_touched(writes)
        for op in writes:
            if isinstance(op, DeleteDoc):
                for dependent in CASCADES.get(op.collection, ()):
                    if dependent not in touched:
                        touched.append(dependent)
        with self._session_factory() as db:
            for op in writes:
                self._apply(db, op)
            self._commit(db, touched)
        await self._subscriptions.refresh(touched, self._fetch)

    def _apply(self, db: Session, op: WriteOp) -> None:
        model = self._model(op.collection)
        row = db.get(model, op.doc_id)
        if isinstance(op, DeleteDoc):
            if row is not None:
                db.delete(row)
            return
        if row is None:
            raise NotFound(f"{op.collection}/{op.doc_id} not found")

        if isinstance(op, UpdateDoc):
            if op.precondition:
                current = self._to_document(op.collection, row).data
                for key, expected in op.precondition.items():
                    if current.get(key) != expected:
                        raise PreconditionFailed(op.collection, op.doc_id, current)
            self._check_unique(db, op.collection, op.fields, exclude_id=op.doc_id)
            for name, value in op.fields.items():
                if op.collection == GROUPS and name == "member_ids":
                    self._replace_members(row, value)
                elif name in COLUMNS[op.collection]:
                    setattr(row, name, value)
                else:
                    raise InvalidInput(f"{op.collection}.{name} is not a stored field")
            db.flush()
            return

        if op.collection != GROUPS or op.field != "member_ids":
            raise InvalidInput(f"{op.collection}.{op.field} is not an array field")
        if isinstance(op, ArrayUnion):
            existing = {member.user_id for member in row.members}
            position = max((member.position for member in row.members), default=-1) + 1
            for user_id in op.values:
                if user_id in existing:
                    continue
                row.members.append(GroupMember(user_id=user_id, position=position))
                existing.add(user_id)
                position += 1
        elif isinstance(op, ArrayRemove):
            for member in list(row.members):
                if member.user_id in op.values:
                    row.members.remove(member)
        db.flush()

    def _replace_members(self, row: Group, member_ids) -> None:
        wanted = list(dict.fromkeys(member_ids or []))
        for member in list(row.members):
            if member.user_id not in wanted:
                row.members.remove(member)
        existing = {member.user_id: member for member in row.members}
        for index, user_id in enumerate(wanted):
            if user_id in existing:
                existing[user_id].position = index
            else:
                row.members.append(GroupMember(user_id=user_id, position=index))

    async def subscribe(
        self,
        collection: str,
        filters: Sequence[FieldFilter],
        listener: Listener,
    ) -> Subscription:
        validate_filters(collection, filters)
        subscription = self._subscriptions.register(collection, filters, listener)
        await self._subscriptions.prime(subscription, self._fetch)
        return subscription
