"""
Live projections for one user, fed by store subscriptions.

A ``ChangeFeedSubscriber`` holds the raw documents of every subscribed query
and rebuilds four views from them:

    friends                  users joined to the bound user by an accepted request
    pending_friend_requests  incoming requests still pending
    groups                   groups whose member_ids contain the user
    pending_invitations      pending invitations whose group still resolves

The invitation view also watches the groups collection, so deleting a group
whose invitations could not be removed drops them from the view.

Snapshots may arrive on any thread. They are handed to the owning event loop
before anything held here is touched. Each rebuilt view is diffed against the
last published one and pushed to the consumers as a ``ProjectionUpdate``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Literal, Union

from app.core.errors import SocialGraphError
from app.schemas.groups import GroupInvitationRead, GroupRead
from app.schemas.social import FriendRequestRead
from app.services.identity_service import IdentityService
from app.services.projections import drop_orphaned_invitations, friend_ids, sort_users
from app.services.request_lifecycle import ACCEPTED, PENDING
from app.store.base import (
    FRIEND_REQUESTS,
    GROUP_INVITATIONS,
    GROUPS,
    ChangeType,
    Document,
    DocumentStore,
    FieldFilter,
    Snapshot,
    Subscription,
    array_contains,
    where,
)

logger = logging.getLogger(__name__)

FRIENDS = "friends"
PENDING_FRIEND_REQUESTS = "pending_friend_requests"
GROUPS_VIEW = "groups"
PENDING_INVITATIONS = "pending_invitations"

VIEWS = (FRIENDS, PENDING_FRIEND_REQUESTS, GROUPS_VIEW, PENDING_INVITATIONS)

EventKind = Literal["created", "updated", "deleted"]


@dataclass(frozen=True)
class ProjectionEvent:
    view: str
    kind: EventKind
    entity_id: str
    entity: Any


@dataclass
class ProjectionUpdate:
    view: str
    user_id: str | None
    items: list[Any]
    events: list[ProjectionEvent] = field(default_factory=list)
    sequence: int = 0


Consumer = Union[asyncio.Queue, Callable[[ProjectionUpdate], Union[None, Awaitable[None]]]]


@dataclass(frozen=True)
class _Source:
    collection: str
    filters: tuple[FieldFilter, ...]
    view: str
    # Signals that ``view`` must be resolved again; its documents are not view items.
    watch_only: bool = False


def _sources_for(user_id: str) -> dict[str, _Source]:
    return {
        "accepted_sent": _Source(
            FRIEND_REQUESTS,
            (where("sender_id", user_id), where("status", ACCEPTED)),
            FRIENDS,
        ),
        "accepted_received": _Source(
            FRIEND_REQUESTS,
            (where("receiver_id", user_id), where("status", ACCEPTED)),
            FRIENDS,
        ),
        "incoming_requests": _Source(
            FRIEND_REQUESTS,
            (where("receiver_id", user_id), where("status", PENDING)),
            PENDING_FRIEND_REQUESTS,
        ),
        "groups": _Source(GROUPS, (array_contains("member_ids", user_id),), GROUPS_VIEW),
        "invitations": _Source(
            GROUP_INVITATIONS,
            (where("invitee_id", user_id), where("status", PENDING)),
            PENDING_INVITATIONS,
        ),
        "invited_groups": _Source(GROUPS, (), PENDING_INVITATIONS, watch_only=True),
    }


def diff_entities(view: str, before: dict[str, Any], after: dict[str, Any]) -> list[ProjectionEvent]:
    events: list[ProjectionEvent] = []
    for entity_id, entity in after.items():
        previous = before.get(entity_id)
        if previous is None:
            events.append(ProjectionEvent(view, "created", entity_id, entity))
        elif previous != entity:
            events.append(ProjectionEvent(view, "updated", entity_id, entity))
    for entity_id, entity in before.items():
        if entity_id not in after:
            events.append(ProjectionEvent(view, "deleted", entity_id, entity))
    return events


class ChangeFeedSubscriber:
    def __init__(
        self,
        store: DocumentStore,
        identity: IdentityService,
        user_id: str | None = None,
    ) -> None:
        self._store = store
        self._identity = identity
        self._initial_user_id = user_id
        self._user_id: str | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._generation = 0
        self._subscriptions: dict[str, Subscription] = {}
        self._sources: dict[str, _Source] = {}
        self._documents: dict[str, dict[str, Document]] = {}
        self._published: dict[str, dict[str, Any]] = {}
        self._items: dict[str, list[Any]] = {view: [] for view in VIEWS}
        self._sequence: dict[str, int] = {view: 0 for view in VIEWS}
        self._consumers: list[Consumer] = []
        self._tasks: set[asyncio.Task] = set()
        self._scheduled = 0
        self._closed = False

    async def __aenter__(self) -> ChangeFeedSubscriber:
        if self._initial_user_id is not None:
            await self.bind(self._initial_user_id)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def subscriptions(self) -> dict[str, Subscription]:
        return dict(self._subscriptions)

    @property
    def closed(self) -> bool:
        return self._closed

    def view(self, name: str) -> list[Any]:
        return list(self._items[name])

    def add_consumer(self, consumer: Consumer) -> None:
        self._consumers.append(consumer)

    def remove_consumer(self, consumer: Consumer) -> None:
        if consumer in self._consumers:
            self._consumers.remove(consumer)

    async def bind(self, user_id: str) -> None:
        """Subscribe on behalf of ``user_id``, replacing any previous binding."""
        if self._closed:
            raise RuntimeError("ChangeFeedSubscriber is closed")
        if self._user_id == user_id and self._subscriptions:
            return
        if self._user_id is not None:
            await self.unbind()

        self._loop = asyncio.get_running_loop()
        self._generation += 1
        self._user_id = user_id
        self._sources = _sources_for(user_id)
        self._documents = {name: {} for name in self._sources}
        generation = self._generation
        try:
            for name, source in self._sources.items():
                self._subscriptions[name] = await self._store.subscribe(
                    source.collection,
                    source.filters,
                    partial(self._on_snapshot, generation, name),
                )
        except SocialGraphError:
            await self.unbind()
            raise
        logger.info("Change feed bound to user %s", user_id)
        await self.settle()

    async def unbind(self) -> None:
        if self._user_id is None and not self._subscriptions:
            return
        for subscription in self._subscriptions.values():
            subscription.close()
        self._subscriptions.clear()
        self._generation += 1
        previous_user = self._user_id
        self._user_id = None
        self._documents = {}
        self._sources = {}
        for view in VIEWS:
            self._sequence[view] += 1
            self._publish(view, [], self._sequence[view], previous_user)
        logger.info("Change feed released user %s", previous_user)

    async def close(self) -> None:
        if self._closed:
            return
        await self.unbind()
        await self.settle()
        self._consumers.clear()
        self._closed = True

    async def refresh(self) -> None:
        """Rebuild every view from the documents already held."""
        for view in VIEWS:
            self._rebuild(view)
        await self.settle()

    async def settle(self) -> None:
        """Wait until every delivered snapshot has been applied and published."""
        while True:
            await asyncio.sleep(0)
            if self._tasks:
                await asyncio.gather(*list(self._tasks))
                continue
            if self._scheduled == 0:
                return

    def _on_snapshot(self, generation: int, source_name: str, snapshot: Snapshot) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        self._scheduled += 1
        loop.call_soon_threadsafe(self._apply_snapshot, generation, source_name, snapshot)

    def _apply_snapshot(self, generation: int, source_name: str, snapshot: Snapshot) -> None:
        self._scheduled -= 1
        if generation != self._generation or source_name not in self._sources:
            logger.debug("Dropping stale snapshot for %s", source_name)
            return
        source = self._sources[source_name]
        if source.watch_only:
            if self._references_removed(source.view, snapshot):
                self._rebuild(source.view)
            return
        self._documents[source_name] = {doc.id: doc for doc in snapshot.documents}
        self._rebuild(source.view)

    def _references_removed(self, view: str, snapshot: Snapshot) -> bool:
        removed = {change.document.id for change in snapshot.changes if change.type is ChangeType.REMOVED}
        if not removed:
            return False
        return any(doc.get("group_id") in removed for doc in self._view_documents(view))

    def _view_documents(self, view: str) -> list[Document]:
        documents: dict[str, Document] = {}
        for name, source in self._sources.items():
            if source.view == view and not source.watch_only:
                documents.update(self._documents.get(name, {}))
        return list(documents.values())

    def _rebuild(self, view: str) -> None:
        if self._user_id is None:
            return
        self._sequence[view] += 1
        sequence = self._sequence[view]
        documents = self._view_documents(view)

        if view == PENDING_FRIEND_REQUESTS:
            requests = [FriendRequestRead.model_validate(doc.to_dict()) for doc in documents]
            requests.sort(key=lambda item: item.created_at, reverse=True)
            self._publish(view, requests, sequence, self._user_id)
        elif view == GROUPS_VIEW:
            groups = [GroupRead.model_validate(doc.to_dict()) for doc in documents]
            groups.sort(key=lambda item: item.created_at)
            self._publish(view, groups, sequence, self._user_id)
        else:
            self._track(self._resolve(view, sequence, self._generation, documents))

    async def _resolve(
        self,
        view: str,
        sequence: int,
        generation: int,
        documents: list[Document],
    ) -> None:
        user_id = self._user_id
        try:
            if view == FRIENDS:
                requests = [FriendRequestRead.model_validate(doc.to_dict()) for doc in documents]
                ids = sorted(friend_ids(requests, user_id))
                items: list[Any] = sort_users(await self._identity.lookup_by_ids(ids))
            else:
                invitations = [GroupInvitationRead.model_validate(doc.to_dict()) for doc in documents]
                live = await self._store.get_many(GROUPS, {item.group_id for item in invitations})
                items = drop_orphaned_invitations(invitations, (group.id for group in live))
                items.sort(key=lambda item: item.created_at, reverse=True)
        except SocialGraphError:
            logger.exception("Could not resolve %s view for %s", view, user_id)
            return
        # A newer snapshot or a rebind has superseded this resolution.
        if generation != self._generation or sequence != self._sequence[view]:
            return
        self._publish(view, items, sequence, user_id)

    def _publish(self, view: str, items: list[Any], sequence: int, user_id: str | None) -> None:
        after = {item.id: item for item in items}
        before = self._published.get(view)
        events = diff_entities(view, before or {}, after)
        if before is not None and not events:
            return
        self._published[view] = after
        self._items[view] = list(items)
        update = ProjectionUpdate(
            view=view,
            user_id=user_id,
            items=list(items),
            events=events,
            sequence=sequence,
        )
        for consumer in list(self._consumers):
            self._dispatch(consumer, update)

    def _dispatch(self, consumer: Consumer, update: ProjectionUpdate) -> None:
        if isinstance(consumer, asyncio.Queue):
            consumer.put_nowait(update)
            return
        result = consumer(update)
        if inspect.isawaitable(result):
            self._track(result)

    def _track(self, awaitable: Awaitable[None]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
