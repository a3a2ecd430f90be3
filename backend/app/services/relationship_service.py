import logging
from datetime import datetime, timezone

from app.core.errors import (
    AlreadyFriends,
    DuplicateKey,
    DuplicatePending,
    InvalidTransition,
    NotFound,
    SelfReferential,
    Unauthorized,
)
from app.schemas.profile import UserRead
from app.schemas.social import FriendRequestRead
from app.services.identity_service import IdentityService
from app.services.projections import friend_ids
from app.services.request_lifecycle import ACCEPTED, PENDING, friend_pair_key, settle_status
from app.store.base import (
    FRIEND_REQUESTS,
    DeleteDoc,
    Document,
    DocumentStore,
    PreconditionFailed,
    where,
)

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_request(document: Document) -> FriendRequestRead:
    return FriendRequestRead.model_validate(document.to_dict())


class RelationshipService:
    def __init__(self, store: DocumentStore, identity: IdentityService) -> None:
        self._store = store
        self._identity = identity

    async def send_friend_request(self, sender_id: str, receiver_username: str) -> str:
        receiver = await self._identity.lookup_by_username(receiver_username.strip())
        if receiver.id == sender_id:
            raise SelfReferential()
        await self._identity.get_user(sender_id)
        if await self._accepted_between(sender_id, receiver.id):
            raise AlreadyFriends()

        pair_key = friend_pair_key(sender_id, receiver.id)
        existing_pending = await self._store.query(FRIEND_REQUESTS, [where("pending_key", pair_key)])
        if existing_pending:
            raise DuplicatePending(self._duplicate_message(existing_pending[0], sender_id))

        try:
            document = await self._store.add(
                FRIEND_REQUESTS,
                {
                    "sender_id": sender_id,
                    "receiver_id": receiver.id,
                    "status": PENDING,
                    "pending_key": pair_key,
                    "created_at": _utc_now(),
                    "resolved_at": None,
                },
            )
        except DuplicateKey as exc:
            # Another device created the pending request between our read and write.
            raise DuplicatePending("A friend request between these users is already pending") from exc
        logger.info("Friend request %s sent from %s to %s", document.id, sender_id, receiver.id)
        return document.id

    def _duplicate_message(self, document: Document, sender_id: str) -> str:
        if document.get("sender_id") == sender_id:
            return "Friend request already sent"
        return "This user already sent you a friend request"

    async def get_friend_request(self, request_id: str) -> FriendRequestRead:
        document = await self._store.get(FRIEND_REQUESTS, request_id)
        if document is None:
            raise NotFound("Friend request not found")
        return _to_request(document)

    async def respond_to_friend_request(
        self,
        request_id: str,
        acting_user_id: str,
        accept: bool,
    ) -> FriendRequestRead:
        request = await self.get_friend_request(request_id)
        if request.receiver_id != acting_user_id:
            raise Unauthorized("Only the recipient can respond to this friend request")
        next_status = settle_status(request.status, accept)

        try:
            document = await self._store.update(
                FRIEND_REQUESTS,
                request_id,
                {"status": next_status, "resolved_at": _utc_now(), "pending_key": None},
                precondition={"status": PENDING},
            )
        except PreconditionFailed as exc:
            raise InvalidTransition(current_status=exc.current.get("status")) from exc
        logger.info("Friend request %s %s by %s", request_id, next_status, acting_user_id)
        return _to_request(document)

    async def _accepted_between(self, user_a_id: str, user_b_id: str) -> list[FriendRequestRead]:
        accepted: list[FriendRequestRead] = []
        for sender_id, receiver_id in ((user_a_id, user_b_id), (user_b_id, user_a_id)):
            documents = await self._store.query(
                FRIEND_REQUESTS,
                [where("sender_id", sender_id), where("receiver_id", receiver_id)],
            )
            accepted.extend(
                _to_request(document) for document in documents if document.get("status") == ACCEPTED
            )
        return accepted

    async def accepted_requests_for(self, user_id: str) -> list[FriendRequestRead]:
        requests: list[FriendRequestRead] = []
        for field_name in ("sender_id", "receiver_id"):
            documents = await self._store.query(
                FRIEND_REQUESTS,
                [where("status", ACCEPTED), where(field_name, user_id)],
            )
            requests.extend(_to_request(document) for document in documents)
        return requests

    async def list_friends(self, user_id: str) -> list[UserRead]:
        requests = await self.accepted_requests_for(user_id)
        return await self._identity.lookup_by_ids(sorted(friend_ids(requests, user_id)))

    async def are_friends(self, user_a_id: str, user_b_id: str) -> bool:
        return bool(await self._accepted_between(user_a_id, user_b_id))

    async def list_pending_incoming(self, user_id: str) -> list[FriendRequestRead]:
        documents = await self._store.query(
            FRIEND_REQUESTS,
            [where("receiver_id", user_id), where("status", PENDING)],
            order_by="-created_at",
        )
        return [_to_request(document) for document in documents]

    async def list_pending_outgoing(self, user_id: str) -> list[FriendRequestRead]:
        documents = await self._store.query(
            FRIEND_REQUESTS,
            [where("sender_id", user_id), where("status", PENDING)],
            order_by="-created_at",
        )
        return [_to_request(document) for document in documents]

    async def remove_friend(self, user_id: str, friend_user_id: str) -> None:
        # The edge only exists through accepted requests, so dropping those
        # documents is what ends the friendship.
        accepted = await self._accepted_between(user_id, friend_user_id)
        if not accepted:
            raise NotFound("Not friends with this user")
        await self._store.commit([DeleteDoc(FRIEND_REQUESTS, request.id) for request in accepted])
        logger.info("Friendship between %s and %s removed", user_id, friend_user_id)
