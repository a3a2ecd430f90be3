import logging

from app.core.config import Settings, get_settings
from app.core.errors import NotFound
from app.realtime.change_feed import ChangeFeedSubscriber
from app.schemas.groups import GroupDeletionRead, GroupInvitationRead, GroupRead
from app.schemas.profile import UserRead
from app.schemas.social import FriendRequestRead, SocialOverviewRead
from app.services.identity_service import IdentityService
from app.services.membership_service import MembershipService
from app.services.relationship_service import RelationshipService
from app.store import connect_store
from app.store.base import DocumentStore

logger = logging.getLogger(__name__)


class SocialGraph:
    """Command surface over one store. Build one per process and pass it around."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store
        self.identity = IdentityService(store)
        self.relationships = RelationshipService(store, self.identity)
        self.membership = MembershipService(store, self.identity)
        self._feeds: set[ChangeFeedSubscriber] = set()

    async def start(self) -> None:
        if not self.store.is_connected:
            await self.store.connect()

    async def close(self) -> None:
        for feed in list(self._feeds):
            await feed.close()
        self._feeds.clear()
        await self.store.close()
        logger.info("Social graph on %s store closed", self.store.name)

    def open_feed(self, user_id: str | None = None) -> ChangeFeedSubscriber:
        feed = ChangeFeedSubscriber(self.store, self.identity, user_id=user_id)
        self._feeds.add(feed)
        return feed

    async def release_feed(self, feed: ChangeFeedSubscriber) -> None:
        self._feeds.discard(feed)
        await feed.close()

    # Relationships

    async def send_friend_request(self, sender_id: str, receiver_username: str) -> str:
        return await self.relationships.send_friend_request(sender_id, receiver_username)

    async def respond_to_friend_request(
        self, request_id: str, acting_user_id: str, accept: bool
    ) -> FriendRequestRead:
        return await self.relationships.respond_to_friend_request(request_id, acting_user_id, accept)

    async def list_friends(self, user_id: str) -> list[UserRead]:
        return await self.relationships.list_friends(user_id)

    async def list_pending_incoming(self, user_id: str) -> list[FriendRequestRead]:
        return await self.relationships.list_pending_incoming(user_id)

    async def list_pending_outgoing(self, user_id: str) -> list[FriendRequestRead]:
        return await self.relationships.list_pending_outgoing(user_id)

    async def remove_friend(self, user_id: str, friend_user_id: str) -> None:
        await self.relationships.remove_friend(user_id, friend_user_id)

    async def social_overview(self, user_id: str) -> SocialOverviewRead:
        return SocialOverviewRead(
            friends=await self.list_friends(user_id),
            incoming_friend_requests=await self.list_pending_incoming(user_id),
            outgoing_friend_requests=await self.list_pending_outgoing(user_id),
        )

    # Groups

    async def create_group(self, creator_id: str, name: str) -> GroupRead:
        return await self.membership.create_group(creator_id, name)

    async def invite_to_group(self, inviter_id: str, invitee_id: str, group_id: str) -> str:
        return await self.membership.invite_to_group(inviter_id, invitee_id, group_id)

    async def respond_to_invitation(
        self, invitation_id: str, acting_user_id: str, accept: bool
    ) -> GroupInvitationRead:
        return await self.membership.respond_to_invitation(invitation_id, acting_user_id, accept)

    async def remove_member(self, group_id: str, user_id: str, acting_user_id: str) -> GroupRead:
        return await self.membership.remove_member(group_id, user_id, acting_user_id)

    async def leave_group(self, group_id: str, user_id: str) -> None:
        await self.membership.leave_group(group_id, user_id)

    async def delete_group(self, group_id: str, acting_user_id: str) -> GroupDeletionRead:
        return await self.membership.delete_group(group_id, acting_user_id)

    async def list_available_invitees_for_group(self, group_id: str, user_id: str) -> list[UserRead]:
        """Friends of ``user_id`` who are neither members nor already invited.

        Only members may ask; anyone else gets the same answer as for a
        missing group.
        """
        group = await self.membership.get_group(group_id)
        if not group.has_member(user_id):
            raise NotFound("Group not found")
        friends = await self.relationships.list_friends(user_id)
        return await self.membership.list_available_invitees_for_group(group_id, friends)


async def create_social_graph(settings: Settings | None = None) -> SocialGraph:
    store = await connect_store(settings or get_settings())
    return SocialGraph(store)
