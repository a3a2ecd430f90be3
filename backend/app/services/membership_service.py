import logging
from collections.abc import Iterable
from datetime import datetime, timezone

from app.core.config import get_settings
from app.core.errors import (
    AlreadyMember,
    CannotLeaveAsCreator,
    CannotRemoveCreator,
    DuplicateKey,
    DuplicatePending,
    InvalidInput,
    InvalidName,
    InvalidTransition,
    NotFound,
    RemoteUnavailable,
    Unauthorized,
)
from app.schemas.groups import GroupDeletionRead, GroupInvitationRead, GroupRead
from app.schemas.profile import UserRead
from app.services.identity_service import IdentityService
from app.services.projections import available_invitees, drop_orphaned_invitations
from app.services.request_lifecycle import PENDING, invitation_key, settle_status
from app.store.base import (
    GROUP_INVITATIONS,
    GROUPS,
    ArrayUnion,
    Document,
    DocumentStore,
    PreconditionFailed,
    UpdateDoc,
    array_contains,
    where,
)

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_group(document: Document) -> GroupRead:
    return GroupRead.model_validate(document.to_dict())


def _to_invitation(document: Document) -> GroupInvitationRead:
    return GroupInvitationRead.model_validate(document.to_dict())


def normalize_group_name(name: str) -> str:
    trimmed = (name or "").strip()
    if not trimmed:
        raise InvalidName()
    if len(trimmed) > get_settings().group_name_max_length:
        raise InvalidInput("Group name is too long")
    return trimmed


class MembershipService:
    """Owns groups and invitations; the only writer of ``member_ids``."""

    def __init__(self, store: DocumentStore, identity: IdentityService) -> None:
        self._store = store
        self._identity = identity

    async def get_group(self, group_id: str) -> GroupRead:
        document = await self._store.get(GROUPS, group_id)
        if document is None:
            raise NotFound("Group not found")
        return _to_group(document)

    async def get_invitation(self, invitation_id: str) -> GroupInvitationRead:
        document = await self._store.get(GROUP_INVITATIONS, invitation_id)
        if document is None:
            raise NotFound("Invitation not found")
        return _to_invitation(document)

    async def create_group(self, creator_id: str, name: str) -> GroupRead:
        group_name = normalize_group_name(name)
        await self._identity.get_user(creator_id)
        document = await self._store.add(
            GROUPS,
            {
                "name": group_name,
                "creator_id": creator_id,
                "member_ids": [creator_id],
                "created_at": _utc_now(),
            },
        )
        logger.info("Group %s (%s) created by %s", document.id, group_name, creator_id)
        return _to_group(document)

    async def rename_group(self, group_id: str, acting_user_id: str, name: str) -> GroupRead:
        group_name = normalize_group_name(name)
        group = await self.get_group(group_id)
        if group.creator_id != acting_user_id:
            raise Unauthorized("Only the group creator can rename the group")
        document = await self._store.update(GROUPS, group_id, {"name": group_name})
        return _to_group(document)

    async def invite_to_group(self, inviter_id: str, invitee_id: str, group_id: str) -> str:
        group = await self.get_group(group_id)
        if not group.has_member(inviter_id):
            raise Unauthorized("Only group members can send invitations")
        if group.has_member(invitee_id):
            raise AlreadyMember()
        await self._identity.get_user(invitee_id)

        key = invitation_key(group_id, invitee_id)
        if await self._store.query(GROUP_INVITATIONS, [where("pending_key", key)]):
            raise DuplicatePending("An invitation for this user is already pending")
        try:
            document = await self._store.add(
                GROUP_INVITATIONS,
                {
                    "group_id": group_id,
                    "inviter_id": inviter_id,
                    "invitee_id": invitee_id,
                    "status": PENDING,
                    "pending_key": key,
                    "created_at": _utc_now(),
                    "resolved_at": None,
                },
            )
        except DuplicateKey as exc:
            raise DuplicatePending("An invitation for this user is already pending") from exc
        logger.info("Invitation %s to group %s sent to %s", document.id, group_id, invitee_id)
        return document.id

    async def respond_to_invitation(
        self,
        invitation_id: str,
        acting_user_id: str,
        accept: bool,
    ) -> GroupInvitationRead:
        invitation = await self.get_invitation(invitation_id)
        if invitation.invitee_id != acting_user_id:
            raise Unauthorized("Only the invited user can respond to this invitation")
        next_status = settle_status(invitation.status, accept)

        writes = [
            UpdateDoc(
                GROUP_INVITATIONS,
                invitation_id,
                {"status": next_status, "resolved_at": _utc_now(), "pending_key": None},
                precondition={"status": PENDING},
            )
        ]
        if accept:
            if await self._store.get(GROUPS, invitation.group_id) is None:
                raise NotFound("Group no longer exists")
            # Set union, so a repeated or concurrent accept cannot duplicate the member.
            writes.insert(
                0,
                ArrayUnion(GROUPS, invitation.group_id, "member_ids", (invitation.invitee_id,)),
            )
        try:
            await self._store.commit(writes)
        except PreconditionFailed as exc:
            raise InvalidTransition(current_status=exc.current.get("status")) from exc
        logger.info(
            "Invitation %s to group %s %s by %s",
            invitation_id,
            invitation.group_id,
            next_status,
            acting_user_id,
        )
        return await self.get_invitation(invitation_id)

    async def remove_member(self, group_id: str, user_id: str, acting_user_id: str) -> GroupRead:
        group = await self.get_group(group_id)
        if group.creator_id != acting_user_id:
            raise Unauthorized("Only the group creator can remove members")
        if user_id == group.creator_id:
            raise CannotRemoveCreator()
        if not group.has_member(user_id):
            raise NotFound("User is not a member of this group")
        await self._store.array_remove(GROUPS, group_id, "member_ids", user_id)
        logger.info("User %s removed from group %s by %s", user_id, group_id, acting_user_id)
        return await self.get_group(group_id)

    async def leave_group(self, group_id: str, user_id: str) -> None:
        group = await self.get_group(group_id)
        if user_id == group.creator_id:
            raise CannotLeaveAsCreator()
        if not group.has_member(user_id):
            raise NotFound("User is not a member of this group")
        await self._store.array_remove(GROUPS, group_id, "member_ids", user_id)
        logger.info("User %s left group %s", user_id, group_id)

    async def delete_group(self, group_id: str, acting_user_id: str) -> GroupDeletionRead:
        group = await self.get_group(group_id)
        if group.creator_id != acting_user_id:
            raise Unauthorized("Only the group creator can delete the group")
        invitations = await self._store.query(GROUP_INVITATIONS, [where("group_id", group_id)])
        await self._store.delete(GROUPS, group_id)
        logger.info("Group %s deleted by %s", group_id, acting_user_id)

        # Stores with a cascade have already dropped some or all of these.
        try:
            remaining = await self._store.query(GROUP_INVITATIONS, [where("group_id", group_id)])
        except RemoteUnavailable:
            logger.warning("Could not list invitations of deleted group %s", group_id)
            remaining = invitations
        orphaned: list[str] = []
        for document in remaining:
            try:
                await self._store.delete(GROUP_INVITATIONS, document.id)
            except RemoteUnavailable:
                orphaned.append(document.id)
        if orphaned:
            logger.warning(
                "Group %s deleted but %s invitation(s) could not be removed",
                group_id,
                len(orphaned),
            )
        return GroupDeletionRead(
            group_id=group_id,
            removed_invitations=len(invitations) - len(orphaned),
            orphaned_invitation_ids=orphaned,
        )

    async def list_groups(self, user_id: str) -> list[GroupRead]:
        documents = await self._store.query(
            GROUPS,
            [array_contains("member_ids", user_id)],
            order_by="created_at",
        )
        return [_to_group(document) for document in documents]

    async def list_group_members(self, group_id: str) -> list[UserRead]:
        group = await self.get_group(group_id)
        return await self._identity.lookup_by_ids(group.member_ids)

    async def list_pending_invitations(self, user_id: str) -> list[GroupInvitationRead]:
        documents = await self._store.query(
            GROUP_INVITATIONS,
            [where("invitee_id", user_id), where("status", PENDING)],
            order_by="-created_at",
        )
        invitations = [_to_invitation(document) for document in documents]
        live_groups = await self._store.get_many(GROUPS, {item.group_id for item in invitations})
        return drop_orphaned_invitations(invitations, (group.id for group in live_groups))

    async def list_group_invitations(self, group_id: str) -> list[GroupInvitationRead]:
        documents = await self._store.query(
            GROUP_INVITATIONS,
            [where("group_id", group_id), where("status", PENDING)],
        )
        return [_to_invitation(document) for document in documents]

    async def list_available_invitees_for_group(
        self,
        group_id: str,
        candidate_friends: Iterable[UserRead],
    ) -> list[UserRead]:
        group = await self.get_group(group_id)
        pending = await self.list_group_invitations(group_id)
        return available_invitees(group, candidate_friends, pending)
