import asyncio
import unittest
from unittest.mock import patch

import fakeredis
from fakeredis import aioredis
from redis.exceptions import ConnectionError as RedisConnectionError

from app.core.errors import (
    AlreadyMember,
    CannotLeaveAsCreator,
    CannotRemoveCreator,
    DuplicatePending,
    InvalidInput,
    InvalidName,
    InvalidTransition,
    NotFound,
    RemoteUnavailable,
    Unauthorized,
)
from app.services.identity_service import IdentityService
from app.services.membership_service import MembershipService
from app.services.relationship_service import RelationshipService
from app.store.base import GROUP_INVITATIONS, GROUPS
from app.store.local_store import LocalDocumentStore
from app.store.memory import InMemoryDocumentStore
from app.store.redis_store import RedisDocumentStore


class _MembershipLedger:
    """Ledger rules that must hold on every store backend."""

    def build_store(self):
        raise NotImplementedError

    async def asyncSetUp(self) -> None:
        self.store = self.build_store()
        await self.store.connect()
        self.identity = IdentityService(self.store)
        self.ledger = MembershipService(self.store, self.identity)
        self.ana = await self.identity.register_user("ana", "Ana")
        self.ben = await self.identity.register_user("ben", "Ben")
        self.cid = await self.identity.register_user("cid", "Cid")

    async def asyncTearDown(self) -> None:
        await self.store.close()

    async def _group_with_ben(self, name: str = "Trip"):
        group = await self.ledger.create_group(self.ana.id, name)
        invitation_id = await self.ledger.invite_to_group(self.ana.id, self.ben.id, group.id)
        await self.ledger.respond_to_invitation(invitation_id, self.ben.id, accept=True)
        return group

    async def test_new_group_holds_only_its_creator(self) -> None:
        group = await self.ledger.create_group(self.ana.id, "  Trip  ")
        self.assertEqual(group.name, "Trip")
        self.assertEqual(group.member_ids, [self.ana.id])
        self.assertEqual([item.id for item in await self.ledger.list_groups(self.ana.id)], [group.id])

    async def test_group_names_are_validated(self) -> None:
        with self.assertRaises(InvalidName):
            await self.ledger.create_group(self.ana.id, "   ")
        with self.assertRaises(InvalidInput):
            await self.ledger.create_group(self.ana.id, "x" * 200)

    async def test_only_the_creator_can_delete(self) -> None:
        group = await self._group_with_ben()
        with self.assertRaises(Unauthorized):
            await self.ledger.delete_group(group.id, self.ben.id)
        current = await self.ledger.get_group(group.id)
        self.assertEqual(current.member_ids, [self.ana.id, self.ben.id])

    async def test_inviting_a_member_fails(self) -> None:
        group = await self.ledger.create_group(self.ana.id, "Trip")
        with self.assertRaises(AlreadyMember):
            await self.ledger.invite_to_group(self.ana.id, self.ana.id, group.id)

    async def test_second_pending_invitation_fails(self) -> None:
        group = await self.ledger.create_group(self.ana.id, "Trip")
        await self.ledger.invite_to_group(self.ana.id, self.ben.id, group.id)
        with self.assertRaises(DuplicatePending):
            await self.ledger.invite_to_group(self.ana.id, self.ben.id, group.id)

    async def test_non_members_cannot_invite(self) -> None:
        group = await self.ledger.create_group(self.ana.id, "Trip")
        with self.assertRaises(Unauthorized):
            await self.ledger.invite_to_group(self.cid.id, self.ben.id, group.id)
        with self.assertRaises(NotFound):
            await self.ledger.invite_to_group(self.ana.id, self.ben.id, "missing")

    async def test_only_the_invitee_may_respond(self) -> None:
        group = await self.ledger.create_group(self.ana.id, "Trip")
        invitation_id = await self.ledger.invite_to_group(self.ana.id, self.ben.id, group.id)
        with self.assertRaises(Unauthorized):
            await self.ledger.respond_to_invitation(invitation_id, self.ana.id, accept=True)

    async def test_declined_invitation_is_terminal(self) -> None:
        group = await self.ledger.create_group(self.ana.id, "Trip")
        invitation_id = await self.ledger.invite_to_group(self.ana.id, self.ben.id, group.id)
        declined = await self.ledger.respond_to_invitation(invitation_id, self.ben.id, accept=False)
        self.assertEqual(declined.status, "declined")
        with self.assertRaises(InvalidTransition):
            await self.ledger.respond_to_invitation(invitation_id, self.ben.id, accept=True)
        self.assertEqual((await self.ledger.get_group(group.id)).member_ids, [self.ana.id])

    async def test_concurrent_accepts_add_the_member_once(self) -> None:
        group = await self.ledger.create_group(self.ana.id, "Trip")
        invitation_id = await self.ledger.invite_to_group(self.ana.id, self.ben.id, group.id)
        results = await asyncio.gather(
            self.ledger.respond_to_invitation(invitation_id, self.ben.id, accept=True),
            self.ledger.respond_to_invitation(invitation_id, self.ben.id, accept=True),
            return_exceptions=True,
        )
        self.assertEqual(sum(isinstance(item, InvalidTransition) for item in results), 1)
        self.assertEqual((await self.ledger.get_group(group.id)).member_ids, [self.ana.id, self.ben.id])

    async def test_membership_union_is_idempotent(self) -> None:
        group = await self._group_with_ben()
        await self.store.array_union(GROUPS, group.id, "member_ids", self.ben.id)
        await self.store.array_union(GROUPS, group.id, "member_ids", self.ben.id)
        self.assertEqual((await self.ledger.get_group(group.id)).member_ids, [self.ana.id, self.ben.id])

    async def test_accepting_after_group_deletion_is_not_found(self) -> None:
        group = await self.ledger.create_group(self.ana.id, "Trip")
        invitation_id = await self.ledger.invite_to_group(self.ana.id, self.ben.id, group.id)
        await self.store.delete(GROUPS, group.id)
        with self.assertRaises(NotFound):
            await self.ledger.respond_to_invitation(invitation_id, self.ben.id, accept=True)

    async def test_creator_rules_for_removal_and_leaving(self) -> None:
        group = await self._group_with_ben()
        with self.assertRaises(Unauthorized):
            await self.ledger.remove_member(group.id, self.ana.id, self.ben.id)
        with self.assertRaises(CannotRemoveCreator):
            await self.ledger.remove_member(group.id, self.ana.id, self.ana.id)
        with self.assertRaises(CannotLeaveAsCreator):
            await self.ledger.leave_group(group.id, self.ana.id)
        with self.assertRaises(NotFound):
            await self.ledger.remove_member(group.id, self.cid.id, self.ana.id)

        updated = await self.ledger.remove_member(group.id, self.ben.id, self.ana.id)
        self.assertEqual(updated.member_ids, [self.ana.id])

    async def test_member_can_leave(self) -> None:
        group = await self._group_with_ben()
        await self.ledger.leave_group(group.id, self.ben.id)
        self.assertEqual(await self.ledger.list_groups(self.ben.id), [])
        with self.assertRaises(NotFound):
            await self.ledger.leave_group(group.id, self.ben.id)

    async def test_rename_is_creator_only(self) -> None:
        group = await self._group_with_ben()
        with self.assertRaises(Unauthorized):
            await self.ledger.rename_group(group.id, self.ben.id, "Mine")
        renamed = await self.ledger.rename_group(group.id, self.ana.id, " Rent ")
        self.assertEqual(renamed.name, "Rent")

    async def test_delete_removes_group_and_invitations(self) -> None:
        group = await self.ledger.create_group(self.ana.id, "Trip")
        await self.ledger.invite_to_group(self.ana.id, self.ben.id, group.id)
        await self.ledger.invite_to_group(self.ana.id, self.cid.id, group.id)
        result = await self.ledger.delete_group(group.id, self.ana.id)
        self.assertEqual(result.removed_invitations, 2)
        self.assertEqual(result.orphaned_invitation_ids, [])
        self.assertIsNone(await self.store.get(GROUPS, group.id))
        self.assertEqual(await self.store.query(GROUP_INVITATIONS), [])

    async def test_available_invitees_exclude_members_and_pending(self) -> None:
        relationships = RelationshipService(self.store, self.identity)
        dee = await self.identity.register_user("dee", "Dee")
        for friend in (self.ben, self.cid, dee):
            request_id = await relationships.send_friend_request(self.ana.id, friend.username)
            await relationships.respond_to_friend_request(request_id, friend.id, accept=True)
        group = await self._group_with_ben()
        await self.ledger.invite_to_group(self.ana.id, self.cid.id, group.id)

        friends = await relationships.list_friends(self.ana.id)
        available = await self.ledger.list_available_invitees_for_group(group.id, friends)
        self.assertEqual([user.id for user in available], [dee.id])

    async def test_group_members_resolve_to_users(self) -> None:
        group = await self._group_with_ben()
        members = await self.ledger.list_group_members(group.id)
        self.assertEqual([user.username for user in members], ["ana", "ben"])


class MemoryStoreMembershipLedgerTests(_MembershipLedger, unittest.IsolatedAsyncioTestCase):
    def build_store(self):
        return InMemoryDocumentStore()

    async def test_partial_cascade_leaves_orphans_that_listings_hide(self) -> None:
        group = await self.ledger.create_group(self.ana.id, "Trip")
        invitation_id = await self.ledger.invite_to_group(self.ana.id, self.ben.id, group.id)
        self.store.fail_writes_to(GROUP_INVITATIONS)
        with self.assertLogs("app.services.membership_service", level="WARNING"):
            result = await self.ledger.delete_group(group.id, self.ana.id)
        self.store.restore_writes()

        self.assertEqual(result.orphaned_invitation_ids, [invitation_id])
        self.assertIsNotNone(await self.store.get(GROUP_INVITATIONS, invitation_id))
        self.assertEqual(await self.ledger.list_pending_invitations(self.ben.id), [])


class LocalStoreMembershipLedgerTests(_MembershipLedger, unittest.IsolatedAsyncioTestCase):
    def build_store(self):
        return LocalDocumentStore.from_url("sqlite://")


class RedisStoreMembershipLedgerTests(_MembershipLedger, unittest.IsolatedAsyncioTestCase):
    def build_store(self):
        client = aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
        return RedisDocumentStore("redis://fake:6379/0", prefix="test", client=client)

    async def test_failed_invite_leaves_the_invitee_free(self) -> None:
        group = await self.ledger.create_group(self.ana.id, "Trip")
        with patch.object(self.store._client, "pipeline", side_effect=RedisConnectionError("down")):
            with self.assertRaises(RemoteUnavailable):
                await self.ledger.invite_to_group(self.ana.id, self.ben.id, group.id)
        invitation_id = await self.ledger.invite_to_group(self.ana.id, self.ben.id, group.id)
        pending = await self.ledger.list_pending_invitations(self.ben.id)
        self.assertEqual([item.id for item in pending], [invitation_id])


if __name__ == "__main__":
    unittest.main()
