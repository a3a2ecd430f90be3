import asyncio
import unittest

import fakeredis
from fakeredis import aioredis

from app.core.errors import CannotLeaveAsCreator, InvalidTransition, NotFound
from app.realtime.change_feed import GROUPS_VIEW
from app.services.social_graph import SocialGraph
from app.store.local_store import LocalDocumentStore
from app.store.memory import InMemoryDocumentStore
from app.store.redis_store import RedisDocumentStore


class _RentFlow:
    """Shared scenario, run once per store backend."""

    def build_store(self):
        raise NotImplementedError

    async def asyncSetUp(self) -> None:
        self.graph = SocialGraph(self.build_store())
        await self.graph.start()
        self.u1 = await self.graph.identity.register_user("u_one", "User One")
        self.u2 = await self.graph.identity.register_user("u_two", "User Two")

    async def asyncTearDown(self) -> None:
        await self.graph.close()

    async def _wait_for_groups(self, feed, names: list[str]) -> None:
        # Remote changes reach the feed through the store's change reader.
        for _ in range(200):
            await feed.settle()
            if [item.name for item in feed.view(GROUPS_VIEW)] == names:
                return
            await asyncio.sleep(0.01)
        self.assertEqual([item.name for item in feed.view(GROUPS_VIEW)], names)

    async def test_rent_group_lifecycle(self) -> None:
        feed = self.graph.open_feed()
        await feed.bind(self.u2.id)

        group = await self.graph.create_group(self.u1.id, "Rent")
        self.assertEqual(group.member_ids, [self.u1.id])

        invitation_id = await self.graph.invite_to_group(self.u1.id, self.u2.id, group.id)
        pending = await self.graph.membership.list_pending_invitations(self.u2.id)
        self.assertEqual([item.id for item in pending], [invitation_id])

        accepted = await self.graph.respond_to_invitation(invitation_id, self.u2.id, accept=True)
        self.assertEqual(accepted.status, "accepted")
        current = await self.graph.membership.get_group(group.id)
        self.assertEqual(set(current.member_ids), {self.u1.id, self.u2.id})
        await self._wait_for_groups(feed, ["Rent"])

        with self.assertRaises(CannotLeaveAsCreator):
            await self.graph.leave_group(group.id, self.u1.id)

        await self.graph.delete_group(group.id, self.u1.id)
        self.assertEqual(await self.graph.membership.list_groups(self.u2.id), [])
        await self._wait_for_groups(feed, [])
        await self.graph.release_feed(feed)

    async def test_friendship_then_invitees(self) -> None:
        request_id = await self.graph.send_friend_request(self.u1.id, "u_two")
        await self.graph.respond_to_friend_request(request_id, self.u2.id, accept=True)
        self.assertEqual([user.id for user in await self.graph.list_friends(self.u2.id)], [self.u1.id])

        group = await self.graph.create_group(self.u1.id, "Rent")
        with self.assertRaises(NotFound):
            await self.graph.list_available_invitees_for_group(group.id, self.u2.id)
        available = await self.graph.list_available_invitees_for_group(group.id, self.u1.id)
        self.assertEqual([user.id for user in available], [self.u2.id])

        await self.graph.invite_to_group(self.u1.id, self.u2.id, group.id)
        self.assertEqual(await self.graph.list_available_invitees_for_group(group.id, self.u1.id), [])

    async def test_declines_are_terminal(self) -> None:
        request_id = await self.graph.send_friend_request(self.u1.id, "u_two")
        await self.graph.respond_to_friend_request(request_id, self.u2.id, accept=False)
        with self.assertRaises(InvalidTransition):
            await self.graph.respond_to_friend_request(request_id, self.u2.id, accept=True)

        group = await self.graph.create_group(self.u1.id, "Rent")
        invitation_id = await self.graph.invite_to_group(self.u1.id, self.u2.id, group.id)
        await self.graph.respond_to_invitation(invitation_id, self.u2.id, accept=False)
        with self.assertRaises(InvalidTransition):
            await self.graph.respond_to_invitation(invitation_id, self.u2.id, accept=True)


class MemoryStoreRentFlowTests(_RentFlow, unittest.IsolatedAsyncioTestCase):
    def build_store(self):
        return InMemoryDocumentStore()


class LocalStoreRentFlowTests(_RentFlow, unittest.IsolatedAsyncioTestCase):
    def build_store(self):
        return LocalDocumentStore.from_url("sqlite://")


class RedisStoreRentFlowTests(_RentFlow, unittest.IsolatedAsyncioTestCase):
    def build_store(self):
        client = aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
        return RedisDocumentStore("redis://fake:6379/0", prefix="test", client=client)


if __name__ == "__main__":
    unittest.main()
