import asyncio
import unittest
from unittest.mock import patch

import fakeredis
from fakeredis import aioredis
from redis.exceptions import ConnectionError as RedisConnectionError

from app.core.errors import DuplicateKey, RemoteUnavailable
from app.store.base import (
    FRIEND_REQUESTS,
    GROUP_INVITATIONS,
    GROUPS,
    USERS,
    ArrayUnion,
    PreconditionFailed,
    UpdateDoc,
    array_contains,
)
from app.store.redis_store import RedisDocumentStore

PENDING_BODY = {"sender_id": "a", "receiver_id": "b", "status": "pending", "pending_key": "a:b"}


class RedisDocumentStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.server = fakeredis.FakeServer()
        self.client = aioredis.FakeRedis(server=self.server, decode_responses=True)
        self.store = self._store(self.client)
        await self.store.connect()

    async def asyncTearDown(self) -> None:
        await self.store.close()

    def _store(self, client) -> RedisDocumentStore:
        return RedisDocumentStore("redis://fake:6379/0", prefix="test", client=client)

    async def _eventually(self, predicate) -> None:
        for _ in range(200):
            if predicate():
                return
            await asyncio.sleep(0.01)
        self.fail("condition not reached")

    async def test_pending_key_is_unique_until_cleared(self) -> None:
        first = await self.store.add(FRIEND_REQUESTS, PENDING_BODY)
        with self.assertRaises(DuplicateKey):
            await self.store.add(FRIEND_REQUESTS, PENDING_BODY)
        await self.store.update(FRIEND_REQUESTS, first.id, {"status": "declined", "pending_key": None})
        self.assertIsNone(await self.client.hget("test:unique:friend_requests:pending_key", "a:b"))
        second = await self.store.add(FRIEND_REQUESTS, PENDING_BODY)
        self.assertEqual(
            await self.client.hget("test:unique:friend_requests:pending_key", "a:b"),
            second.id,
        )

    async def test_deleting_a_document_releases_its_unique_values(self) -> None:
        user = await self.store.add(USERS, {"username": "ana", "display_name": "Ana"})
        await self.store.delete(USERS, user.id)
        again = await self.store.add(USERS, {"username": "ana", "display_name": "Ana"})
        self.assertEqual((await self.store.get(USERS, again.id)).get("username"), "ana")

    async def test_failed_add_claims_nothing(self) -> None:
        with patch.object(self.client, "pipeline", side_effect=RedisConnectionError("down")):
            with self.assertRaises(RemoteUnavailable):
                await self.store.add(FRIEND_REQUESTS, PENDING_BODY)
        self.assertEqual(await self.client.hgetall("test:unique:friend_requests:pending_key"), {})
        self.assertEqual(await self.store.query(FRIEND_REQUESTS), [])
        await self.store.add(FRIEND_REQUESTS, PENDING_BODY)

    async def test_concurrent_adds_of_one_pending_key_keep_one(self) -> None:
        results = await asyncio.gather(
            *(self.store.add(FRIEND_REQUESTS, PENDING_BODY) for _ in range(4)),
            return_exceptions=True,
        )
        self.assertEqual(sum(isinstance(item, DuplicateKey) for item in results), 3)
        self.assertEqual(len(await self.store.query(FRIEND_REQUESTS)), 1)

    async def test_batch_rolls_back_when_a_precondition_fails(self) -> None:
        group = await self.store.add(GROUPS, {"name": "Rent", "creator_id": "u1", "member_ids": ["u1"]})
        invitation = await self.store.add(
            GROUP_INVITATIONS,
            {"group_id": group.id, "inviter_id": "u1", "invitee_id": "u2", "status": "declined"},
        )
        with self.assertRaises(PreconditionFailed):
            await self.store.commit(
                [
                    ArrayUnion(GROUPS, group.id, "member_ids", ("u2",)),
                    UpdateDoc(
                        GROUP_INVITATIONS,
                        invitation.id,
                        {"status": "accepted"},
                        precondition={"status": "pending"},
                    ),
                ]
            )
        self.assertEqual((await self.store.get(GROUPS, group.id)).get("member_ids"), ["u1"])
        self.assertEqual((await self.store.get(GROUP_INVITATIONS, invitation.id)).get("status"), "declined")

    async def test_subscriptions_follow_writes_from_other_processes(self) -> None:
        snapshots = []
        subscription = await self.store.subscribe(
            GROUPS,
            [array_contains("member_ids", "u2")],
            snapshots.append,
        )
        self.assertEqual(len(snapshots), 1)

        other = self._store(aioredis.FakeRedis(server=self.server, decode_responses=True))
        await other.connect()
        group = await other.add(GROUPS, {"name": "Rent", "creator_id": "u1", "member_ids": ["u1"]})
        await other.array_union(GROUPS, group.id, "member_ids", "u2")
        await self._eventually(lambda: len(snapshots) == 2)
        self.assertEqual([doc.id for doc in snapshots[1].documents], [group.id])

        subscription.close()
        await other.array_remove(GROUPS, group.id, "member_ids", "u2")
        await asyncio.sleep(0.05)
        self.assertEqual(len(snapshots), 2)
        await other.close()


if __name__ == "__main__":
    unittest.main()
