import unittest
from datetime import datetime, timezone

from app.core.errors import DuplicateKey, NotFound
from app.store.base import (
    FRIEND_REQUESTS,
    GROUP_INVITATIONS,
    GROUPS,
    USERS,
    ArrayUnion,
    PreconditionFailed,
    UpdateDoc,
    array_contains,
    where,
)
from app.store.local_store import LocalDocumentStore


class LocalDocumentStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.store = LocalDocumentStore.from_url("sqlite://")
        await self.store.connect()

    async def asyncTearDown(self) -> None:
        await self.store.close()

    async def _user(self, username: str) -> str:
        document = await self.store.add(USERS, {"username": username, "display_name": username.title()})
        return document.id

    async def test_add_and_get_round_trip_keeps_aware_datetimes(self) -> None:
        user_id = await self._user("ana")
        document = await self.store.get(USERS, user_id)
        self.assertEqual(document.get("username"), "ana")
        self.assertIsNotNone(document.get("created_at").tzinfo)
        self.assertIsNone(await self.store.get(USERS, "missing"))

    async def test_unique_username_is_enforced(self) -> None:
        await self._user("ana")
        with self.assertRaises(DuplicateKey):
            await self._user("ana")

    async def test_pending_key_is_unique_until_cleared(self) -> None:
        body = {"sender_id": "a", "receiver_id": "b", "status": "pending", "pending_key": "a:b"}
        first = await self.store.add(FRIEND_REQUESTS, body)
        with self.assertRaises(DuplicateKey):
            await self.store.add(FRIEND_REQUESTS, body)
        await self.store.update(FRIEND_REQUESTS, first.id, {"status": "declined", "pending_key": None})
        await self.store.add(FRIEND_REQUESTS, body)

    async def test_equality_filters_and_ordering(self) -> None:
        for receiver, status in (("b", "pending"), ("c", "pending"), ("d", "accepted")):
            await self.store.add(
                FRIEND_REQUESTS,
                {"sender_id": "a", "receiver_id": receiver, "status": status},
            )
        pending = await self.store.query(
            FRIEND_REQUESTS,
            [where("sender_id", "a"), where("status", "pending")],
            order_by="-receiver_id",
        )
        self.assertEqual([doc.get("receiver_id") for doc in pending], ["c", "b"])

    async def test_member_ids_live_in_the_membership_table(self) -> None:
        group = await self.store.add(GROUPS, {"name": "Rent", "creator_id": "u1", "member_ids": ["u1"]})
        await self.store.array_union(GROUPS, group.id, "member_ids", "u2", "u1")
        await self.store.array_union(GROUPS, group.id, "member_ids", "u2")
        self.assertEqual((await self.store.get(GROUPS, group.id)).get("member_ids"), ["u1", "u2"])

        found = await self.store.query(GROUPS, [array_contains("member_ids", "u2")])
        self.assertEqual([doc.id for doc in found], [group.id])

        await self.store.array_remove(GROUPS, group.id, "member_ids", "u2")
        self.assertEqual(await self.store.query(GROUPS, [array_contains("member_ids", "u2")]), [])

    async def test_deleting_a_group_cascades_to_invitations(self) -> None:
        group = await self.store.add(GROUPS, {"name": "Rent", "creator_id": "u1", "member_ids": ["u1"]})
        await self.store.add(
            GROUP_INVITATIONS,
            {
                "group_id": group.id,
                "inviter_id": "u1",
                "invitee_id": "u2",
                "status": "pending",
                "pending_key": f"{group.id}:u2",
            },
        )
        await self.store.delete(GROUPS, group.id)
        self.assertIsNone(await self.store.get(GROUPS, group.id))
        self.assertEqual(await self.store.query(GROUP_INVITATIONS), [])

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

    async def test_update_of_missing_document_is_not_found(self) -> None:
        with self.assertRaises(NotFound):
            await self.store.update(USERS, "missing", {"display_name": "x"})

    async def test_subscriptions_see_commits_and_stop_after_close(self) -> None:
        snapshots = []
        subscription = await self.store.subscribe(
            GROUPS,
            [array_contains("member_ids", "u2")],
            snapshots.append,
        )
        self.assertEqual(len(snapshots), 1)
        self.assertEqual(snapshots[0].documents, [])

        group = await self.store.add(GROUPS, {"name": "Rent", "creator_id": "u1", "member_ids": ["u1"]})
        self.assertEqual(len(snapshots), 1)
        await self.store.array_union(GROUPS, group.id, "member_ids", "u2")
        self.assertEqual(len(snapshots), 2)
        self.assertEqual([change.type.value for change in snapshots[1].changes], ["added"])

        subscription.close()
        subscription.close()
        await self.store.array_remove(GROUPS, group.id, "member_ids", "u2")
        self.assertEqual(len(snapshots), 2)

    async def test_invitation_listeners_hear_cascaded_deletes(self) -> None:
        group = await self.store.add(GROUPS, {"name": "Rent", "creator_id": "u1", "member_ids": ["u1"]})
        await self.store.add(
            GROUP_INVITATIONS,
            {"group_id": group.id, "inviter_id": "u1", "invitee_id": "u2", "status": "pending"},
        )
        snapshots = []
        await self.store.subscribe(GROUP_INVITATIONS, [where("invitee_id", "u2")], snapshots.append)
        await self.store.delete(GROUPS, group.id)
        self.assertEqual(len(snapshots), 2)
        self.assertEqual(snapshots[-1].documents, [])

    async def test_timestamps_are_stored_as_given(self) -> None:
        moment = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        document = await self.store.add(USERS, {"username": "ana", "display_name": "Ana", "created_at": moment})
        self.assertEqual((await self.store.get(USERS, document.id)).get("created_at"), moment)


if __name__ == "__main__":
    unittest.main()
