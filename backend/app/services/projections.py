"""Pure views derived from ledger documents.

Nothing here reads or writes a store; callers pass in what they already
hold, which lets the change feed and the ledgers share the same rules.
"""

from collections.abc import Iterable

from app.schemas.groups import GroupInvitationRead, GroupRead
from app.schemas.profile import UserRead
from app.schemas.social import FriendRequestRead
from app.services.request_lifecycle import ACCEPTED, PENDING


def friend_ids(requests: Iterable[FriendRequestRead], user_id: str) -> set[str]:
    """Ids of everyone joined to ``user_id`` by an accepted request, either direction."""
    ids: set[str] = set()
    for request in requests:
        if request.status != ACCEPTED:
            continue
        if request.sender_id == user_id:
            ids.add(request.receiver_id)
        elif request.receiver_id == user_id:
            ids.add(request.sender_id)
    ids.discard(user_id)
    return ids


def available_invitees(
    group: GroupRead,
    candidate_friends: Iterable[UserRead],
    invitations: Iterable[GroupInvitationRead],
) -> list[UserRead]:
    pending_invitee_ids = {
        invitation.invitee_id
        for invitation in invitations
        if invitation.group_id == group.id and invitation.status == PENDING
    }
    members = set(group.member_ids)
    seen: set[str] = set()
    available: list[UserRead] = []
    for friend in candidate_friends:
        if friend.id in members or friend.id in pending_invitee_ids or friend.id in seen:
            continue
        seen.add(friend.id)
        available.append(friend)
    return available


def drop_orphaned_invitations(
    invitations: Iterable[GroupInvitationRead],
    live_group_ids: Iterable[str],
) -> list[GroupInvitationRead]:
    # A group deleted while some of its invitations survived leaves those
    # invitations pointing nowhere.
    live = set(live_group_ids)
    return [invitation for invitation in invitations if invitation.group_id in live]


def sort_users(users: Iterable[UserRead]) -> list[UserRead]:
    return sorted(users, key=lambda user: (user.display_name.lower(), user.username))
