"""Shared lifecycle for friend requests and group invitations.

pending -> accepted | declined, nothing leaves a terminal state, and only
the recipient may make the move.
"""

from app.core.errors import InvalidTransition

PENDING = "pending"
ACCEPTED = "accepted"
DECLINED = "declined"

TERMINAL_STATUSES = frozenset({ACCEPTED, DECLINED})


def settle_status(current: str, accept: bool) -> str:
    if current != PENDING:
        raise InvalidTransition(current_status=current)
    return ACCEPTED if accept else DECLINED


def friend_pair_key(user_a_id: str, user_b_id: str) -> str:
    """Direction-free key for the one pending request a pair may hold."""
    first, second = sorted((user_a_id, user_b_id))
    return f"{first}:{second}"


def invitation_key(group_id: str, invitee_id: str) -> str:
    return f"{group_id}:{invitee_id}"
