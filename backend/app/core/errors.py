"""Typed failures returned by the ledgers and stores.

Every error carries the HTTP status the API layer reports and a stable
``code`` string the realtime layer forwards to clients.
"""


class SocialGraphError(Exception):
    status_code = 400
    code = "error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message())

    @classmethod
    def default_message(cls) -> str:
        return cls.__name__

    @property
    def message(self) -> str:
        return str(self)


class NotFound(SocialGraphError):
    status_code = 404
    code = "not_found"


class UserNotFound(NotFound):
    code = "user_not_found"

    @classmethod
    def default_message(cls) -> str:
        return "User not found"


class Unauthorized(SocialGraphError):
    status_code = 403
    code = "unauthorized"


class InvalidTransition(SocialGraphError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, message: str | None = None, *, current_status: str | None = None) -> None:
        self.current_status = current_status
        if message is None and current_status:
            message = f"Already {current_status}"
        super().__init__(message)


class DuplicatePending(SocialGraphError):
    status_code = 409
    code = "duplicate_pending"


class AlreadyMember(SocialGraphError):
    status_code = 409
    code = "already_member"

    @classmethod
    def default_message(cls) -> str:
        return "User is already a member of this group"


class AlreadyFriends(SocialGraphError):
    status_code = 409
    code = "already_friends"

    @classmethod
    def default_message(cls) -> str:
        return "Already friends"


class InvalidInput(SocialGraphError):
    status_code = 422
    code = "invalid_input"


class InvalidName(InvalidInput):
    code = "invalid_name"

    @classmethod
    def default_message(cls) -> str:
        return "Name cannot be empty"


class SelfReferential(InvalidInput):
    code = "self_referential"

    @classmethod
    def default_message(cls) -> str:
        return "Cannot send a friend request to yourself"


class CannotRemoveCreator(SocialGraphError):
    status_code = 409
    code = "cannot_remove_creator"

    @classmethod
    def default_message(cls) -> str:
        return "The group creator cannot be removed; delete the group instead"


class CannotLeaveAsCreator(SocialGraphError):
    status_code = 409
    code = "cannot_leave_as_creator"

    @classmethod
    def default_message(cls) -> str:
        return "The group creator cannot leave; delete the group instead"


class RemoteUnavailable(SocialGraphError):
    status_code = 503
    code = "remote_unavailable"

    @classmethod
    def default_message(cls) -> str:
        return "Remote store unavailable"


class DuplicateKey(SocialGraphError):
    """Raised by a store when a unique field value is already taken."""

    status_code = 409
    code = "duplicate_key"

    def __init__(self, collection: str, field: str, value: object) -> None:
        self.collection = collection
        self.field = field
        self.value = value
        super().__init__(f"{collection}.{field} already holds {value!r}")
