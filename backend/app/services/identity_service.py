import logging
import re
from collections.abc import Iterable
from datetime import datetime, timezone

from email_validator import EmailNotValidError, validate_email

from app.core.config import get_settings
from app.core.errors import DuplicateKey, InvalidInput, Unauthorized, UserNotFound
from app.schemas.profile import UserRead
from app.services.projections import sort_users
from app.store.base import USERS, DocumentStore, Document, where

logger = logging.getLogger(__name__)

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")

EDITABLE_FIELDS = ("username", "display_name", "email", "phone_number")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_user(document: Document) -> UserRead:
    return UserRead.model_validate(document.to_dict())


def is_valid_username(username: str) -> bool:
    settings = get_settings()
    return (
        settings.username_min_length <= len(username) <= settings.username_max_length
        and bool(USERNAME_PATTERN.match(username))
    )


def is_valid_phone_number(phone_number: str) -> bool:
    return bool(PHONE_PATTERN.match(phone_number))


def is_valid_email(email: str) -> bool:
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


class IdentityService:
    """Authoritative user records: lookups, registration and profile edits."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def get_user(self, user_id: str) -> UserRead:
        document = await self._store.get(USERS, user_id)
        if document is None:
            raise UserNotFound()
        return _to_user(document)

    async def lookup_by_username(self, username: str) -> UserRead:
        return await self._lookup_one("username", username)

    async def lookup_by_phone(self, phone_number: str) -> UserRead:
        return await self._lookup_one("phone_number", phone_number)

    async def lookup_by_email(self, email: str) -> UserRead:
        return await self._lookup_one("email", email)

    async def lookup_by_ids(self, ids: Iterable[str]) -> list[UserRead]:
        documents = await self._store.get_many(USERS, ids)
        return [_to_user(document) for document in documents]

    async def _lookup_one(self, field_name: str, value: str) -> UserRead:
        if not value:
            raise UserNotFound()
        documents = await self._store.query(USERS, [where(field_name, value)])
        if not documents:
            raise UserNotFound()
        return _to_user(documents[0])

    async def search_users(self, text: str, exclude_user_id: str | None = None) -> list[UserRead]:
        # Substring matching has no store-side index, so this filters a full
        # listing. Fine for small user bases only.
        needle = text.strip().lower()
        if not needle:
            return []
        documents = await self._store.query(USERS, order_by="username")
        matches = [
            _to_user(document)
            for document in documents
            if needle in str(document.get("username", "")).lower() and document.id != exclude_user_id
        ]
        return matches[: get_settings().user_search_limit]

    async def register_user(
        self,
        username: str,
        display_name: str,
        email: str | None = None,
        phone_number: str | None = None,
    ) -> UserRead:
        username = username.strip()
        display_name = display_name.strip()
        self._validate(username=username, display_name=display_name, email=email, phone_number=phone_number)
        now = _utc_now()
        try:
            document = await self._store.add(
                USERS,
                {
                    "username": username,
                    "display_name": display_name,
                    "email": email or None,
                    "phone_number": phone_number or None,
                    "created_at": now,
                    "last_seen": now,
                },
            )
        except DuplicateKey as exc:
            raise InvalidInput("Username already exists") from exc
        logger.info("Registered user %s (%s)", document.id, username)
        return _to_user(document)

    async def update_profile(self, user_id: str, acting_user_id: str, **fields) -> UserRead:
        if user_id != acting_user_id:
            raise Unauthorized("Profiles can only be edited by their owner")
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise InvalidInput(f"Cannot edit {', '.join(sorted(unknown))}")
        await self.get_user(user_id)

        updates = {key: value for key, value in fields.items() if value is not None}
        if "username" in updates:
            updates["username"] = updates["username"].strip()
        if "display_name" in updates:
            updates["display_name"] = updates["display_name"].strip()
        self._validate(**updates)
        updates["last_seen"] = _utc_now()
        try:
            document = await self._store.update(USERS, user_id, updates)
        except DuplicateKey as exc:
            raise InvalidInput("Username already exists") from exc
        return _to_user(document)

    async def touch_last_seen(self, user_id: str) -> None:
        await self._store.update(USERS, user_id, {"last_seen": _utc_now()})

    async def list_users(self) -> list[UserRead]:
        documents = await self._store.query(USERS)
        return sort_users(_to_user(document) for document in documents)

    def _validate(
        self,
        username: str | None = None,
        display_name: str | None = None,
        email: str | None = None,
        phone_number: str | None = None,
    ) -> None:
        if username is not None and not is_valid_username(username):
            raise InvalidInput(
                "Username must be 3-20 characters of letters, digits or underscores"
            )
        if display_name is not None and not display_name:
            raise InvalidInput("Name cannot be empty")
        if email and not is_valid_email(email):
            raise InvalidInput("Invalid email address")
        if phone_number and not is_valid_phone_number(phone_number):
            raise InvalidInput("Invalid phone number")
