from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from app.schemas.profile import UserRead

RequestStatus = Literal["pending", "accepted", "declined"]


class FriendRequestRead(BaseModel):
    id: str
    sender_id: str
    receiver_id: str
    status: RequestStatus
    created_at: datetime
    resolved_at: datetime | None = None


class FriendRequestCreateRequest(BaseModel):
    username: str = Field(min_length=1, max_length=40)


class FriendRequestCreated(BaseModel):
    id: str


class SocialOverviewRead(BaseModel):
    friends: list[UserRead]
    incoming_friend_requests: list[FriendRequestRead]
    outgoing_friend_requests: list[FriendRequestRead]
