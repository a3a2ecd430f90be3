from datetime import datetime

from pydantic import BaseModel, Field

from app.schemas.profile import UserRead
from app.schemas.social import RequestStatus


class GroupRead(BaseModel):
    id: str
    name: str
    creator_id: str
    member_ids: list[str]
    created_at: datetime

    def has_member(self, user_id: str) -> bool:
        return user_id in self.member_ids


class GroupInvitationRead(BaseModel):
    id: str
    group_id: str
    inviter_id: str
    invitee_id: str
    status: RequestStatus
    created_at: datetime
    resolved_at: datetime | None = None


class GroupCreateRequest(BaseModel):
    name: str = Field(max_length=80)


class GroupRenameRequest(BaseModel):
    name: str = Field(max_length=80)


class GroupInviteRequest(BaseModel):
    invitee_id: str = Field(min_length=1, max_length=32)


class GroupInvitationCreated(BaseModel):
    id: str


class GroupDeletionRead(BaseModel):
    group_id: str
    removed_invitations: int
    orphaned_invitation_ids: list[str] = Field(default_factory=list)


class GroupDetailRead(GroupRead):
    members: list[UserRead] = Field(default_factory=list)
