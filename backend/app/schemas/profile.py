from datetime import datetime

from pydantic import BaseModel, EmailStr, Field


class UserRead(BaseModel):
    id: str
    username: str
    display_name: str = ""
    email: str | None = None
    phone_number: str | None = None
    created_at: datetime
    last_seen: datetime | None = None

    class Config:
        from_attributes = True


class UserRegisterRequest(BaseModel):
    username: str = Field(min_length=3, max_length=20)
    display_name: str = Field(min_length=1, max_length=60)
    email: EmailStr | None = None
    phone_number: str | None = Field(default=None, max_length=16)


class ProfileUpdateRequest(BaseModel):
    username: str | None = Field(default=None, min_length=3, max_length=20)
    display_name: str | None = Field(default=None, min_length=1, max_length=60)
    email: EmailStr | None = None
    phone_number: str | None = Field(default=None, max_length=16)
