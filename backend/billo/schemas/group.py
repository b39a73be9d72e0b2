import uuid
from datetime import datetime
from typing import Annotated
from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from billo.models.group import GroupRole


class GroupCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    name: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=100)]
    description: str | None = None
    emoji: str | None = None
    member_ids: list[str] = Field(default=[], alias="memberIds")


class GroupUpdate(BaseModel):
    name: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=100)] | None = None
    description: str | None = None
    emoji: str | None = None


class MemberAdd(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    user_id: str = Field(alias="userId")
    role: GroupRole = GroupRole.member


class MemberRoleUpdate(BaseModel):
    role: GroupRole


class MemberResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    user_id: str
    role: GroupRole
    display_name: str | None = None
    email: str | None = None
    joined_at: datetime


class GroupResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: uuid.UUID
    name: str
    description: str | None
    emoji: str | None
    created_by: str
    created_at: datetime
    members: list[MemberResponse] = []


class GroupListResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: uuid.UUID
    name: str
    emoji: str | None
    role: GroupRole
    created_at: datetime
