from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class GroupCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    rule: Optional[str] = None
    entry_fee: int = Field(default=0, ge=0)  # céntimos


class GroupUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    rule: Optional[str] = None
    entry_fee: Optional[int] = Field(default=None, ge=0)


class GroupPublic(BaseModel):
    id: int
    name: str
    rule: Optional[str] = None
    entry_fee: int
    owner_id: int
    created_at: datetime

    members_count: Optional[int] = None
    my_role: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class MemberPublic(BaseModel):
    user_id: int
    email: str
    name: str
    role: str
    joined_at: datetime


class JoinResponse(BaseModel):
    ok: bool = True
    group_id: int
    group_name: str
    already_member: bool
    message: str
