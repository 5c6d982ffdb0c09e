from datetime import datetime

from pydantic import BaseModel, EmailStr, Field


class InviteCreateRequest(BaseModel):
    expires_in_days: int | None = Field(default=None, ge=1)  # se limita a 1-60
    max_uses: int | None = Field(default=1, ge=1)            # None = reutilizable
    invited_email: EmailStr | None = None


class InviteSendRequest(BaseModel):
    email: EmailStr
    expires_in_days: int | None = Field(default=None, ge=1)


class InvitePublic(BaseModel):
    token: str
    group_id: int
    url: str
    expires_at: datetime | None
    is_active: bool
    uses: int
    max_uses: int | None
    revoked_at: datetime | None
    invited_email: str | None = None


class InviteSendResponse(BaseModel):
    invite: InvitePublic
    email_sent: bool
