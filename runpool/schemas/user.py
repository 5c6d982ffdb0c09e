from pydantic import BaseModel, EmailStr


class UserPublic(BaseModel):
    id: int
    email: EmailStr
    full_name: str | None = None
    stripe_connected: bool = False
