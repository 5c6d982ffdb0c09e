from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from runpool.core.database import get_db
from runpool.core.errors import Unauthenticated
from runpool.core.security import decode_token
from runpool.models.user import User

from typing import Optional

security = HTTPBearer(auto_error=False)


def user_from_token(db: Session, token: str | None) -> Optional[User]:
    if not token:
        return None
    payload = decode_token(token)
    if payload is None:
        return None
    try:
        user_id = int(payload["sub"])
    except (KeyError, ValueError):
        return None
    return db.get(User, user_id)


def get_current_user(
    creds: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    if creds is None:
        raise Unauthenticated("Missing Bearer token")

    user = user_from_token(db, creds.credentials)
    if not user:
        raise Unauthenticated("Invalid or expired token")
    return user


def get_current_user_optional(
    creds: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
) -> Optional[User]:
    # sin token -> None (no 401)
    if creds is None:
        return None
    return user_from_token(db, creds.credentials)
