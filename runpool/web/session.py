from fastapi import Depends, Request
from sqlalchemy.orm import Session

from runpool.core.auth import user_from_token
from runpool.core.database import get_db
from runpool.models.user import User

COOKIE_NAME = "access_token"


def get_user_from_cookie(db: Session, access_token: str | None) -> User | None:
    return user_from_token(db, access_token)


def get_web_user(request: Request, db: Session = Depends(get_db)) -> User | None:
    return get_user_from_cookie(db, request.cookies.get(COOKIE_NAME))
