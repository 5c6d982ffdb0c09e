import logging

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from runpool.api.deps import get_db
from runpool.core.auth import get_current_user
from runpool.core.errors import Conflict, Unauthenticated
from runpool.core.security import create_access_token, hash_password, verify_password
from runpool.models.user import User
from runpool.schemas.auth import LoginRequest, RegisterRequest, TokenResponse
from runpool.schemas.user import UserPublic

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def register_user(db: Session, email: str, password: str, full_name: str | None = None) -> User:
    email = email.strip().lower()
    existing = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if existing:
        raise Conflict("Email already registered")

    user = User(
        email=email,
        hashed_password=hash_password(password),
        full_name=(full_name or "").strip() or None,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("new user id=%s", user.id)
    return user


def authenticate(db: Session, email: str, password: str) -> User:
    user = db.execute(
        select(User).where(User.email == email.strip().lower())
    ).scalar_one_or_none()
    if not user or not verify_password(password, user.hashed_password):
        raise Unauthenticated("Invalid credentials")
    return user


@router.post("/register", response_model=TokenResponse)
def register(payload: RegisterRequest, db: Session = Depends(get_db)):
    user = register_user(db, payload.email, payload.password, payload.full_name)
    return TokenResponse(access_token=create_access_token(str(user.id)))


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    user = authenticate(db, payload.email, payload.password)
    return TokenResponse(access_token=create_access_token(str(user.id)))


@router.get("/me", response_model=UserPublic)
def me(user: User = Depends(get_current_user)):
    return UserPublic(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        stripe_connected=bool(user.stripe_account_id),
    )
