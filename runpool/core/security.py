from datetime import datetime, timedelta, timezone
from typing import Any

from jose import jwt, JWTError
from passlib.context import CryptContext

from runpool.core.config import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    # bcrypt solo usa 72 bytes de input
    if password and len(password.encode("utf-8")) > 72:
        raise ValueError("Password too long (max 72 bytes).")
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    try:
        if password and len(password.encode("utf-8")) > 72:
            return False
        return pwd_context.verify(password, hashed)
    except ValueError:
        return False


def _encode(claims: dict[str, Any], minutes: int) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    return jwt.encode({**claims, "exp": expire}, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def create_access_token(subject: str) -> str:
    return _encode({"sub": subject}, settings.ACCESS_TOKEN_EXPIRE_MINUTES)


def create_signed_token(subject: str, purpose: str, minutes: int, **extra: Any) -> str:
    """Short-lived token for a single purpose (OAuth state, unsubscribe link)."""
    return _encode({"sub": subject, "purpose": purpose, **extra}, minutes)


def decode_token(token: str, purpose: str | None = None) -> dict[str, Any] | None:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None
    if not payload.get("sub"):
        return None
    # un token de sesión no sirve como token de propósito y viceversa
    if payload.get("purpose") != purpose:
        return None
    return payload
