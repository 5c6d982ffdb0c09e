import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from runpool.core.periods import utc_now_naive
from runpool.core.security import decode_token
from runpool.models.campaign import PREFERENCE_FLAGS, EmailPreferences
from runpool.models.user import User

logger = logging.getLogger(__name__)


def get_preferences(db: Session, user_id: int) -> EmailPreferences | None:
    return db.get(EmailPreferences, user_id)


def update_preferences(db: Session, user_id: int, changes: dict[str, bool]) -> EmailPreferences:
    prefs = get_preferences(db, user_id)
    if prefs is None:
        # defaults explícitos: el objeto se devuelve antes del INSERT
        prefs = EmailPreferences(user_id=user_id, **{flag: True for flag in PREFERENCE_FLAGS})
        db.add(prefs)

    for flag, value in changes.items():
        if flag in PREFERENCE_FLAGS:
            setattr(prefs, flag, bool(value))
    prefs.updated_at = utc_now_naive()

    try:
        db.commit()
    except IntegrityError:
        # otra petición creó la fila a la vez
        db.rollback()
        prefs = get_preferences(db, user_id)
        for flag, value in changes.items():
            if flag in PREFERENCE_FLAGS:
                setattr(prefs, flag, bool(value))
        db.commit()
    db.refresh(prefs)
    return prefs


def unsubscribe(db: Session, token: str | None) -> User | None:
    """Disable every campaign email for the user named in a signed unsubscribe token."""
    claims = decode_token(token, purpose="unsubscribe") if token else None
    if claims is None:
        return None
    try:
        user = db.get(User, int(claims["sub"]))
    except ValueError:
        return None
    if user is None:
        return None

    update_preferences(db, user.id, {"all_emails": False})
    logger.info("user=%s unsubscribed from campaign emails", user.id)
    return user
