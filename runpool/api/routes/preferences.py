from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from runpool.api.deps import get_db
from runpool.core.auth import get_current_user
from runpool.models.user import User
from runpool.schemas.preferences import EmailPreferencesPublic, EmailPreferencesUpdate
from runpool.services import preferences

router = APIRouter(prefix="/me", tags=["preferences"])


@router.get("/email-preferences", response_model=EmailPreferencesPublic)
def get_email_preferences(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    prefs = preferences.get_preferences(db, current_user.id)
    return prefs if prefs is not None else EmailPreferencesPublic()


@router.put("/email-preferences", response_model=EmailPreferencesPublic)
def update_email_preferences(
    payload: EmailPreferencesUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return preferences.update_preferences(db, current_user.id, payload.model_dump(exclude_none=True))
