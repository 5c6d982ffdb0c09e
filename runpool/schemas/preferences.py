from pydantic import BaseModel, ConfigDict


class EmailPreferencesPublic(BaseModel):
    all_emails: bool = True
    payment_reminders: bool = True
    streak_reminders: bool = True
    comeback_encouragement: bool = True
    achievement_celebrations: bool = True
    daily_motivation: bool = True
    running_tips: bool = True

    model_config = ConfigDict(from_attributes=True)


class EmailPreferencesUpdate(BaseModel):
    all_emails: bool | None = None
    payment_reminders: bool | None = None
    streak_reminders: bool | None = None
    comeback_encouragement: bool | None = None
    achievement_celebrations: bool | None = None
    daily_motivation: bool | None = None
    running_tips: bool | None = None
