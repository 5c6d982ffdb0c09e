from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from runpool.core.database import Base
from runpool.core.periods import utc_now_naive


class CampaignSendRecord(Base):
    __tablename__ = "campaign_sends"
    __table_args__ = (
        UniqueConstraint("user_id", "campaign_type", "period_id", name="uq_campaign_send"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    campaign_type: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    period_id: Mapped[str] = mapped_column(String(10), nullable=False)

    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, nullable=False, index=True)


class EmailPreferences(Base):
    __tablename__ = "email_preferences"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), primary_key=True)

    all_emails: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    payment_reminders: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    streak_reminders: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    comeback_encouragement: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    achievement_celebrations: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    daily_motivation: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    running_tips: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, nullable=False)


PREFERENCE_FLAGS = (
    "all_emails",
    "payment_reminders",
    "streak_reminders",
    "comeback_encouragement",
    "achievement_celebrations",
    "daily_motivation",
    "running_tips",
)
