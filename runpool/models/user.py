from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from runpool.core.database import Base
from runpool.core.periods import utc_now_naive


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(120), nullable=True)

    # Stripe Connect (para recibir premios)
    stripe_account_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    stripe_account_status: Mapped[str | None] = mapped_column(String(20), nullable=True)  # complete/incomplete

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, nullable=False)

    @property
    def display_name(self) -> str:
        return self.full_name or self.email.split("@")[0]
