from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from runpool.core.database import Base
from runpool.core.periods import utc_now_naive

PENDING = "pending"
PAID = "paid"
FAILED = "failed"
REFUNDED = "refunded"
UNKNOWN = "unknown"  # solo como respuesta de status(), nunca se guarda


class PaymentRecord(Base):
    __tablename__ = "payment_records"
    __table_args__ = (
        UniqueConstraint("user_id", "group_id", "period_id", name="uq_payment_key"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    group_id: Mapped[int] = mapped_column(ForeignKey("groups.id"), nullable=False, index=True)
    period_id: Mapped[str] = mapped_column(String(10), nullable=False, index=True)

    amount: Mapped[int] = mapped_column(Integer, nullable=False)  # céntimos
    status: Mapped[str] = mapped_column(String(20), default=PENDING, nullable=False, index=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, nullable=False)


class ProcessedEvent(Base):
    """Stripe event ids already applied (webhook replay guard)."""

    __tablename__ = "processed_events"

    id: Mapped[int] = mapped_column(primary_key=True)
    event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, nullable=False)
