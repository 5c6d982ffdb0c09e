# predicados (db, period_id, now) -> destinatarios; las preferencias se aplican en el dispatcher
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import distinct, func, select
from sqlalchemy.orm import Session

from runpool.core.config import settings
from runpool.core.periods import period_bounds
from runpool.models.activity import Activity
from runpool.models.group import Group
from runpool.models.membership import GroupMember
from runpool.models.payment import PENDING, PaymentRecord
from runpool.models.user import User
from runpool.services.leaderboard import current_streak


@dataclass
class Recipient:
    user_id: int
    email: str
    name: str
    context: dict[str, Any] = field(default_factory=dict)


def _recipient(user: User, **context) -> Recipient:
    return Recipient(user.id, user.email, user.display_name, context)


def _active_members(db: Session) -> list[User]:
    return db.execute(
        select(User)
        .where(
            User.id.in_(
                select(GroupMember.user_id).where(GroupMember.is_active.is_(True))
            )
        )
        .order_by(User.id)
    ).scalars().all()


def _users_active_between(db: Session, first_day, last_day) -> set[int]:
    return set(db.execute(
        select(distinct(Activity.user_id))
        .where(Activity.logged_on >= first_day, Activity.logged_on <= last_day)
    ).scalars().all())


def payment_reminder(db: Session, period_id: str, now: datetime) -> list[Recipient]:
    """Pending entry payments older than the grace window, grouped per user."""
    cutoff = now - timedelta(hours=settings.PAYMENT_REMINDER_GRACE_HOURS)
    rows = db.execute(
        select(PaymentRecord, User, Group)
        .join(User, User.id == PaymentRecord.user_id)
        .join(Group, Group.id == PaymentRecord.group_id)
        .where(PaymentRecord.period_id == period_id)
        .where(PaymentRecord.status == PENDING)
        .where(PaymentRecord.created_at <= cutoff)
        .order_by(User.id, Group.name)
    ).all()

    by_user: dict[int, Recipient] = {}
    for record, user, group in rows:
        r = by_user.get(user.id)
        if r is None:
            r = by_user[user.id] = _recipient(user, groups=[])
        r.context["groups"].append({"id": group.id, "name": group.name, "amount": record.amount})
    return list(by_user.values())


def streak_reminder(db: Session, period_id: str, now: datetime) -> list[Recipient]:
    """Ran yesterday, not yet today: the streak ends tonight."""
    day, _ = period_bounds(period_id)
    yesterday = day - timedelta(days=1)

    ran_yesterday = _users_active_between(db, yesterday, yesterday)
    ran_today = _users_active_between(db, day, day)

    out = []
    for user in _active_members(db):
        if user.id in ran_yesterday and user.id not in ran_today:
            out.append(_recipient(user, streak_length=current_streak(db, user.id, yesterday)))
    return out


def comeback_encouragement(db: Session, period_id: str, now: datetime) -> list[Recipient]:
    _, last_day = period_bounds(period_id)
    ref = min(now.date(), last_day)
    days = settings.COMEBACK_INACTIVE_DAYS
    recent = _users_active_between(db, ref - timedelta(days=days - 1), ref)

    return [
        _recipient(user, days_inactive=days)
        for user in _active_members(db)
        if user.id not in recent
    ]


def weekly_achievements(db: Session, period_id: str, now: datetime) -> list[Recipient]:
    start, end = period_bounds(period_id)
    rows = db.execute(
        select(
            User,
            func.sum(Activity.miles).label("miles"),
            func.count(distinct(Activity.logged_on)).label("days"),
        )
        .join(Activity, Activity.user_id == User.id)
        .join(
            GroupMember,
            (GroupMember.user_id == Activity.user_id) & (GroupMember.group_id == Activity.group_id),
        )
        .where(GroupMember.is_active.is_(True))
        .where(Activity.logged_on >= start, Activity.logged_on <= end)
        .group_by(User.id)
        .order_by(User.id)
    ).all()

    return [
        _recipient(user, total_miles=round(float(miles), 1), days_active=int(days))
        for user, miles, days in rows
        if miles and miles > 0
    ]


def all_active_members(db: Session, period_id: str, now: datetime) -> list[Recipient]:
    return [_recipient(user) for user in _active_members(db)]
