from dataclasses import dataclass
from datetime import date, timedelta

from sqlalchemy import distinct, func, select
from sqlalchemy.orm import Session

from runpool.core.periods import period_bounds
from runpool.models.activity import Activity
from runpool.models.membership import GroupMember
from runpool.models.user import User

STREAK_LOOKBACK_DAYS = 366


@dataclass
class LeaderboardEntry:
    rank: int
    user_id: int
    name: str
    miles: float
    days_active: int


def leaderboard(db: Session, group_id: int, period_id: str) -> list[LeaderboardEntry]:
    """Active members ranked by total miles in the period. Ties share a rank."""
    start, end = period_bounds(period_id)
    total = func.sum(Activity.miles).label("miles")

    rows = db.execute(
        select(
            User.id,
            User.full_name,
            User.email,
            total,
            func.count(distinct(Activity.logged_on)).label("days"),
        )
        .join(Activity, Activity.user_id == User.id)
        .join(
            GroupMember,
            (GroupMember.user_id == User.id) & (GroupMember.group_id == Activity.group_id),
        )
        .where(Activity.group_id == group_id)
        .where(GroupMember.is_active.is_(True))
        .where(Activity.logged_on >= start, Activity.logged_on <= end)
        .group_by(User.id, User.full_name, User.email)
        .order_by(total.desc(), User.email.asc())
    ).all()

    out: list[LeaderboardEntry] = []
    prev_miles = None
    rank = 0
    for i, r in enumerate(rows, start=1):
        miles = round(float(r.miles), 2)
        if miles != prev_miles:
            rank = i
            prev_miles = miles
        out.append(LeaderboardEntry(
            rank=rank,
            user_id=r.id,
            name=r.full_name or r.email.split("@")[0],
            miles=miles,
            days_active=int(r.days),
        ))
    return out


def current_streak(db: Session, user_id: int, as_of: date) -> int:
    """Consecutive days with activity ending on ``as_of``."""
    days = set(db.execute(
        select(distinct(Activity.logged_on))
        .where(Activity.user_id == user_id)
        .where(Activity.logged_on <= as_of)
        .where(Activity.logged_on > as_of - timedelta(days=STREAK_LOOKBACK_DAYS))
    ).scalars().all())

    streak = 0
    d = as_of
    while d in days:
        streak += 1
        d -= timedelta(days=1)
    return streak


def live_streak(db: Session, user_id: int, today: date) -> int:
    """Streak still alive today: a run yesterday keeps it until midnight."""
    return current_streak(db, user_id, today) or current_streak(db, user_id, today - timedelta(days=1))
