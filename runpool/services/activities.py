import logging
from datetime import date

from sqlalchemy.orm import Session

from runpool.core.errors import Forbidden, RunPoolError
from runpool.core.periods import utc_now_naive, week_id
from runpool.models.activity import Activity
from runpool.models.payment import PAID
from runpool.models.user import User
from runpool.services import admission, payments

logger = logging.getLogger(__name__)


def today() -> date:
    return utc_now_naive().date()


def log_activity(db: Session, user: User | None, group_id: int, miles: float, logged_on: date | None = None) -> Activity:
    """Record miles for an active member.

    In groups with an entry fee the week's entry must be paid first.
    """
    group = admission.get_group(db, group_id)
    admission.require_member(db, group.id, user)

    now = today()
    logged_on = logged_on or now
    if logged_on > now:
        raise RunPoolError("You cannot log miles in the future")

    period_id = week_id(logged_on)
    if group.entry_fee > 0 and payments.status(db, user.id, group.id, period_id) != PAID:
        raise Forbidden(f"Pay the entry for {period_id} to log miles in this group")

    activity = Activity(user_id=user.id, group_id=group.id, miles=miles, logged_on=logged_on)
    db.add(activity)
    db.commit()
    db.refresh(activity)
    logger.info("user=%s logged %.2f miles in group=%s on %s", user.id, miles, group.id, logged_on)
    return activity
