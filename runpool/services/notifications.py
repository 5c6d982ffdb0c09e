import logging

from sqlalchemy.orm import Session

from runpool.models.group import Group
from runpool.models.payment import FAILED, PAID
from runpool.models.payout import Payout
from runpool.models.user import User
from runpool.services.mailer import Mailer, render_email, send_best_effort
from runpool.services.payments import APPLIED, ReconcileResult

logger = logging.getLogger(__name__)

_TEMPLATES = {
    PAID: ("payment_success.html", "Payment confirmed for {{ group_name }}"),
    FAILED: ("payment_failure.html", "Your payment for {{ group_name }} failed"),
}


def notify_payment(db: Session, mailer: Mailer | None, result: ReconcileResult) -> str | None:
    if result.outcome != APPLIED or result.key is None or result.status not in _TEMPLATES:
        return None

    user = db.get(User, result.key.user_id)
    group = db.get(Group, result.key.group_id)
    if user is None or group is None:
        logger.warning("payment %s for missing user/group %s", result.event_id, result.key)
        return None

    template, subject = _TEMPLATES[result.status]
    message = render_email(
        template,
        subject,
        to=user.email,
        name=user.display_name,
        group_id=group.id,
        group_name=group.name,
        period_id=result.key.period_id,
        amount=result.amount,
        failure_reason=result.failure_reason,
    )
    return send_best_effort(mailer, message)


def notify_payout(db: Session, mailer: Mailer | None, payout: Payout) -> str | None:
    # el ganador se entera en cuanto sale la transferencia
    winner = db.get(User, payout.recipient_id)
    group = db.get(Group, payout.group_id)
    message = render_email(
        "payout_success.html",
        "🏆 Your {{ group_name }} prize has been sent",
        to=winner.email,
        name=winner.display_name,
        group_id=group.id,
        group_name=group.name,
        period_id=payout.period_id,
        amount=payout.amount,
        position=1,
    )
    return send_best_effort(mailer, message)


def notify_stripe_setup(mailer: Mailer | None, user: User) -> str | None:
    complete = user.stripe_account_status == "complete"
    subject = "Your Stripe account is connected" if complete else "Finish setting up your Stripe account"
    message = render_email(
        "stripe_setup.html",
        subject,
        to=user.email,
        name=user.display_name,
        complete=complete,
    )
    return send_best_effort(mailer, message)
