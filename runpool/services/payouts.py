import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from runpool.core.errors import Conflict, Forbidden, ProcessorError, Unauthenticated
from runpool.core.periods import WEEK, utc_now_naive, validate_period_id
from runpool.models.group import Group
from runpool.models.payment import PAID, PaymentRecord
from runpool.models.payout import Payout
from runpool.models.user import User
from runpool.services import leaderboard

logger = logging.getLogger(__name__)

PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

TRANSFER_STATUS = {
    "transfer.created": COMPLETED,
    "transfer.reversed": FAILED,
}

_SOURCES = {
    COMPLETED: (PROCESSING,),
    FAILED: (PROCESSING, COMPLETED),
}


def prize_pot(db: Session, group_id: int, period_id: str) -> int:
    total = db.execute(
        select(func.coalesce(func.sum(PaymentRecord.amount), 0)).where(
            PaymentRecord.group_id == group_id,
            PaymentRecord.period_id == period_id,
            PaymentRecord.status == PAID,
        )
    ).scalar_one()
    return int(total)


def create_payout(db: Session, gateway, group: Group, user: User | None, period_id: str) -> Payout:
    if user is None:
        raise Unauthenticated()
    if group.owner_id != user.id:
        raise Forbidden("Only the group owner can pay out prizes")
    validate_period_id(period_id, WEEK)

    board = leaderboard.leaderboard(db, group.id, period_id)
    leaders = [e for e in board if e.rank == 1]
    if not leaders:
        raise Conflict("No activity logged for this period")
    if len(leaders) > 1:
        raise Conflict("Tie for first place, the payout must be resolved manually")

    winner = db.get(User, leaders[0].user_id)
    if not winner.stripe_account_id:
        raise Conflict("The winner has not connected a Stripe account")

    pot = prize_pot(db, group.id, period_id)
    if pot <= 0:
        raise Conflict("No paid entries for this period")

    payout = Payout(
        group_id=group.id,
        period_id=period_id,
        recipient_id=winner.id,
        amount=pot,
        status=PROCESSING,
    )
    db.add(payout)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("A payout already exists for this period")

    try:
        transfer_id = gateway.create_transfer(
            amount=pot,
            destination=winner.stripe_account_id,
            transfer_group=f"GROUP_{group.id}_{period_id}",
            metadata={
                "group_id": str(group.id),
                "period_id": period_id,
                "recipient_user_id": str(winner.id),
                "purpose": "run_pool_prize",
            },
        )
    except ProcessorError:
        # liberar el hueco para poder reintentar
        db.delete(payout)
        db.commit()
        raise

    payout.transfer_id = transfer_id
    payout.updated_at = utc_now_naive()
    db.commit()
    db.refresh(payout)
    logger.info("payout %s: %s cents to user=%s for group=%s %s", transfer_id, pot, winner.id, group.id, period_id)
    return payout


def apply_transfer_event(db: Session, event_type: str, obj: dict) -> str:
    target = TRANSFER_STATUS[event_type]
    transfer_id = obj.get("id")
    if not transfer_id:
        return "ignored"

    res = db.execute(
        update(Payout)
        .where(Payout.transfer_id == transfer_id, Payout.status.in_(_SOURCES[target]))
        .values(status=target, updated_at=utc_now_naive())
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        exists = db.execute(select(Payout.id).where(Payout.transfer_id == transfer_id)).first()
        return "noop" if exists else "unmatched"
    return "applied"
