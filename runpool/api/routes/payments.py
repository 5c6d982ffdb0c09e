import logging

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from runpool.api.deps import get_db, get_gateway, get_mailer, get_webhook_secret
from runpool.core.auth import get_current_user
from runpool.core.errors import Conflict, RunPoolError
from runpool.core.periods import WEEK, current_period_id, validate_period_id
from runpool.models.payment import FAILED, PAID, PENDING
from runpool.models.user import User
from runpool.realtime.sse import PAYMENT_UPDATED, broadcast
from runpool.schemas.payment import PaymentIntentRequest, PaymentIntentResponse, PaymentStatusResponse
from runpool.services import admission, notifications, payments
from runpool.services.mailer import Mailer
from runpool.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


def _week(period_id: str | None) -> str:
    if not period_id:
        return current_period_id(WEEK)
    try:
        return validate_period_id(period_id, WEEK)
    except ValueError as e:
        raise RunPoolError(str(e))


@router.post("/payments/intents", response_model=PaymentIntentResponse)
def create_payment_intent(
    payload: PaymentIntentRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    gateway: StripeGateway = Depends(get_gateway),
):
    group = admission.get_group(db, payload.group_id)
    admission.require_member(db, group.id, current_user)
    if group.entry_fee <= 0:
        raise Conflict("This group has no entry fee")

    owner = db.get(User, group.owner_id)
    if not owner.stripe_account_id:
        raise Conflict("The group admin has not set up payouts yet")

    period_id = _week(payload.period_id)
    record = payments.initiate(db, current_user.id, group.id, period_id, group.entry_fee)
    if record.status == PAID:
        raise Conflict(f"Entry for {period_id} is already paid")
    # un pago fallido se reintenta con un intent nuevo sobre el mismo registro
    if record.status not in (PENDING, FAILED):
        raise Conflict(f"Entry for {period_id} is {record.status}")

    client_secret, intent_id = gateway.create_entry_intent(
        amount=record.amount,
        destination=owner.stripe_account_id,
        metadata={
            "user_id": str(current_user.id),
            "group_id": str(group.id),
            "period_id": period_id,
            "purpose": payments.ENTRY_PURPOSE,
        },
        payment_method_type=payload.payment_method_type,
    )
    payments.attach_intent(db, record, intent_id)

    return PaymentIntentResponse(
        client_secret=client_secret,
        payment_intent_id=intent_id,
        period_id=period_id,
        amount=record.amount,
        status=record.status,
    )


@router.get("/payments/status", response_model=PaymentStatusResponse)
def payment_status(
    group_id: int,
    period_id: str | None = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    period_id = _week(period_id)
    return PaymentStatusResponse(
        group_id=group_id,
        period_id=period_id,
        status=payments.status(db, current_user.id, group_id, period_id),
    )


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    secret: str = Depends(get_webhook_secret),
    mailer: Mailer | None = Depends(get_mailer),
):
    body = await request.body()
    # InvalidSignature / MalformedEvent -> 400 via el handler de RunPoolError
    event = payments.verify_event(body, request.headers.get("stripe-signature"), secret)

    try:
        result = await run_in_threadpool(payments.apply_event, db, event)
    except RunPoolError:
        # MalformedEvent -> 400 (Stripe no reintenta), TransientStoreError -> 503
        db.rollback()
        raise
    except Exception:
        # 500: Stripe reintentará la entrega
        logger.exception("webhook %s (%s) failed after verification", event.get("id"), event.get("type"))
        db.rollback()
        return JSONResponse(status_code=500, content={"detail": "Webhook processing failed"})

    if result.outcome == payments.APPLIED and result.key is not None:
        await run_in_threadpool(notifications.notify_payment, db, mailer, result)
        await broadcast(PAYMENT_UPDATED, {
            "user_id": result.key.user_id,
            "group_id": result.key.group_id,
            "period_id": result.key.period_id,
            "status": result.status,
        })

    return {"received": True, "outcome": result.outcome}
