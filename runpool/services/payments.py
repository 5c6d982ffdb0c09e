"""Pagos de inscripción por (user_id, group_id, period_id).

    pending -> paid | failed
    failed  -> paid       (el pagador reintenta con otra tarjeta)
    paid    -> refunded
"""
import json
import logging
from dataclasses import dataclass

import stripe
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from runpool.core.config import settings
from runpool.core.errors import ConfigurationError, InvalidSignature, MalformedEvent
from runpool.core.periods import WEEK, utc_now_naive, validate_period_id
from runpool.core.retry import with_store_retry
from runpool.models.payment import (
    FAILED,
    PAID,
    PENDING,
    REFUNDED,
    UNKNOWN,
    PaymentRecord,
    ProcessedEvent,
)
from runpool.services import payouts

logger = logging.getLogger(__name__)

ENTRY_PURPOSE = "run_pool_entry"

# se aplican con UPDATE ... WHERE status IN (orígenes): nunca se retrocede
TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({PAID, FAILED}),
    PAID: frozenset({REFUNDED}),
    FAILED: frozenset({PAID}),
    REFUNDED: frozenset(),
}

EVENT_STATUS = {
    "payment_intent.created": PENDING,
    "payment_intent.processing": PENDING,
    "payment_intent.succeeded": PAID,
    "payment_intent.payment_failed": FAILED,
    "charge.refunded": REFUNDED,
}

# outcomes de reconcile
APPLIED = "applied"
NOOP = "noop"
DUPLICATE = "duplicate"
IGNORED = "ignored"
REJECTED = "rejected"
UNMATCHED = "unmatched"


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def allowed_sources(target: str) -> list[str]:
    return [s for s, targets in TRANSITIONS.items() if target in targets]


@dataclass(frozen=True)
class PaymentKey:
    user_id: int
    group_id: int
    period_id: str


@dataclass
class ReconcileResult:
    event_id: str
    event_type: str
    outcome: str
    key: PaymentKey | None = None
    previous: str | None = None
    status: str | None = None
    amount: int | None = None
    failure_reason: str | None = None


def _get(db: Session, key: PaymentKey) -> PaymentRecord | None:
    return db.execute(
        select(PaymentRecord)
        .where(
            PaymentRecord.user_id == key.user_id,
            PaymentRecord.group_id == key.group_id,
            PaymentRecord.period_id == key.period_id,
        )
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


# --- initiate / status ---------------------------------------------------

def initiate(db: Session, user_id: int, group_id: int, period_id: str, amount: int) -> PaymentRecord:
    """Return the record for the key, creating it as ``pending`` if absent."""
    key = PaymentKey(user_id, group_id, validate_period_id(period_id, WEEK))

    def _run() -> PaymentRecord:
        existing = _get(db, key)
        if existing:
            return existing

        record = PaymentRecord(
            user_id=user_id,
            group_id=group_id,
            period_id=key.period_id,
            amount=amount,
            status=PENDING,
        )
        db.add(record)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = _get(db, key)
            if existing is None:
                raise
            return existing
        db.refresh(record)
        logger.info("payment initiated user=%s group=%s period=%s amount=%s", user_id, group_id, key.period_id, amount)
        return record

    return with_store_retry(db, _run)


def status(db: Session, user_id: int, group_id: int, period_id: str) -> str:
    record = with_store_retry(db, lambda: _get(db, PaymentKey(user_id, group_id, period_id)))
    return record.status if record else UNKNOWN


def attach_intent(db: Session, record: PaymentRecord, payment_intent_id: str) -> None:
    record.payment_intent_id = payment_intent_id
    record.updated_at = utc_now_naive()
    db.commit()


# --- webhook verification ----------------------------------------------

def verify_event(payload: bytes, signature: str | None, secret: str, tolerance: int | None = None) -> dict:
    """Check the Stripe-Signature header, then parse the body.

    Nothing in the payload is trusted before the signature matches.
    """
    if not signature:
        raise InvalidSignature("Missing Stripe-Signature header")
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError:
        raise MalformedEvent()

    try:
        stripe.WebhookSignature.verify_header(
            text,
            signature,
            secret,
            tolerance if tolerance is not None else settings.STRIPE_WEBHOOK_TOLERANCE,
        )
    except stripe.SignatureVerificationError as e:
        logger.warning("webhook signature rejected: %s", e)
        raise InvalidSignature()

    try:
        event = json.loads(text)
    except ValueError:
        raise MalformedEvent()
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise MalformedEvent()
    return event


# --- reconcile -----------------------------------------------------------

def _event_key(db: Session, event_type: str, obj: dict) -> PaymentKey | None:
    if event_type.startswith("payment_intent."):
        md = obj.get("metadata") or {}
        if md.get("purpose") != ENTRY_PURPOSE:
            return None
        try:
            return PaymentKey(
                user_id=int(md["user_id"]),
                group_id=int(md["group_id"]),
                period_id=validate_period_id(str(md["period_id"]), WEEK),
            )
        except (KeyError, TypeError, ValueError):
            raise MalformedEvent("Payment intent metadata is incomplete")

    # charge.refunded: la charge no lleva nuestra metadata, se busca por payment_intent
    intent_id = obj.get("payment_intent")
    if not intent_id:
        return None
    record = db.execute(
        select(PaymentRecord).where(PaymentRecord.payment_intent_id == intent_id)
    ).scalar_one_or_none()
    if record is None:
        return None
    return PaymentKey(record.user_id, record.group_id, record.period_id)


def _apply_payment(db: Session, event_id: str, event_type: str, obj: dict) -> ReconcileResult:
    target = EVENT_STATUS[event_type]
    result = ReconcileResult(event_id, event_type, IGNORED, status=target)

    if event_type == "charge.refunded" and not obj.get("refunded"):
        return result  # reembolso parcial

    key = _event_key(db, event_type, obj)
    if key is None:
        if event_type == "charge.refunded":
            logger.warning("refund %s for unknown payment intent %s", event_id, obj.get("payment_intent"))
            result.outcome = UNMATCHED
        return result

    result.key = key
    result.amount = obj.get("amount")
    error = obj.get("last_payment_error") or {}
    result.failure_reason = error.get("message")
    intent_id = obj.get("id") if event_type.startswith("payment_intent.") else None

    record = _get(db, key)
    if record is None:
        if target == REFUNDED:
            result.outcome = UNMATCHED
            return result
        # el evento llegó antes que initiate(): se crea con el estado del evento
        db.add(PaymentRecord(
            user_id=key.user_id,
            group_id=key.group_id,
            period_id=key.period_id,
            amount=int(obj.get("amount") or 0),
            status=target,
            payment_intent_id=intent_id,
        ))
        db.flush()
        result.previous = UNKNOWN
        result.outcome = APPLIED
        return result

    result.previous = record.status
    result.amount = record.amount

    if record.status == target:
        result.outcome = NOOP
        return result

    if not can_transition(record.status, target):
        logger.warning(
            "illegal transition %s -> %s for %s (event %s), skipped",
            record.status, target, key, event_id,
        )
        result.status = record.status
        result.outcome = REJECTED
        return result

    values = {"status": target, "updated_at": utc_now_naive()}
    if intent_id:
        values["payment_intent_id"] = intent_id
    res = db.execute(
        update(PaymentRecord)
        .where(
            PaymentRecord.id == record.id,
            PaymentRecord.status.in_(allowed_sources(target)),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        # otro evento del mismo key cambió el estado entre el SELECT y el UPDATE
        current = _get(db, key)
        logger.warning("transition %s -> %s lost race for %s, now %s", record.status, target, key, current.status)
        result.status = current.status
        result.outcome = NOOP if current.status == target else REJECTED
        return result

    result.outcome = APPLIED
    return result


def _apply_once(db: Session, event: dict) -> ReconcileResult:
    event_id, event_type = event["id"], event["type"]

    seen = db.execute(select(ProcessedEvent.id).where(ProcessedEvent.event_id == event_id)).first()
    if seen:
        return ReconcileResult(event_id, event_type, DUPLICATE)

    obj = (event.get("data") or {}).get("object") or {}
    if event_type in EVENT_STATUS:
        result = _apply_payment(db, event_id, event_type, obj)
    elif event_type in payouts.TRANSFER_STATUS:
        outcome = payouts.apply_transfer_event(db, event_type, obj)
        result = ReconcileResult(event_id, event_type, outcome)
    else:
        result = ReconcileResult(event_id, event_type, IGNORED)

    db.add(ProcessedEvent(event_id=event_id, event_type=event_type))
    db.commit()
    return result


def apply_event(db: Session, event: dict) -> ReconcileResult:
    """Apply an already verified event. Replay-safe."""
    def _run() -> ReconcileResult:
        try:
            return _apply_once(db, event)
        except IntegrityError:
            # entrega concurrente del mismo evento, o initiate() concurrente
            db.rollback()
            return _apply_once(db, event)

    try:
        result = with_store_retry(db, _run)
    except IntegrityError:
        db.rollback()
        logger.info("event %s applied concurrently by another delivery", event.get("id"))
        return ReconcileResult(event["id"], event["type"], DUPLICATE)

    if result.outcome == APPLIED:
        logger.info("reconciled %s %s: %s -> %s", result.event_type, result.key, result.previous, result.status)
    return result


def reconcile(db: Session, payload: bytes, signature: str | None, secret: str | None = None) -> ReconcileResult:
    secret = secret or settings.STRIPE_WEBHOOK_SECRET
    if not secret:
        raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not set")
    event = verify_event(payload, signature, secret)
    return apply_event(db, event)
