# el registro de envío se escribe solo tras aceptar el email: relanzar nunca duplica
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from runpool.core.errors import ConfigurationError, NotFound, RunPoolError, SendFailure
from runpool.core.periods import DAY, WEEK, current_period_id, utc_now_naive, validate_period_id
from runpool.core.retry import with_store_retry
from runpool.core.security import create_signed_token
from runpool.core.config import settings
from runpool.models.campaign import CampaignSendRecord, EmailPreferences
from runpool.services import eligibility
from runpool.services.eligibility import Recipient
from runpool.services.mailer import Mailer, render_email

logger = logging.getLogger(__name__)

UNSUBSCRIBE_TOKEN_MINUTES = 60 * 24 * 60  # 60 días


@dataclass(frozen=True)
class Campaign:
    type: str
    template: str
    subject: str
    period_kind: str
    preference: str
    eligibility: Callable[[Session, str, datetime], list[Recipient]]


CAMPAIGNS: dict[str, Campaign] = {
    c.type: c
    for c in (
        Campaign(
            "payment_reminder", "payment_reminder.html",
            "⏰ Payment reminder for your RunPool challenge",
            WEEK, "payment_reminders", eligibility.payment_reminder,
        ),
        Campaign(
            "streak_reminder", "streak_reminder.html",
            "🔥 Keep your {{ streak_length }}-day streak alive",
            DAY, "streak_reminders", eligibility.streak_reminder,
        ),
        Campaign(
            "comeback_encouragement", "comeback_encouragement.html",
            "We miss you on the road, {{ name }}",
            WEEK, "comeback_encouragement", eligibility.comeback_encouragement,
        ),
        Campaign(
            "weekly_achievements", "weekly_achievements.html",
            "🏆 Your week: {{ total_miles }} miles",
            WEEK, "achievement_celebrations", eligibility.weekly_achievements,
        ),
        Campaign(
            "daily_motivation", "daily_motivation.html",
            "Today's run is waiting, {{ name }}",
            DAY, "daily_motivation", eligibility.all_active_members,
        ),
        Campaign(
            "running_tips", "running_tips.html",
            "Running tip of the week",
            WEEK, "running_tips", eligibility.all_active_members,
        ),
    )
}


def build_registry(enabled: list[str]) -> dict[str, Campaign]:
    unknown = sorted(set(enabled) - set(CAMPAIGNS))
    if unknown:
        raise ConfigurationError(f"Unknown campaign types in ENABLED_CAMPAIGNS: {', '.join(unknown)}")
    return {name: CAMPAIGNS[name] for name in enabled}


@dataclass
class DispatchReport:
    campaign_type: str
    period_id: str
    sent: int = 0
    skipped_already_sent: int = 0
    failed: int = 0
    failures: list[dict[str, Any]] = field(default_factory=list)


def unsubscribe_url(user_id: int) -> str:
    token = create_signed_token(str(user_id), "unsubscribe", UNSUBSCRIBE_TOKEN_MINUTES)
    return f"{settings.SITE_URL.rstrip('/')}/unsubscribe?token={token}"


def _opted_in(db: Session, recipients: list[Recipient], flag: str) -> list[Recipient]:
    if not recipients:
        return []
    ids = [r.user_id for r in recipients]
    prefs = {
        p.user_id: p
        for p in db.execute(
            select(EmailPreferences).where(EmailPreferences.user_id.in_(ids))
        ).scalars()
    }
    out = []
    for r in recipients:
        p = prefs.get(r.user_id)
        # sin fila = preferencias por defecto (todo activado)
        if p is None or (p.all_emails and getattr(p, flag)):
            out.append(r)
    return out


def _already_sent(db: Session, user_id: int, campaign_type: str, period_id: str) -> bool:
    return db.execute(
        select(CampaignSendRecord.id).where(
            CampaignSendRecord.user_id == user_id,
            CampaignSendRecord.campaign_type == campaign_type,
            CampaignSendRecord.period_id == period_id,
        )
    ).first() is not None


class CampaignDispatcher:
    def __init__(self, registry: dict[str, Campaign], mailer: Mailer):
        self.registry = registry
        self.mailer = mailer

    def run(
        self,
        db: Session,
        campaign_type: str,
        period_id: str | None = None,
        now: datetime | None = None,
    ) -> DispatchReport:
        campaign = self.registry.get(campaign_type)
        if campaign is None:
            raise NotFound(f"Unknown campaign type: {campaign_type}")

        now = now or utc_now_naive()
        period_id = period_id or current_period_id(campaign.period_kind, now)
        try:
            validate_period_id(period_id, campaign.period_kind)
        except ValueError as e:
            raise RunPoolError(str(e))

        report = DispatchReport(campaign_type, period_id)

        recipients = with_store_retry(db, lambda: campaign.eligibility(db, period_id, now))
        recipients = with_store_retry(db, lambda: _opted_in(db, recipients, campaign.preference))

        for r in recipients:
            if with_store_retry(db, lambda: _already_sent(db, r.user_id, campaign_type, period_id)):
                report.skipped_already_sent += 1
                continue

            message = render_email(
                campaign.template,
                campaign.subject,
                to=r.email,
                name=r.name,
                email=r.email,
                period_id=period_id,
                unsubscribe_url=unsubscribe_url(r.user_id),
                **r.context,
            )
            try:
                message_id = self.mailer.send(message)
            except SendFailure as e:
                # sin registro: el destinatario sigue siendo elegible en la próxima ejecución
                logger.warning("%s/%s: send to user=%s failed: %s", campaign_type, period_id, r.user_id, e.detail)
                report.failed += 1
                report.failures.append({"user_id": r.user_id, "error": e.detail})
                continue

            db.add(CampaignSendRecord(
                user_id=r.user_id,
                campaign_type=campaign_type,
                period_id=period_id,
                provider_message_id=message_id,
            ))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.warning("%s/%s: user=%s already recorded by a concurrent run", campaign_type, period_id, r.user_id)
            report.sent += 1

        logger.info(
            "campaign %s/%s: sent=%d skipped=%d failed=%d",
            campaign_type, period_id, report.sent, report.skipped_already_sent, report.failed,
        )
        return report

    def run_all(self, db: Session, now: datetime | None = None) -> list[DispatchReport]:
        return [self.run(db, name, None, now) for name in self.registry]


def stats(db: Session, now: datetime | None = None, days: int = 7) -> dict[str, int]:
    since = (now or utc_now_naive()) - timedelta(days=days)
    rows = db.execute(
        select(CampaignSendRecord.campaign_type, func.count())
        .where(CampaignSendRecord.sent_at >= since)
        .group_by(CampaignSendRecord.campaign_type)
    ).all()
    return {t: int(c) for (t, c) in rows}
