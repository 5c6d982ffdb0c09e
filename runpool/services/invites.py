# consumir un token = un único UPDATE condicional (rowcount 0 -> ya usado)
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from runpool.core.config import settings
from runpool.core.errors import (
    GroupNotFound,
    InvalidToken,
    InviteEmailMismatch,
    NotFound,
    TokenConsumed,
    Unauthenticated,
)
from runpool.core.periods import utc_now_naive
from runpool.core.retry import with_store_retry
from runpool.models.group import Group
from runpool.models.invite import GroupInvite
from runpool.models.membership import GroupMember
from runpool.models.user import User
from runpool.services import admission
from runpool.services.mailer import Mailer, render_email, send_best_effort

logger = logging.getLogger(__name__)

MIN_EXPIRY_DAYS = 1
MAX_EXPIRY_DAYS = 60


@dataclass(frozen=True)
class GroupRef:
    id: int
    name: str
    rule: str | None
    entry_fee: int

    @classmethod
    def from_group(cls, group: Group) -> "GroupRef":
        return cls(id=group.id, name=group.name, rule=group.rule, entry_fee=group.entry_fee)


def extract_token(raw: str | None) -> str | None:
    """Accept either a bare token or a full invite link containing ``token=``."""
    if not raw:
        return None
    val = raw.strip()
    if not val:
        return None
    if "token=" in val:
        val = val.split("token=", 1)[1].split("&", 1)[0].strip()
    return val or None


def create_invite(
    db: Session,
    group: Group,
    creator: User | None,
    expires_in_days: int | None = None,
    max_uses: int | None = 1,
    invited_email: str | None = None,
) -> GroupInvite:
    admission.require_admin(db, group, creator)

    days = expires_in_days or settings.INVITE_DEFAULT_EXPIRY_DAYS
    days = max(MIN_EXPIRY_DAYS, min(MAX_EXPIRY_DAYS, days))

    invite = GroupInvite(
        group_id=group.id,
        token=secrets.token_urlsafe(24),
        created_by=creator.id,
        expires_at=utc_now_naive() + timedelta(days=days),
        is_active=True,
        uses=0,
        max_uses=max_uses,
        invited_email=invited_email.strip().lower() if invited_email else None,
    )
    db.add(invite)
    db.commit()
    db.refresh(invite)
    return invite


def revoke_invite(db: Session, group: Group, user: User | None, token: str) -> GroupInvite:
    admission.require_admin(db, group, user)

    invite = db.execute(
        select(GroupInvite).where(
            GroupInvite.group_id == group.id,
            GroupInvite.token == token,
        )
    ).scalar_one_or_none()
    if not invite:
        raise NotFound("Invite not found")

    invite.is_active = False
    invite.revoked_at = utc_now_naive()
    db.commit()
    return invite


def invite_url(token: str) -> str:
    return f"{settings.SITE_URL.rstrip('/')}/join?token={token}"


def _find_invite(db: Session, token: str) -> GroupInvite | None:
    return db.execute(
        select(GroupInvite)
        .where(GroupInvite.token == token)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _rejection(invite: GroupInvite | None, user: User, now) -> Exception:
    if invite is None or not invite.is_active or invite.revoked_at is not None:
        return InvalidToken()
    if invite.expires_at is not None and invite.expires_at <= now:
        return InvalidToken("This invite has expired. Ask the admin to send a new one.")
    if invite.invited_email and invite.invited_email.lower() != user.email.lower():
        return InviteEmailMismatch(
            f"This invite is for {invite.invited_email}. You are signed in as {user.email}."
        )
    if invite.is_exhausted:
        return TokenConsumed()
    return InvalidToken()


def _consume(db: Session, token: str, user: User) -> GroupRef:
    now = utc_now_naive()

    result = db.execute(
        update(GroupInvite)
        .where(
            GroupInvite.token == token,
            GroupInvite.is_active.is_(True),
            GroupInvite.revoked_at.is_(None),
            or_(GroupInvite.expires_at.is_(None), GroupInvite.expires_at > now),
            or_(GroupInvite.max_uses.is_(None), GroupInvite.uses < GroupInvite.max_uses),
            or_(
                GroupInvite.invited_email.is_(None),
                func.lower(GroupInvite.invited_email) == user.email.lower(),
            ),
        )
        .values(uses=GroupInvite.uses + 1)
        .execution_options(synchronize_session=False)
    )

    if result.rowcount != 1:
        db.rollback()
        raise _rejection(_find_invite(db, token), user, now)

    invite = _find_invite(db, token)
    group = db.get(Group, invite.group_id)
    if not group:
        db.rollback()
        raise GroupNotFound()
    return GroupRef.from_group(group)


def resolve(db: Session, token: str | None, user: User | None) -> GroupRef:
    """Resolve ``token`` to its group, consuming one use."""
    if user is None:
        raise Unauthenticated()
    token = (token or "").strip()
    if not token:
        raise InvalidToken()

    def _run() -> GroupRef:
        ref = _consume(db, token, user)
        db.commit()
        return ref

    ref = with_store_retry(db, _run)
    logger.info("invite resolved group=%s user=%s", ref.id, user.id)
    return ref


@dataclass(frozen=True)
class JoinResult:
    group: GroupRef
    membership: GroupMember
    already_member: bool


def join_with_token(db: Session, token: str | None, user: User | None) -> JoinResult:
    """Resolve + admit. An existing member is redirected without spending the token."""
    if user is None:
        raise Unauthenticated()
    token = (token or "").strip()
    if not token:
        raise InvalidToken()

    peek = _find_invite(db, token)
    if peek is not None:
        existing = admission.get_membership(db, peek.group_id, user.id)
        if existing:
            group = admission.get_group(db, peek.group_id)
            return JoinResult(GroupRef.from_group(group), existing, already_member=True)

    # consumo + alta en una sola transacción: un rollback deshace ambos y se reintentan juntos
    def _run() -> tuple[GroupRef, GroupMember]:
        ref = _consume(db, token, user)
        return ref, admission.admit_once(db, user, ref.id, "member")

    ref, membership = with_store_retry(db, _run)
    logger.info("invite resolved group=%s user=%s", ref.id, user.id)
    return JoinResult(ref, membership, already_member=False)


@dataclass(frozen=True)
class SentInvite:
    invite: GroupInvite
    email_sent: bool


def send_invite(
    db: Session,
    mailer: Mailer | None,
    group: Group,
    inviter: User | None,
    email: str,
    expires_in_days: int | None = None,
) -> SentInvite:
    """Create a single-use invite locked to ``email`` and mail the join link.

    The invite is kept even if the email cannot be sent, so the admin can
    share the link by hand.
    """
    invite = create_invite(db, group, inviter, expires_in_days, max_uses=1, invited_email=email)

    message = render_email(
        "invite.html",
        "{{ inviter_name }} invited you to {{ group_name }} on RunPool",
        to=invite.invited_email,
        email=invite.invited_email,
        inviter_name=inviter.display_name,
        group_name=group.name,
        rule=group.rule,
        entry_fee=group.entry_fee,
        join_url=invite_url(invite.token),
        expires_at=invite.expires_at,
    )
    message_id = send_best_effort(mailer, message)
    if message_id:
        logger.info("invite to group=%s emailed (%s)", group.id, message_id)
    return SentInvite(invite, email_sent=message_id is not None)


def list_invites(db: Session, group: Group, user: User | None) -> list[GroupInvite]:
    admission.require_admin(db, group, user)
    return db.execute(
        select(GroupInvite)
        .where(GroupInvite.group_id == group.id)
        .order_by(GroupInvite.created_at.desc(), GroupInvite.id.desc())
    ).scalars().all()
