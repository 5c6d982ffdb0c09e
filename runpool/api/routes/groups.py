from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from runpool.api.deps import get_db, get_gateway, get_mailer
from runpool.core.auth import get_current_user
from runpool.core.errors import Forbidden, RunPoolError
from runpool.core.periods import WEEK, current_period_id, validate_period_id
from runpool.models.group import Group
from runpool.models.invite import GroupInvite
from runpool.models.membership import GroupMember
from runpool.models.user import User
from runpool.schemas.activity import ActivityCreate, ActivityPublic, LeaderboardResponse, LeaderboardRow
from runpool.schemas.group import GroupCreate, GroupPublic, GroupUpdate, JoinResponse, MemberPublic
from runpool.schemas.invite import InviteCreateRequest, InvitePublic, InviteSendRequest, InviteSendResponse
from runpool.schemas.payment import PayoutPublic
from runpool.services import activities, admission, invites, leaderboard, notifications, payouts
from runpool.services.mailer import Mailer
from runpool.services.stripe_gateway import StripeGateway

# SSE
from runpool.realtime.sse import ACTIVITY_LOGGED, MEMBER_JOINED, publish


router = APIRouter(prefix="/groups", tags=["groups"])


def _members_count(db: Session, group_id: int) -> int:
    return db.execute(
        select(func.count(GroupMember.id)).where(
            GroupMember.group_id == group_id,
            GroupMember.is_active.is_(True),
        )
    ).scalar_one()


def _group_public(db: Session, group: Group, my_role: str | None = None) -> GroupPublic:
    return GroupPublic(
        id=group.id,
        name=group.name,
        rule=group.rule,
        entry_fee=group.entry_fee,
        owner_id=group.owner_id,
        created_at=group.created_at,
        members_count=_members_count(db, group.id),
        my_role=my_role,
    )


def _invite_public(invite: GroupInvite) -> InvitePublic:
    return InvitePublic(
        token=invite.token,
        group_id=invite.group_id,
        url=invites.invite_url(invite.token),
        expires_at=invite.expires_at,
        is_active=invite.is_active,
        uses=invite.uses,
        max_uses=invite.max_uses,
        revoked_at=invite.revoked_at,
        invited_email=invite.invited_email,
    )


def _period_or_current(period_id: str | None) -> str:
    if not period_id:
        return current_period_id(WEEK)
    try:
        return validate_period_id(period_id, WEEK)
    except ValueError as e:
        raise RunPoolError(str(e))


@router.post("", response_model=GroupPublic)
def create_group(
    payload: GroupCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    group = Group(
        name=payload.name.strip(),
        rule=(payload.rule or "").strip() or None,
        entry_fee=payload.entry_fee,
        owner_id=current_user.id,
    )
    db.add(group)
    db.commit()
    db.refresh(group)

    # el owner entra como miembro
    admission.admit(db, current_user, group.id, role="owner")
    return _group_public(db, group, my_role="owner")


@router.get("/mine", response_model=list[GroupPublic])
def my_groups(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    rows = db.execute(
        select(Group, GroupMember.role)
        .join(GroupMember, GroupMember.group_id == Group.id)
        .where(GroupMember.user_id == current_user.id, GroupMember.is_active.is_(True))
        .order_by(Group.name.asc())
    ).all()
    return [_group_public(db, g, my_role=role) for (g, role) in rows]


@router.post("/join-by-invite/{token}", response_model=JoinResponse)
def join_by_invite(
    token: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    result = invites.join_with_token(db, token, current_user)

    if result.already_member:
        return JoinResponse(
            group_id=result.group.id,
            group_name=result.group.name,
            already_member=True,
            message="You are already a member of this group",
        )

    publish(MEMBER_JOINED, {"group_id": result.group.id, "user_id": current_user.id})
    return JoinResponse(
        group_id=result.group.id,
        group_name=result.group.name,
        already_member=False,
        message=f"You joined {result.group.name}",
    )


@router.get("/{group_id}", response_model=GroupPublic)
def get_group(
    group_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    group = admission.get_group(db, group_id)
    m = admission.get_membership(db, group_id, current_user.id)
    return _group_public(db, group, my_role=m.role if m else None)


@router.patch("/{group_id}", response_model=GroupPublic)
def update_group(
    group_id: int,
    payload: GroupUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    group = admission.get_group(db, group_id)
    if group.owner_id != current_user.id:
        raise Forbidden("Only the group owner can edit the group")

    if payload.name is not None:
        group.name = payload.name.strip()
    if payload.rule is not None:
        group.rule = payload.rule.strip() or None
    if payload.entry_fee is not None:
        group.entry_fee = payload.entry_fee
    db.commit()
    db.refresh(group)
    return _group_public(db, group, my_role="owner")


@router.get("/{group_id}/members", response_model=list[MemberPublic])
def list_members(
    group_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    admission.get_group(db, group_id)
    admission.require_member(db, group_id, current_user)

    members = db.execute(
        select(GroupMember, User)
        .join(User, User.id == GroupMember.user_id)
        .where(GroupMember.group_id == group_id, GroupMember.is_active.is_(True))
        .order_by(User.email.asc())
    ).all()

    return [
        MemberPublic(user_id=u.id, email=u.email, name=u.display_name, role=m.role, joined_at=m.joined_at)
        for (m, u) in members
    ]


@router.post("/{group_id}/leave")
def leave_group(
    group_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    admission.leave(db, current_user, group_id)
    return {"ok": True, "group_id": group_id}


# --- invites -------------------------------------------------------------

@router.post("/{group_id}/invites", response_model=InvitePublic)
def create_invite(
    group_id: int,
    payload: InviteCreateRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    group = admission.get_group(db, group_id)
    invite = invites.create_invite(
        db,
        group,
        current_user,
        expires_in_days=payload.expires_in_days,
        max_uses=payload.max_uses,
        invited_email=payload.invited_email,
    )
    return _invite_public(invite)


@router.post("/{group_id}/invites/send", response_model=InviteSendResponse)
def send_invite(
    group_id: int,
    payload: InviteSendRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    mailer: Mailer | None = Depends(get_mailer),
):
    group = admission.get_group(db, group_id)
    sent = invites.send_invite(db, mailer, group, current_user, payload.email, payload.expires_in_days)
    return InviteSendResponse(invite=_invite_public(sent.invite), email_sent=sent.email_sent)


@router.get("/{group_id}/invites", response_model=list[InvitePublic])
def list_invites(
    group_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    group = admission.get_group(db, group_id)
    return [_invite_public(i) for i in invites.list_invites(db, group, current_user)]


@router.post("/{group_id}/invites/{token}/revoke")
def revoke_invite(
    group_id: int,
    token: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    group = admission.get_group(db, group_id)
    invites.revoke_invite(db, group, current_user, token)
    return {"ok": True}


# --- activity / leaderboard ---------------------------------------------

@router.post("/{group_id}/activities", response_model=ActivityPublic)
def log_activity(
    group_id: int,
    payload: ActivityCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    activity = activities.log_activity(db, current_user, group_id, payload.miles, payload.logged_on)

    publish(ACTIVITY_LOGGED, {
        "group_id": group_id,
        "user_id": current_user.id,
        "miles": activity.miles,
        "logged_on": activity.logged_on.isoformat(),
    })
    return activity


@router.get("/{group_id}/leaderboard", response_model=LeaderboardResponse)
def get_leaderboard(
    group_id: int,
    period_id: str | None = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    admission.get_group(db, group_id)
    admission.require_member(db, group_id, current_user)
    period_id = _period_or_current(period_id)

    board = leaderboard.leaderboard(db, group_id, period_id)
    return LeaderboardResponse(
        group_id=group_id,
        period_id=period_id,
        entries=[LeaderboardRow(**e.__dict__) for e in board],
        my_streak=leaderboard.live_streak(db, current_user.id, activities.today()),
    )


@router.post("/{group_id}/periods/{period_id}/payout", response_model=PayoutPublic)
def create_payout(
    group_id: int,
    period_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    gateway: StripeGateway = Depends(get_gateway),
    mailer: Mailer | None = Depends(get_mailer),
):
    group = admission.get_group(db, group_id)
    payout = payouts.create_payout(db, gateway, group, current_user, _period_or_current(period_id))
    notifications.notify_payout(db, mailer, payout)
    return payout
