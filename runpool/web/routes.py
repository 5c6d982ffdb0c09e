from pathlib import Path
from urllib.parse import quote

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy import select
from sqlalchemy.orm import Session

from runpool.api.deps import get_db
from runpool.api.routes.auth import authenticate, register_user
from runpool.core.config import settings
from runpool.core.errors import RunPoolError
from runpool.core.periods import WEEK, current_period_id
from runpool.core.security import create_access_token
from runpool.models.group import Group
from runpool.models.membership import GroupMember
from runpool.models.user import User
from runpool.realtime.sse import ACTIVITY_LOGGED, MEMBER_JOINED, publish
from runpool.services import activities, admission, invites, leaderboard, payments, preferences
from runpool.services.mailer import format_cents
from runpool.web.session import COOKIE_NAME, get_web_user


router = APIRouter(include_in_schema=False)
templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent / "templates"))
templates.env.filters["cents"] = format_cents


def _template_ctx(request: Request, user: User | None, **extra):
    base = {
        "user": user,
        "user_email": user.email if user else None,
        "msg": request.query_params.get("msg"),
        "dev": settings.DEV,
    }
    base.update(extra)
    return base


def _render(request: Request, name: str, user: User | None, status_code: int = 200, **extra):
    return templates.TemplateResponse(request, name, _template_ctx(request, user, **extra), status_code=status_code)


def _login_redirect(next_path: str, msg: str | None = None) -> RedirectResponse:
    url = f"/login?next={quote(next_path)}"
    if msg:
        url += f"&msg={quote(msg)}"
    return RedirectResponse(url=url, status_code=302)


def _safe_next(next_path: str | None) -> str:
    if not next_path or not next_path.startswith("/") or next_path.startswith("//"):
        return "/dashboard"
    return next_path


def _signed_in(url: str, user: User) -> RedirectResponse:
    resp = RedirectResponse(url=url, status_code=302)
    resp.set_cookie(COOKIE_NAME, create_access_token(str(user.id)), httponly=True, samesite="lax")
    return resp


@router.get("/", response_class=HTMLResponse)
def home(request: Request, user: User | None = Depends(get_web_user)):
    if user:
        return RedirectResponse(url="/dashboard", status_code=302)
    return _render(request, "index.html", None, title="RunPool")


# --- signin / signup -----------------------------------------------------

@router.get("/login", response_class=HTMLResponse)
def login(request: Request, next: str | None = None, user: User | None = Depends(get_web_user)):
    return _render(request, "login.html", user, title="Sign in", next=_safe_next(next))


@router.post("/login")
def login_post(
    request: Request,
    email: str = Form(""),
    password: str = Form(""),
    next: str | None = Form(None),
    db: Session = Depends(get_db),
):
    next_path = _safe_next(next)
    if not email.strip() or not password:
        return _render(request, "login.html", None, 400, title="Sign in", next=next_path,
                       error="Email and password are required", email=email)
    try:
        user = authenticate(db, email, password)
    except RunPoolError as e:
        return _render(request, "login.html", None, 401, title="Sign in", next=next_path,
                       error=e.detail, email=email)
    return _signed_in(next_path, user)


@router.get("/signup", response_class=HTMLResponse)
def signup(request: Request, next: str | None = None, user: User | None = Depends(get_web_user)):
    return _render(request, "signup.html", user, title="Create account", next=_safe_next(next))


@router.post("/signup")
def signup_post(
    request: Request,
    email: str = Form(""),
    password: str = Form(""),
    full_name: str = Form(""),
    next: str | None = Form(None),
    db: Session = Depends(get_db),
):
    next_path = _safe_next(next)
    ctx = {"title": "Create account", "next": next_path, "email": email, "full_name": full_name}

    if not email.strip() or not password:
        return _render(request, "signup.html", None, 400, error="Email and password are required", **ctx)
    if len(password) < 8:
        return _render(request, "signup.html", None, 400, error="Password must be at least 8 characters", **ctx)
    try:
        user = register_user(db, email, password, full_name)
    except (RunPoolError, ValueError) as e:
        return _render(request, "signup.html", None, 400, error=getattr(e, "detail", str(e)), **ctx)
    return _signed_in(next_path, user)


@router.get("/logout")
def logout():
    resp = RedirectResponse(url="/", status_code=302)
    resp.delete_cookie(COOKIE_NAME)
    return resp


# --- dashboard / groups --------------------------------------------------

@router.get("/dashboard", response_class=HTMLResponse)
def dashboard(request: Request, db: Session = Depends(get_db), user: User | None = Depends(get_web_user)):
    if not user:
        return _login_redirect("/dashboard")

    period_id = current_period_id(WEEK)
    rows = db.execute(
        select(Group, GroupMember.role)
        .join(GroupMember, GroupMember.group_id == Group.id)
        .where(GroupMember.user_id == user.id, GroupMember.is_active.is_(True))
        .order_by(Group.name.asc())
    ).all()

    my_groups = [
        {
            "group": g,
            "role": role,
            "payment_status": payments.status(db, user.id, g.id, period_id) if g.entry_fee > 0 else None,
        }
        for (g, role) in rows
    ]
    return _render(
        request, "dashboard.html", user,
        title="Dashboard",
        period_id=period_id,
        my_groups=my_groups,
        streak=leaderboard.live_streak(db, user.id, activities.today()),
    )


@router.get("/groups/new", response_class=HTMLResponse)
def group_new(request: Request, user: User | None = Depends(get_web_user)):
    if not user:
        return _login_redirect("/groups/new")
    return _render(request, "group_new.html", user, title="New group")


@router.post("/groups/new")
def group_new_post(
    request: Request,
    name: str = Form(""),
    rule: str = Form(""),
    entry_fee: str = Form("0"),
    db: Session = Depends(get_db),
    user: User | None = Depends(get_web_user),
):
    if not user:
        return _login_redirect("/groups/new")

    ctx = {"title": "New group", "name": name, "rule": rule, "entry_fee": entry_fee}
    if not name.strip():
        return _render(request, "group_new.html", user, 400, error="Group name is required", **ctx)
    try:
        # el formulario pide dólares, se guarda en céntimos
        fee = round(float(entry_fee or 0) * 100)
    except ValueError:
        fee = -1
    if fee < 0:
        return _render(request, "group_new.html", user, 400, error="Entry fee must be a positive amount", **ctx)

    group = Group(name=name.strip(), rule=rule.strip() or None, entry_fee=fee, owner_id=user.id)
    db.add(group)
    db.commit()
    db.refresh(group)
    admission.admit(db, user, group.id, role="owner")

    return RedirectResponse(url=f"/groups/{group.id}?msg=Group created", status_code=302)


@router.get("/groups/{group_id}", response_class=HTMLResponse)
def group_detail(
    request: Request,
    group_id: int,
    period_id: str | None = None,
    db: Session = Depends(get_db),
    user: User | None = Depends(get_web_user),
):
    if not user:
        return _login_redirect(f"/groups/{group_id}")

    try:
        group = admission.get_group(db, group_id)
        membership = admission.require_member(db, group.id, user)
    except RunPoolError as e:
        return RedirectResponse(url=f"/dashboard?msg={quote(e.detail)}", status_code=302)

    period_id = period_id or current_period_id(WEEK)
    try:
        board = leaderboard.leaderboard(db, group.id, period_id)
    except ValueError:
        return RedirectResponse(url=f"/groups/{group.id}?msg=Invalid period", status_code=302)

    return _render(
        request, "group_detail.html", user,
        title=group.name,
        group=group,
        role=membership.role,
        is_admin=membership.role in admission.ADMIN_ROLES,
        period_id=period_id,
        board=board,
        payment_status=payments.status(db, user.id, group.id, period_id) if group.entry_fee > 0 else None,
        joined=request.query_params.get("joined") == "1",
        invite_link=request.query_params.get("invite_link"),
    )


@router.post("/groups/{group_id}/activities-web")
def log_activity_web(
    group_id: int,
    miles: str = Form(""),
    db: Session = Depends(get_db),
    user: User | None = Depends(get_web_user),
):
    if not user:
        return _login_redirect(f"/groups/{group_id}")

    try:
        value = float(miles)
    except ValueError:
        value = 0
    if value <= 0:
        return RedirectResponse(url=f"/groups/{group_id}?msg=Enter the miles you ran", status_code=302)

    try:
        activity = activities.log_activity(db, user, group_id, value)
    except RunPoolError as e:
        return RedirectResponse(url=f"/groups/{group_id}?msg={quote(e.detail)}", status_code=302)

    publish(ACTIVITY_LOGGED, {
        "group_id": group_id,
        "user_id": user.id,
        "miles": activity.miles,
        "logged_on": activity.logged_on.isoformat(),
    })
    return RedirectResponse(url=f"/groups/{group_id}?msg=Miles logged", status_code=302)


@router.post("/groups/{group_id}/invites-web")
def create_invite_web(
    group_id: int,
    db: Session = Depends(get_db),
    user: User | None = Depends(get_web_user),
):
    if not user:
        return _login_redirect(f"/groups/{group_id}")

    try:
        group = admission.get_group(db, group_id)
        invite = invites.create_invite(db, group, user)
    except RunPoolError as e:
        return RedirectResponse(url=f"/groups/{group_id}?msg={quote(e.detail)}", status_code=302)

    link = invites.invite_url(invite.token)
    return RedirectResponse(url=f"/groups/{group_id}?invite_link={quote(link)}", status_code=302)


# --- join by invite ------------------------------------------------------

def _join(request: Request, db: Session, user: User | None, raw_token: str | None):
    token = invites.extract_token(raw_token)
    if not token:
        return _render(request, "join.html", user, title="Join a group", token=raw_token or "")

    if not user:
        return _login_redirect(f"/join?token={token}", "Sign in to accept the invite")

    try:
        result = invites.join_with_token(db, token, user)
    except RunPoolError as e:
        return _render(request, "join.html", user, e.status_code, title="Join a group", token=token, error=e.detail)

    if not result.already_member:
        publish(MEMBER_JOINED, {"group_id": result.group.id, "user_id": user.id})
    return RedirectResponse(url=f"/groups/{result.group.id}?joined=1", status_code=302)


@router.get("/join", response_class=HTMLResponse)
def join(
    request: Request,
    token: str | None = None,
    db: Session = Depends(get_db),
    user: User | None = Depends(get_web_user),
):
    return _join(request, db, user, token)


@router.post("/join")
def join_post(
    request: Request,
    token: str = Form(""),
    db: Session = Depends(get_db),
    user: User | None = Depends(get_web_user),
):
    return _join(request, db, user, token)


# --- settings ------------------------------------------------------------

@router.get("/settings/billing", response_class=HTMLResponse)
def billing(
    request: Request,
    success: str | None = None,
    error: str | None = None,
    user: User | None = Depends(get_web_user),
):
    if not user:
        return _login_redirect("/settings/billing")
    return _render(
        request, "billing.html", user,
        title="Payouts",
        connected=bool(user.stripe_account_id),
        account_status=user.stripe_account_status,
        success=success,
        error=error,
    )


@router.get("/unsubscribe", response_class=HTMLResponse)
def unsubscribe(request: Request, token: str | None = None, db: Session = Depends(get_db)):
    user = preferences.unsubscribe(db, token)
    status_code = 200 if user else 400
    return _render(request, "unsubscribe.html", None, status_code, title="Unsubscribe", done=user is not None)
