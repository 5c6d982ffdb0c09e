"""Stripe Connect onboarding: the user links the account that receives payouts."""
import logging
from urllib.parse import quote

from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from runpool.api.deps import get_db, get_gateway, get_mailer
from runpool.core.config import settings
from runpool.core.errors import ProcessorError
from runpool.core.security import create_signed_token, decode_token
from runpool.models.user import User
from runpool.services import notifications
from runpool.services.mailer import Mailer
from runpool.services.stripe_gateway import StripeGateway
from runpool.web.session import get_web_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/connect/stripe", tags=["connect"])

STATE_PURPOSE = "stripe_connect"
STATE_MINUTES = 30
BILLING_PATH = "/settings/billing"


def _callback_url() -> str:
    return f"{settings.SITE_URL.rstrip('/')}/connect/stripe/callback"


def _safe_path(path: str | None) -> str:
    # solo rutas internas, nunca una URL absoluta
    if not path or not path.startswith("/") or path.startswith("//"):
        return BILLING_PATH
    return path


def _back(path: str, **params: str) -> RedirectResponse:
    query = "&".join(f"{k}={quote(v)}" for k, v in params.items())
    sep = "&" if "?" in path else "?"
    return RedirectResponse(url=f"{path}{sep}{query}", status_code=302)


@router.get("/authorize")
def authorize(
    next: str | None = None,
    user: User | None = Depends(get_web_user),
    gateway: StripeGateway = Depends(get_gateway),
):
    if user is None:
        return RedirectResponse(url=f"/login?next={quote(BILLING_PATH)}", status_code=302)

    state = create_signed_token(str(user.id), STATE_PURPOSE, STATE_MINUTES, next=_safe_path(next))
    return RedirectResponse(url=gateway.connect_url(_callback_url(), state), status_code=302)


@router.get("/callback")
def callback(
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    mailer: Mailer | None = Depends(get_mailer),
):
    if error:
        logger.warning("Stripe Connect declined: %s %s", error, error_description or "")
        return _back(BILLING_PATH, error=error_description or error)

    if not code or not state:
        return _back(BILLING_PATH, error="missing_parameters")

    claims = decode_token(state, purpose=STATE_PURPOSE)
    if claims is None:
        return _back(BILLING_PATH, error="invalid_state")

    user = db.get(User, int(claims["sub"]))
    if user is None:
        return _back(BILLING_PATH, error="user_not_found")

    next_path = _safe_path(claims.get("next"))
    try:
        account_id, status = gateway.connect_account(code)
    except ProcessorError as e:
        return _back(next_path, error=e.detail)

    user.stripe_account_id = account_id
    user.stripe_account_status = status
    db.commit()
    logger.info("user=%s connected Stripe account %s (%s)", user.id, account_id, status)
    notifications.notify_stripe_setup(mailer, user)

    return _back(next_path, success="stripe_connected")
