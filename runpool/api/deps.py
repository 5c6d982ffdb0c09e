"""Request-scoped access to the collaborators built once in ``create_app``."""
import hmac

from fastapi import Header, Request

from runpool.core.database import get_db  # noqa: F401
from runpool.core.errors import ProcessorError, RunPoolError, Unauthenticated
from runpool.services.campaigns import CampaignDispatcher
from runpool.services.mailer import Mailer
from runpool.services.stripe_gateway import StripeGateway


class BoundaryDisabled(RunPoolError):
    status_code = 503
    message = "This endpoint is disabled: missing configuration"


def get_mailer(request: Request) -> Mailer | None:
    return request.app.state.mailer


def get_gateway(request: Request) -> StripeGateway:
    gateway = request.app.state.gateway
    if gateway is None:
        raise ProcessorError("Stripe is not configured")
    return gateway


def get_dispatcher(request: Request) -> CampaignDispatcher:
    dispatcher = request.app.state.dispatcher
    if dispatcher is None:
        raise BoundaryDisabled("Email campaigns are disabled: no notification sender configured")
    return dispatcher


def get_webhook_secret(request: Request) -> str:
    secret = request.app.state.webhook_secret
    if not secret:
        raise BoundaryDisabled("Stripe webhooks are disabled: STRIPE_WEBHOOK_SECRET is not set")
    return secret


def require_cron(request: Request, authorization: str | None = Header(default=None)) -> None:
    secret = request.app.state.cron_secret
    if not secret:
        raise BoundaryDisabled("Scheduled campaigns are disabled: CRON_SECRET is not set")
    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise Unauthenticated("Invalid scheduler credentials")
