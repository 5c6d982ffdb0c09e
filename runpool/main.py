import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from runpool.core.config import Settings, settings as default_settings
from runpool.core.database import Base, make_engine, make_session_factory
from runpool.core.errors import install_error_handlers
from runpool.core.log import configure_logging
from runpool.models.user import User  # noqa: F401
from runpool.models.group import Group  # noqa: F401
from runpool.models.membership import GroupMember  # noqa: F401
from runpool.models.invite import GroupInvite  # noqa: F401
from runpool.models.activity import Activity  # noqa: F401
from runpool.models.payment import PaymentRecord, ProcessedEvent  # noqa: F401
from runpool.models.payout import Payout  # noqa: F401
from runpool.models.campaign import CampaignSendRecord, EmailPreferences  # noqa: F401

from runpool.api.routes.auth import router as auth_router
from runpool.api.routes.groups import router as groups_router
from runpool.api.routes.payments import router as payments_router
from runpool.api.routes.connect import router as connect_router
from runpool.api.routes.campaigns import router as campaigns_router
from runpool.api.routes.preferences import router as preferences_router

from runpool.web.routes import router as web_router

# SSE
from runpool.realtime.sse import router as sse_router

from runpool.services.campaigns import CampaignDispatcher, build_registry
from runpool.services.mailer import ResendMailer
from runpool.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=app.state.engine)
    yield
    if app.state.mailer is not None and hasattr(app.state.mailer, "close"):
        app.state.mailer.close()
    app.state.engine.dispose()


def _configure_boundaries(app: FastAPI, cfg: Settings) -> None:
    """Decide once, at startup, which outer boundaries can serve requests."""
    # ConfigurationError aquí impide arrancar
    registry = build_registry(cfg.ENABLED_CAMPAIGNS)

    app.state.webhook_secret = cfg.STRIPE_WEBHOOK_SECRET
    if not cfg.STRIPE_WEBHOOK_SECRET:
        logger.error("STRIPE_WEBHOOK_SECRET is not set: /webhooks/stripe will refuse every delivery")

    app.state.cron_secret = cfg.CRON_SECRET
    if not cfg.CRON_SECRET:
        logger.error("CRON_SECRET is not set: scheduled campaigns are disabled")

    app.state.gateway = None
    if cfg.STRIPE_SECRET_KEY:
        app.state.gateway = StripeGateway(cfg.STRIPE_SECRET_KEY, cfg.STRIPE_CLIENT_ID, cfg.CURRENCY)
    else:
        logger.warning("STRIPE_SECRET_KEY is not set: payments and Connect onboarding are disabled")

    app.state.mailer = None
    if cfg.RESEND_API_KEY:
        app.state.mailer = ResendMailer(
            cfg.RESEND_API_KEY,
            cfg.RESEND_FROM,
            api_url=cfg.RESEND_API_URL,
            timeout=cfg.EMAIL_SEND_TIMEOUT,
        )
    else:
        logger.warning("RESEND_API_KEY is not set: emails are disabled")

    app.state.dispatcher = CampaignDispatcher(registry, app.state.mailer) if app.state.mailer else None


def create_app(cfg: Settings | None = None) -> FastAPI:
    cfg = cfg or default_settings
    configure_logging(cfg.LOG_LEVEL)

    app = FastAPI(title="RunPool API", version="0.1.0", lifespan=lifespan)

    # el engine sale de cfg, no de los settings globales
    app.state.engine = make_engine(cfg.DATABASE_URL)
    app.state.SessionLocal = make_session_factory(app.state.engine)

    # CORS primero
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.CORS_ORIGINS,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        allow_credentials=False,
    )
    install_error_handlers(app)
    _configure_boundaries(app, cfg)

    # Routers después
    app.include_router(auth_router)
    app.include_router(groups_router)
    app.include_router(payments_router)
    app.include_router(connect_router)
    app.include_router(campaigns_router)
    app.include_router(preferences_router)

    # SSE
    app.include_router(sse_router)

    # Web (HTML)
    app.include_router(web_router)

    @app.get("/health")
    def health():
        return {"ok": True}

    return app


app = create_app()
