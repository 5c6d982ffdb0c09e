import hashlib
import hmac
import json
import time
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from runpool.core.config import Settings
from runpool.core.database import Base, get_db
from runpool.core.errors import SendFailure
from runpool.core.periods import utc_now_naive
from runpool.core.security import create_access_token, hash_password
from runpool.main import create_app
from runpool.models.group import Group
from runpool.models.membership import GroupMember
from runpool.models.user import User
from runpool.services.campaigns import CAMPAIGNS, CampaignDispatcher, build_registry
from runpool.services.stripe_gateway import StripeGateway

WEBHOOK_SECRET = "whsec_test_secret"
CRON_SECRET = "cron-test-secret"

# bcrypt es lento: un hash para todos los usuarios de test
PASSWORD = "correct-horse"
PASSWORD_HASH = hash_password(PASSWORD)


class FakeMailer:
    """Records every message; ``fail_for`` makes sends to those addresses fail."""

    def __init__(self):
        self.sent = []
        self.fail_for: set[str] = set()

    def send(self, message) -> str:
        if message.to in self.fail_for:
            raise SendFailure(f"rejected {message.to}")
        self.sent.append(message)
        return f"msg_{len(self.sent)}"

    def to(self, email: str) -> list:
        return [m for m in self.sent if m.to == email]


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False)()
    yield session
    session.close()


@pytest.fixture()
def mailer():
    return FakeMailer()


@pytest.fixture()
def gateway():
    gw = MagicMock(spec=StripeGateway)
    gw.create_entry_intent.return_value = ("pi_secret_123", "pi_123")
    gw.create_transfer.return_value = "tr_123"
    gw.connect_url.return_value = "https://connect.stripe.com/oauth/authorize?state=x"
    gw.connect_account.return_value = ("acct_123", "complete")
    return gw


@pytest.fixture()
def dispatcher(mailer):
    return CampaignDispatcher(build_registry(list(CAMPAIGNS)), mailer)


@pytest.fixture()
def app(db, mailer, gateway, dispatcher):
    cfg = Settings(
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        CRON_SECRET=CRON_SECRET,
        STRIPE_SECRET_KEY=None,
        RESEND_API_KEY=None,
    )
    app = create_app(cfg)
    app.state.mailer = mailer
    app.state.gateway = gateway
    app.state.dispatcher = dispatcher

    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    return app


@pytest.fixture()
def client(app):
    return TestClient(app)


@pytest.fixture()
def make_user(db):
    counter = {"n": 0}

    def _make(email: str | None = None, full_name: str | None = None, **fields) -> User:
        counter["n"] += 1
        user = User(
            email=email or f"runner{counter['n']}@example.com",
            hashed_password=PASSWORD_HASH,
            full_name=full_name,
            **fields,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture()
def make_group(db):
    def _make(owner: User, name: str = "Morning Milers", entry_fee: int = 0, rule: str | None = None) -> Group:
        group = Group(name=name, entry_fee=entry_fee, rule=rule, owner_id=owner.id)
        db.add(group)
        db.commit()
        db.refresh(group)
        db.add(GroupMember(group_id=group.id, user_id=owner.id, role="owner"))
        db.commit()
        return group

    return _make


@pytest.fixture()
def add_member(db):
    def _add(group: Group, user: User, role: str = "member") -> GroupMember:
        m = GroupMember(group_id=group.id, user_id=user.id, role=role)
        db.add(m)
        db.commit()
        return m

    return _add


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(str(user.id))}"}


def stripe_signature(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    ts = timestamp or int(time.time())
    signed = f"{ts}.{payload}".encode("utf-8")
    sig = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def stripe_event(event_type: str, obj: dict, event_id: str = "evt_1") -> str:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    })


def intent_object(user_id: int, group_id: int, period_id: str, amount: int = 2500, intent_id: str = "pi_123", **extra) -> dict:
    return {
        "id": intent_id,
        "object": "payment_intent",
        "amount": amount,
        "metadata": {
            "user_id": str(user_id),
            "group_id": str(group_id),
            "period_id": period_id,
            "purpose": "run_pool_entry",
        },
        **extra,
    }


def hours_ago(hours: int):
    return utc_now_naive() - timedelta(hours=hours)
