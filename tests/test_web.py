from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select

from runpool.core.config import Settings
from runpool.core.security import create_access_token
from runpool.main import create_app
from runpool.models.campaign import EmailPreferences
from runpool.models.group import Group
from runpool.models.user import User
from runpool.services.campaigns import unsubscribe_url

from conftest import CRON_SECRET, PASSWORD, WEBHOOK_SECRET, auth_headers


def _login(client, user):
    client.cookies.set("access_token", create_access_token(str(user.id)))


def test_api_register_login_me(client):
    resp = client.post("/auth/register", json={"email": "New@Example.com", "password": "longenough", "full_name": "Neo"})
    assert resp.status_code == 200
    token = resp.json()["access_token"]

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"}).json()
    assert me["email"] == "new@example.com"
    assert me["stripe_connected"] is False

    assert client.post("/auth/register", json={"email": "new@example.com", "password": "longenough"}).status_code == 409
    assert client.post("/auth/login", json={"email": "new@example.com", "password": "nope"}).status_code == 401
    assert client.post("/auth/login", json={"email": "new@example.com", "password": "longenough"}).status_code == 200
    assert client.get("/auth/me").status_code == 401


def test_signup_page_sets_cookie(client, db):
    resp = client.post(
        "/signup",
        data={"email": "page@example.com", "password": "longenough", "full_name": "Page"},
        follow_redirects=False,
    )
    assert resp.status_code == 302
    assert resp.headers["location"] == "/dashboard"
    assert "access_token" in resp.cookies
    assert db.execute(select(User).where(User.email == "page@example.com")).scalar_one()


def test_signup_page_presence_checks(client):
    resp = client.post("/signup", data={"email": "", "password": ""})
    assert resp.status_code == 400
    assert "Email and password are required" in resp.text

    resp = client.post("/signup", data={"email": "a@example.com", "password": "short"})
    assert resp.status_code == 400


def test_login_page_honours_next(client, make_user):
    user = make_user()
    resp = client.post(
        "/login",
        data={"email": user.email, "password": PASSWORD, "next": "/join?token=abc"},
        follow_redirects=False,
    )
    assert resp.headers["location"] == "/join?token=abc"

    resp = client.post(
        "/login",
        data={"email": user.email, "password": PASSWORD, "next": "https://evil.example"},
        follow_redirects=False,
    )
    assert resp.headers["location"] == "/dashboard"

    resp = client.post("/login", data={"email": user.email, "password": "wrong"})
    assert resp.status_code == 401
    assert "Invalid credentials" in resp.text


def test_dashboard_lists_groups_with_payment_status(client, make_user, make_group):
    user = make_user()
    make_group(user, name="Paid Pool", entry_fee=2500)
    make_group(user, name="Free Run")

    assert client.get("/dashboard", follow_redirects=False).status_code == 302

    _login(client, user)
    resp = client.get("/dashboard")
    assert resp.status_code == 200
    assert "Paid Pool" in resp.text
    assert "Free Run" in resp.text
    assert "unknown" in resp.text
    assert "$25.00" in resp.text


def test_create_group_page(client, db, make_user):
    user = make_user()
    _login(client, user)

    resp = client.post("/groups/new", data={"name": "Trail Gang", "rule": "", "entry_fee": "12.50"}, follow_redirects=False)
    assert resp.status_code == 302
    group = db.execute(select(Group).where(Group.name == "Trail Gang")).scalar_one()
    assert group.entry_fee == 1250
    assert resp.headers["location"].startswith(f"/groups/{group.id}")

    page = client.get(f"/groups/{group.id}")
    assert page.status_code == 200
    assert "Trail Gang" in page.text

    resp = client.post(f"/groups/{group.id}/invites-web", follow_redirects=False)
    assert "invite_link=" in resp.headers["location"]


def test_group_page_for_non_member_redirects(client, make_user, make_group):
    g = make_group(make_user())
    _login(client, make_user())
    resp = client.get(f"/groups/{g.id}", follow_redirects=False)
    assert resp.status_code == 302
    assert resp.headers["location"].startswith("/dashboard?msg=")


def test_unsubscribe_link(client, db, make_user):
    user = make_user()
    link = unsubscribe_url(user.id)
    path = link[link.index("/unsubscribe"):]

    resp = client.get(path)
    assert resp.status_code == 200
    assert "unsubscribed" in resp.text
    prefs = db.get(EmailPreferences, user.id)
    assert prefs.all_emails is False

    assert client.get("/unsubscribe?token=forged").status_code == 400


def test_email_preferences_api(client, make_user):
    user = make_user()

    prefs = client.get("/me/email-preferences", headers=auth_headers(user)).json()
    assert all(prefs.values())

    resp = client.put("/me/email-preferences", json={"daily_motivation": False}, headers=auth_headers(user))
    assert resp.status_code == 200
    assert resp.json()["daily_motivation"] is False
    assert resp.json()["running_tips"] is True

    prefs = client.get("/me/email-preferences", headers=auth_headers(user)).json()
    assert prefs["daily_motivation"] is False


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_app_uses_configured_database(tmp_path):
    url = f"sqlite:///{tmp_path / 'pool.db'}"
    cfg = Settings(
        DATABASE_URL=url,
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        CRON_SECRET=CRON_SECRET,
        STRIPE_SECRET_KEY=None,
        RESEND_API_KEY=None,
    )
    app = create_app(cfg)
    assert str(app.state.engine.url) == url

    with TestClient(app) as c:
        resp = c.post("/auth/register", json={"email": "file@example.com", "password": "longenough"})
        assert resp.status_code == 200

    engine = create_engine(url)
    with engine.connect() as conn:
        emails = conn.execute(select(User.email)).scalars().all()
    engine.dispose()
    assert emails == ["file@example.com"]
