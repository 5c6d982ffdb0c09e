import threading
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from runpool.core.database import Base
from runpool.core.errors import (
    Forbidden,
    InvalidToken,
    InviteEmailMismatch,
    TokenConsumed,
    Unauthenticated,
)
from runpool.core.periods import utc_now_naive
from runpool.models.group import Group
from runpool.models.invite import GroupInvite
from runpool.models.membership import GroupMember
from runpool.models.user import User
from runpool.services import admission, invites

from conftest import PASSWORD_HASH, auth_headers


def _invite(db, group, token="abc123", max_uses=1, expires_at=None, **fields) -> GroupInvite:
    inv = GroupInvite(
        group_id=group.id,
        token=token,
        created_by=group.owner_id,
        max_uses=max_uses,
        expires_at=expires_at,
        **fields,
    )
    db.add(inv)
    db.commit()
    return inv


def test_single_use_token_resolves_once(db, make_user, make_group):
    owner, u1, u2 = make_user(), make_user(), make_user()
    g1 = make_group(owner, name="G1", entry_fee=2500)
    _invite(db, g1, "abc123")

    ref = invites.resolve(db, "abc123", u1)
    assert ref.id == g1.id
    assert ref.name == "G1"
    assert ref.entry_fee == 2500

    with pytest.raises(TokenConsumed):
        invites.resolve(db, "abc123", u2)


def test_resolve_requires_identity(db, make_user, make_group):
    g = make_group(make_user())
    _invite(db, g)
    with pytest.raises(Unauthenticated):
        invites.resolve(db, "abc123", None)


@pytest.mark.parametrize("token", ["", "   ", None, "does-not-exist"])
def test_unknown_or_empty_token_is_invalid(db, make_user, token):
    with pytest.raises(InvalidToken):
        invites.resolve(db, token, make_user())


def test_expired_token_is_invalid(db, make_user, make_group):
    g = make_group(make_user())
    _invite(db, g, expires_at=utc_now_naive() - timedelta(minutes=1))
    with pytest.raises(InvalidToken) as exc:
        invites.resolve(db, "abc123", make_user())
    assert "expired" in exc.value.detail


def test_revoked_token_is_invalid(db, make_user, make_group):
    owner = make_user()
    g = make_group(owner)
    _invite(db, g)
    invites.revoke_invite(db, g, owner, "abc123")

    with pytest.raises(InvalidToken):
        invites.resolve(db, "abc123", make_user())


def test_reusable_token_resolves_many_times(db, make_user, make_group):
    g = make_group(make_user())
    _invite(db, g, max_uses=None)

    for _ in range(3):
        assert invites.resolve(db, "abc123", make_user()).id == g.id

    inv = db.execute(select(GroupInvite).where(GroupInvite.token == "abc123")).scalar_one()
    db.refresh(inv)
    assert inv.uses == 3


def test_email_locked_invite(db, make_user, make_group):
    g = make_group(make_user())
    _invite(db, g, invited_email="friend@example.com")

    with pytest.raises(InviteEmailMismatch):
        invites.resolve(db, "abc123", make_user(email="stranger@example.com"))

    # el intento fallido no gasta el token
    assert invites.resolve(db, "abc123", make_user(email="Friend@Example.com")).id == g.id


def test_create_invite_defaults_and_clamp(db, make_user, make_group):
    owner = make_user()
    g = make_group(owner)

    inv = invites.create_invite(db, g, owner)
    assert inv.max_uses == 1
    assert inv.uses == 0
    assert timedelta(days=13) < inv.expires_at - utc_now_naive() <= timedelta(days=14)

    inv = invites.create_invite(db, g, owner, expires_in_days=365)
    assert inv.expires_at - utc_now_naive() <= timedelta(days=60)


def test_only_admins_create_invites(db, make_user, make_group, add_member):
    g = make_group(make_user())
    member = make_user()
    add_member(g, member)

    with pytest.raises(Forbidden):
        invites.create_invite(db, g, member)


def test_extract_token_accepts_links():
    assert invites.extract_token("https://runpool.space/join?token=xyz&utm=1") == "xyz"
    assert invites.extract_token("  xyz ") == "xyz"
    assert invites.extract_token("") is None


def test_join_with_token_admits_and_consumes(db, make_user, make_group):
    g = make_group(make_user())
    _invite(db, g)
    user = make_user()

    result = invites.join_with_token(db, "abc123", user)
    assert not result.already_member
    assert result.membership.group_id == g.id

    inv = db.execute(select(GroupInvite).where(GroupInvite.token == "abc123")).scalar_one()
    db.refresh(inv)
    assert inv.uses == 1


def test_join_retry_keeps_token_consumption(db, make_user, make_group):
    g = make_group(make_user())
    _invite(db, g)
    user = make_user()
    real = admission.admit_once
    calls = {"n": 0}

    def flaky(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise OperationalError("INSERT", {}, Exception("database is locked"))
        return real(*args, **kwargs)

    with patch.object(admission, "admit_once", side_effect=flaky):
        result = invites.join_with_token(db, "abc123", user)
    assert result.membership.user_id == user.id
    assert calls["n"] == 2

    inv = db.execute(select(GroupInvite).where(GroupInvite.token == "abc123")).scalar_one()
    db.refresh(inv)
    assert inv.uses == 1
    with pytest.raises(TokenConsumed):
        invites.join_with_token(db, "abc123", make_user())


def test_existing_member_does_not_spend_token(db, make_user, make_group, add_member):
    g = make_group(make_user())
    user = make_user()
    add_member(g, user)
    _invite(db, g)

    result = invites.join_with_token(db, "abc123", user)
    assert result.already_member

    inv = db.execute(select(GroupInvite).where(GroupInvite.token == "abc123")).scalar_one()
    db.refresh(inv)
    assert inv.uses == 0


def test_send_invite_emails_link(db, make_user, make_group, mailer):
    owner = make_user(full_name="Ana")
    g = make_group(owner, name="Hill Repeats", entry_fee=1000)

    sent = invites.send_invite(db, mailer, g, owner, "Friend@Example.com")

    assert sent.email_sent
    assert sent.invite.invited_email == "friend@example.com"
    (message,) = mailer.to("friend@example.com")
    assert "Hill Repeats" in message.subject
    assert f"/join?token={sent.invite.token}" in message.html


def test_send_invite_keeps_invite_when_email_fails(db, make_user, make_group, mailer):
    owner = make_user()
    g = make_group(owner)
    mailer.fail_for.add("friend@example.com")

    sent = invites.send_invite(db, mailer, g, owner, "friend@example.com")
    assert not sent.email_sent
    assert sent.invite.id is not None

    assert invites.send_invite(db, None, g, owner, "other@example.com").email_sent is False


def test_concurrent_resolution_of_single_use_token(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    n = 6
    with Session() as s:
        owner = User(email="owner@example.com", hashed_password=PASSWORD_HASH)
        callers = [User(email=f"c{i}@example.com", hashed_password=PASSWORD_HASH) for i in range(n)]
        s.add_all([owner, *callers])
        s.commit()
        group = Group(name="Race", owner_id=owner.id)
        s.add(group)
        s.commit()
        s.add(GroupInvite(group_id=group.id, token="race-token", created_by=owner.id, max_uses=1))
        s.commit()
        caller_ids = [c.id for c in callers]

    barrier = threading.Barrier(n)
    outcomes = []
    lock = threading.Lock()

    def worker(user_id):
        with Session() as s:
            user = s.get(User, user_id)
            barrier.wait()
            try:
                invites.resolve(s, "race-token", user)
                outcome = "ok"
            except TokenConsumed:
                outcome = "consumed"
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker, args=(uid,)) for uid in caller_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("consumed") == n - 1
    engine.dispose()


# --- HTTP ---------------------------------------------------------------

def test_join_page_redirects_anonymous_to_login(client, db, make_user, make_group):
    g = make_group(make_user())
    _invite(db, g)

    resp = client.get("/join?token=abc123", follow_redirects=False)
    assert resp.status_code == 302
    assert resp.headers["location"].startswith("/login?next=")


def test_join_page_redirects_to_group(client, db, make_user, make_group):
    g = make_group(make_user())
    _invite(db, g)
    user = make_user()
    client.cookies.set("access_token", auth_headers(user)["Authorization"].split(" ", 1)[1])

    resp = client.get("/join?token=abc123", follow_redirects=False)
    assert resp.status_code == 302
    assert resp.headers["location"] == f"/groups/{g.id}?joined=1"

    # segunda vez: ya es miembro, misma redirección
    resp = client.get("/join?token=abc123", follow_redirects=False)
    assert resp.headers["location"] == f"/groups/{g.id}?joined=1"


def test_join_page_shows_error(client, make_user):
    user = make_user()
    client.cookies.set("access_token", auth_headers(user)["Authorization"].split(" ", 1)[1])

    resp = client.get("/join?token=nope")
    assert resp.status_code == 404
    assert "invalid, expired or was revoked" in resp.text


def test_api_join_by_invite(client, db, make_user, make_group):
    g = make_group(make_user(), name="G1")
    _invite(db, g)
    u1, u2 = make_user(), make_user()

    resp = client.post("/groups/join-by-invite/abc123", headers=auth_headers(u1))
    assert resp.status_code == 200
    assert resp.json()["group_id"] == g.id
    assert resp.json()["already_member"] is False

    resp = client.post("/groups/join-by-invite/abc123", headers=auth_headers(u2))
    assert resp.status_code == 409
    assert resp.json()["detail"] == "This invite has already been used"

    resp = client.post("/groups/join-by-invite/abc123")
    assert resp.status_code == 401


def test_api_invite_management(client, db, make_user, make_group):
    owner = make_user()
    g = make_group(owner)

    resp = client.post(f"/groups/{g.id}/invites", json={"max_uses": None}, headers=auth_headers(owner))
    assert resp.status_code == 200
    token = resp.json()["token"]
    assert resp.json()["url"].endswith(f"/join?token={token}")

    listed = client.get(f"/groups/{g.id}/invites", headers=auth_headers(owner)).json()
    assert [i["token"] for i in listed] == [token]

    assert client.post(f"/groups/{g.id}/invites/{token}/revoke", headers=auth_headers(owner)).status_code == 200
    resp = client.post(f"/groups/join-by-invite/{token}", headers=auth_headers(make_user()))
    assert resp.status_code == 404

    members = db.execute(select(GroupMember).where(GroupMember.group_id == g.id)).scalars().all()
    assert len(members) == 1
