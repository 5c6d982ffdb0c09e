from datetime import date, timedelta

import pytest

from runpool.core.errors import Forbidden, RunPoolError
from runpool.core.periods import current_period_id, period_bounds, period_kind, validate_period_id, week_id
from runpool.models.activity import Activity
from runpool.models.payment import PaymentRecord
from runpool.services import activities, leaderboard

from conftest import auth_headers


def _run(db, user, group, miles, day):
    db.add(Activity(user_id=user.id, group_id=group.id, miles=miles, logged_on=day))
    db.commit()


def test_periods():
    assert week_id(date(2026, 10, 14)) == "2026-W42"
    assert period_bounds("2026-W42") == (date(2026, 10, 12), date(2026, 10, 18))
    assert period_bounds("2026-10-14") == (date(2026, 10, 14), date(2026, 10, 14))
    assert period_kind("2026-W01") == "week"
    assert period_kind("2026-01-01") == "day"
    assert period_kind(current_period_id("day")) == "day"
    for bad in ("2026-W60", "2026-13-01", "W42", ""):
        with pytest.raises(ValueError):
            validate_period_id(bad)


def test_leaderboard_ranks_by_miles_with_shared_ranks(db, make_user, make_group, add_member):
    owner = make_user(full_name="Owner")
    g = make_group(owner)
    a, b, c = make_user(full_name="A"), make_user(full_name="B"), make_user(full_name="C")
    for u in (a, b, c):
        add_member(g, u)

    monday = date(2026, 10, 12)
    _run(db, a, g, 10, monday)
    _run(db, a, g, 2, monday + timedelta(days=1))
    _run(db, b, g, 12, monday + timedelta(days=2))
    _run(db, c, g, 5, monday)
    _run(db, c, g, 50, monday - timedelta(days=1))  # semana anterior

    board = leaderboard.leaderboard(db, g.id, "2026-W42")
    assert [(e.rank, e.name, e.miles) for e in board] == [(1, "A", 12.0), (1, "B", 12.0), (3, "C", 5.0)]
    assert board[0].days_active == 2


def test_leaderboard_excludes_members_who_left(db, make_user, make_group, add_member):
    g = make_group(make_user())
    gone = make_user()
    m = add_member(g, gone)
    _run(db, gone, g, 7, date(2026, 10, 12))
    m.is_active = False
    db.commit()

    assert leaderboard.leaderboard(db, g.id, "2026-W42") == []


def test_streaks(db, make_user, make_group):
    user = make_user()
    g = make_group(user)
    today = date(2026, 10, 14)
    for offset in (1, 2, 4):
        _run(db, user, g, 3, today - timedelta(days=offset))

    assert leaderboard.current_streak(db, user.id, today) == 0
    assert leaderboard.live_streak(db, user.id, today) == 2
    _run(db, user, g, 3, today)
    assert leaderboard.live_streak(db, user.id, today) == 3


def test_log_activity_requires_paid_entry(db, make_user, make_group, add_member):
    owner = make_user()
    g = make_group(owner, entry_fee=2500)
    member = make_user()
    add_member(g, member)

    with pytest.raises(Forbidden):
        activities.log_activity(db, member, g.id, 3.1)

    db.add(PaymentRecord(
        user_id=member.id, group_id=g.id, period_id=week_id(activities.today()),
        amount=2500, status="paid",
    ))
    db.commit()
    activity = activities.log_activity(db, member, g.id, 3.1)
    assert activity.logged_on == activities.today()


def test_log_activity_rules(db, make_user, make_group):
    owner = make_user()
    g = make_group(owner)

    with pytest.raises(RunPoolError):
        activities.log_activity(db, owner, g.id, 2, activities.today() + timedelta(days=1))
    with pytest.raises(Forbidden):
        activities.log_activity(db, make_user(), g.id, 2)


def test_activity_and_leaderboard_endpoints(client, make_user, make_group, add_member):
    owner = make_user(full_name="Owner")
    g = make_group(owner)

    resp = client.post(f"/groups/{g.id}/activities", json={"miles": 6.2}, headers=auth_headers(owner))
    assert resp.status_code == 200
    assert resp.json()["miles"] == 6.2

    assert client.post(f"/groups/{g.id}/activities", json={"miles": 0}, headers=auth_headers(owner)).status_code == 422

    board = client.get(f"/groups/{g.id}/leaderboard", headers=auth_headers(owner)).json()
    assert board["period_id"] == current_period_id("week")
    assert board["entries"][0]["name"] == "Owner"
    assert board["my_streak"] == 1

    resp = client.get(f"/groups/{g.id}/leaderboard?period_id=bogus", headers=auth_headers(owner))
    assert resp.status_code == 400
    assert client.get(f"/groups/{g.id}/leaderboard", headers=auth_headers(make_user())).status_code == 403
