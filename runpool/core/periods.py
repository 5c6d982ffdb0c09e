# periodos: semana ISO "2026-W42" (pagos, rankings) y día "2026-10-17" (campañas diarias)
import re
from datetime import date, datetime, timedelta, timezone

WEEK = "week"
DAY = "day"

_WEEK_RE = re.compile(r"^(\d{4})-W(\d{2})$")
_DAY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def week_id(d: date) -> str:
    year, week, _ = d.isocalendar()
    return f"{year}-W{week:02d}"


def day_id(d: date) -> str:
    return d.isoformat()


def current_period_id(kind: str = WEEK, now: datetime | None = None) -> str:
    today = (now or utc_now_naive()).date()
    return week_id(today) if kind == WEEK else day_id(today)


def period_kind(period_id: str) -> str:
    if _WEEK_RE.match(period_id):
        return WEEK
    if _DAY_RE.match(period_id):
        return DAY
    raise ValueError(f"Invalid period id: {period_id!r}")


def period_bounds(period_id: str) -> tuple[date, date]:
    """Inclusive (first_day, last_day) of the period."""
    m = _WEEK_RE.match(period_id)
    if m:
        try:
            start = date.fromisocalendar(int(m.group(1)), int(m.group(2)), 1)
        except ValueError:
            raise ValueError(f"Invalid period id: {period_id!r}")
        return start, start + timedelta(days=6)

    if _DAY_RE.match(period_id):
        try:
            d = date.fromisoformat(period_id)
        except ValueError:
            raise ValueError(f"Invalid period id: {period_id!r}")
        return d, d

    raise ValueError(f"Invalid period id: {period_id!r}")


def validate_period_id(period_id: str, kind: str | None = None) -> str:
    period_bounds(period_id)
    if kind is not None and period_kind(period_id) != kind:
        raise ValueError(f"Expected a {kind} period, got {period_id!r}")
    return period_id
