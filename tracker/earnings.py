# tracker/earnings.py
"""
Earnings rule and the per-day / per-city aggregations built on it.

Everything here is pure: inputs are rides and expenses already fetched from
the store, outputs are fresh schema objects. Rides may be ORM rows or
``schemas.Ride`` instances; only attribute access is used.
"""
from __future__ import annotations

from datetime import date, datetime, time as dtime
from enum import Enum
from functools import reduce
from typing import Any, Dict, Iterable, List, Optional, Tuple

from tracker import schemas
from tracker.errors import ValidationError


class Platform(str, Enum):
    UBER = "uber"
    NINETY_NINE = "99"
    INDRIVER = "indriver"


# Platforms whose fare is scaled by a dynamic multiplier before the bonus
MULTIPLIER_PLATFORMS = {Platform.NINETY_NINE, Platform.INDRIVER}


def parse_platform(raw: Any) -> Platform:
    if isinstance(raw, Platform):
        return raw
    key = str(raw or "").strip().lower()
    try:
        return Platform(key)
    except ValueError:
        raise ValidationError(f"Unknown platform: {raw!r}") from None


def coerce_number(raw: Any, default: float = 0.0) -> float:
    """Parse user input as a float; blanks and garbage fall back to ``default``."""
    if raw is None or isinstance(raw, bool):
        return default
    if isinstance(raw, (int, float)):
        return float(raw) if raw == raw else default  # NaN
    try:
        value = float(str(raw).strip().replace(",", "."))
    except ValueError:
        return default
    return value if value == value else default


def coerce_multiplier(raw: Any) -> float:
    # A zero multiplier means "not informed" on the ride form
    return coerce_number(raw, 1.0) or 1.0


def compute_total_earnings(platform: Any, value: Any = None, bonus: Any = None, multiplier: Any = None) -> float:
    p = parse_platform(platform)
    v = coerce_number(value)
    b = coerce_number(bonus)
    if p in MULTIPLIER_PLATFORMS:
        return v * coerce_multiplier(multiplier) + b
    return v + b


# ---------------- Daily summary ----------------

def local_naive(moment: datetime) -> datetime:
    """Day windows are naive local time; aware datetimes are converted to match."""
    if moment.tzinfo is not None:
        return moment.astimezone().replace(tzinfo=None)
    return moment


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    """Inclusive local-time window covering ``day``."""
    return datetime.combine(day, dtime.min), datetime.combine(day, dtime.max)


def _in_day(ride, day: date) -> bool:
    start, end = day_bounds(day)
    return start <= local_naive(ride.date) <= end


def empty_summary(day: date, expense=None, time_online_minutes: int = 0) -> schemas.DailySummary:
    total_expenses = (expense.total or 0.0) if expense is not None else 0.0
    return schemas.DailySummary(
        date=day,
        total_expenses=total_expenses,
        net_profit=0.0 - total_expenses,
        time_online=time_online_minutes,
    )


def apply_ride(summary: schemas.DailySummary, ride) -> schemas.DailySummary:
    """
    Fold one ride into a summary and return the new summary.

    Rides dated outside the summary's day leave it unchanged, matching what a
    full rebuild over the enlarged ride set would produce.
    """
    if not _in_day(ride, summary.date):
        return summary

    platform = parse_platform(ride.platform).value
    ride_total = ride.total_earnings or 0.0
    by_platform = dict(summary.earnings_by_platform)
    by_platform[platform] = by_platform.get(platform, 0.0) + ride_total
    total_earnings = summary.total_earnings + ride_total

    return summary.model_copy(update={
        "total_earnings": total_earnings,
        "net_profit": total_earnings - summary.total_expenses,
        "total_rides": summary.total_rides + 1,
        "earnings_by_platform": by_platform,
        "total_bonus": summary.total_bonus + (ride.bonus or 0.0),
    })


def build_daily_summary(
    rides: Iterable,
    expense=None,
    time_online_minutes: int = 0,
    day: Optional[date] = None,
) -> schemas.DailySummary:
    """
    Full recompute of a day's totals.

    Defined as a left fold of ``apply_ride`` so incremental updates and full
    rebuilds cannot diverge: folding `rides + [ride]` equals
    `apply_ride(build_daily_summary(rides, ...), ride)`. Rides are folded in
    the order given.
    """
    day = day or date.today()
    return reduce(apply_ride, rides, empty_summary(day, expense, time_online_minutes))


# ---------------- Ranking ----------------

def compute_daily_ranking(rows: Iterable[Tuple[Any, Any]], limit: int = 10) -> List[schemas.RankingEntry]:
    """
    Leaderboard from ``(ride, user)`` pairs already scoped to a city and day.

    Ties on earnings are broken by ``user_id`` ascending.
    """
    totals: Dict[int, Dict[str, Any]] = {}
    for ride, user in rows:
        acc = totals.setdefault(user.id, {"name": user.name, "instagram": user.instagram, "total": 0.0, "count": 0})
        acc["total"] += ride.total_earnings or 0.0
        acc["count"] += 1

    ranked = sorted(totals.items(), key=lambda kv: (-kv[1]["total"], kv[0]))
    return [
        schemas.RankingEntry(
            user_id=uid, name=acc["name"], instagram=acc["instagram"],
            total_earnings=acc["total"], rides_count=acc["count"],
        )
        for uid, acc in ranked[:limit]
    ]
