"""Weekend-aware staleness rule for cached bars."""

from __future__ import annotations

from datetime import date, datetime
from zoneinfo import ZoneInfo

from marketscan.core.models import BarDaily
from marketscan.data.provider import Clock

_MONDAY, _SATURDAY, _SUNDAY = 0, 5, 6


def effective_fresh_days(today: date, base: int) -> int:
    """Widen the freshness window so weekends do not mark Friday's bar stale.

    With ``base=1``: Mon 3, Tue-Fri 1, Sat 2, Sun 2.
    """
    base = max(0, base)
    weekday = today.weekday()
    if weekday == _MONDAY:
        return max(base, 3)
    if weekday in (_SATURDAY, _SUNDAY):
        return max(base, 2)
    return base


def make_clock(zone: str) -> Clock:
    """Return a zero-arg callable giving today's date in ``zone``."""
    tz = ZoneInfo(zone)
    return lambda: datetime.now(tz).date()


def bar_age_days(last_trade_date: date, today: date) -> int:
    return (today - last_trade_date).days


def is_fresh(bars: list[BarDaily], today: date, base_days: int) -> bool:
    """True when the newest bar is within the effective window of ``today``."""
    if not bars:
        return False
    age = bar_age_days(bars[-1].trade_date, today)
    return age <= effective_fresh_days(today, base_days)
